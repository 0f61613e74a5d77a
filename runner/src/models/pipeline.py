"""
Pipeline definition models.

A PipelineDefinition is produced by the loader and is immutable for the
duration of a run; the executor and notifier only read it.
"""

from fnmatch import fnmatch
from pydantic import BaseModel
from typing import Any, Dict, List, Mapping, Optional, Tuple

STEP_ACTIONS = ("sh", "checkout", "archive", "publish", "clean_ws")
HOOK_ACTIONS = ("email", "webhook", "sh")
POST_CONDITIONS = ("always", "success", "failure", "unstable", "aborted")


class CredentialRef(BaseModel):
    """Reference to a secret, bound to an env var for a single step."""
    id: str
    env: str

    class Config:
        frozen = True


class WhenGuard(BaseModel):
    branch: Optional[str] = None
    environment: Dict[str, str] = {}

    class Config:
        frozen = True

    def matches(self, branch: Optional[str], env: Mapping[str, str]) -> bool:
        if self.branch is not None and not fnmatch(branch or "", self.branch):
            return False
        return all(env.get(k) == v for k, v in self.environment.items())


class StepSpec(BaseModel):
    name: str
    action: str
    args: Dict[str, Any] = {}
    timeout: Optional[int] = None
    env: Dict[str, str] = {}
    credentials: Tuple[CredentialRef, ...] = ()

    class Config:
        frozen = True

    @property
    def command(self) -> Optional[str]:
        return self.args.get("command")


class HookSpec(BaseModel):
    action: str
    args: Dict[str, Any] = {}

    class Config:
        frozen = True


class StageSpec(BaseModel):
    name: str
    steps: Tuple[StepSpec, ...]
    needs: Tuple[str, ...] = ()
    tools: Dict[str, str] = {}
    environment: Dict[str, str] = {}
    when: Optional[WhenGuard] = None
    best_effort: bool = False

    class Config:
        frozen = True


class PipelineDefinition(BaseModel):
    name: str = "Unnamed Pipeline"
    environment: Dict[str, str] = {}
    tools: Dict[str, str] = {}
    stages: Tuple[StageSpec, ...]
    post: Dict[str, Tuple[HookSpec, ...]] = {}

    class Config:
        frozen = True

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def hooks_for(self, condition: str) -> Tuple[HookSpec, ...]:
        return self.post.get(condition, ())

    def stage_tools(self, stage: StageSpec) -> List[str]:
        """Tool aliases a stage needs: pipeline-wide ones first, then its own."""
        aliases = list(self.tools.values())
        for alias in stage.tools.values():
            if alias not in aliases:
                aliases.append(alias)
        return aliases


class PipelineJob(BaseModel):
    """Queued unit of work handed from the gateway to the runner."""
    run_id: str
    definition: Dict[str, Any]
    repo_info: Dict[str, Any] = {}
    build_number: int = 1
    queued_at: Optional[str] = None
