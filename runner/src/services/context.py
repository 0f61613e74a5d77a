"""
Per-run execution state.
"""

import hashlib
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from runner.src.config import get_settings
from runner.src.models.result import Artifact
from runner.src.services.credentials import Redactor
from runner.src.services.loader import TOOL_REF
from runner.src.services.tools import ToolResolver

@dataclass
class RunContext:
    """
    Mutable state threaded through a single run. Owned by one executor
    for the run's duration and never shared between runs.
    """

    run_id: str
    pipeline: str
    workspace: str
    log_dir: str
    build_number: int = 1
    branch: Optional[str] = None
    scm: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    tool_paths: Dict[str, str] = field(default_factory=dict)
    artifacts: List[Artifact] = field(default_factory=list)
    redactor: Redactor = field(default_factory=Redactor, repr=False)

    @classmethod
    def create(
        cls,
        run_id: str,
        pipeline: str,
        workspace_root: Optional[str] = None,
        build_number: int = 1,
        branch: Optional[str] = None,
        scm: Optional[Dict[str, str]] = None,
    ) -> "RunContext":
        """Create the run's workspace and log directories."""
        root = os.path.join(workspace_root or get_settings().workspace_root, run_id)
        workspace = os.path.join(root, "workspace")
        log_dir = os.path.join(root, "logs")
        os.makedirs(workspace, exist_ok=True)
        os.makedirs(log_dir, exist_ok=True)
        return cls(
            run_id=run_id,
            pipeline=pipeline,
            workspace=workspace,
            log_dir=log_dir,
            build_number=build_number,
            branch=branch,
            scm=dict(scm or {}),
        )

    def resolve_tool(self, alias: str, resolver: ToolResolver) -> str:
        """Resolve once per run; later lookups hit the run's cache."""
        if alias not in self.tool_paths:
            self.tool_paths[alias] = resolver.resolve(alias)
        return self.tool_paths[alias]

    def expand(self, text: str) -> str:
        """Substitute ${tools.<alias>} with resolved tool paths."""
        return TOOL_REF.sub(lambda m: self.tool_paths.get(m.group(1), m.group(0)), text)

    def base_env(self) -> Dict[str, str]:
        env = {
            "CONVEYOR_RUN_ID": self.run_id,
            "JOB_NAME": self.pipeline,
            "BUILD_NUMBER": str(self.build_number),
            "WORKSPACE": self.workspace,
        }
        if self.branch:
            env["BRANCH_NAME"] = self.branch
        env.update(self.env)
        return env

    def add_artifact(self, path: str, stage: Optional[str] = None, name: Optional[str] = None) -> Artifact:
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)

        artifact = Artifact(
            name=name or os.path.relpath(path, self.workspace),
            path=os.path.abspath(path),
            size=os.path.getsize(path),
            sha256=digest.hexdigest(),
            stage=stage,
        )
        self.artifacts = [a for a in self.artifacts if a.name != artifact.name]
        self.artifacts.append(artifact)
        return artifact

    def artifact(self, name: str) -> Optional[Artifact]:
        for artifact in self.artifacts:
            if artifact.name == name or os.path.basename(artifact.name) == name:
                return artifact
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form. Secret values are never part of it."""
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "build_number": self.build_number,
            "branch": self.branch,
            "scm": dict(self.scm),
            "workspace": self.workspace,
            "log_dir": self.log_dir,
            "env": dict(self.env),
            "tool_paths": dict(self.tool_paths),
            "artifacts": [a.model_dump() for a in self.artifacts],
        }
