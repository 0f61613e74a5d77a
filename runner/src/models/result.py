"""
Run result models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"

class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ABORTED = "aborted"

class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    UNSTABLE = "unstable"
    ABORTED = "aborted"

    @property
    def post_condition(self) -> str:
        return "failure" if self is RunStatus.FAILED else self.value

class Artifact(BaseModel):
    name: str  # path relative to the workspace
    path: str
    size: int
    sha256: str
    stage: Optional[str] = None

class StepResult(BaseModel):
    name: str
    action: str
    status: StepStatus
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

class StageResult(BaseModel):
    name: str
    order: int
    status: StageStatus = StageStatus.PENDING
    steps: List[StepResult] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None

class RunResult(BaseModel):
    run_id: str
    pipeline: str
    build_number: int = 1
    status: Optional[RunStatus] = None
    stages: List[StageResult] = []
    artifacts: List[Artifact] = []
    hook_errors: List[str] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def stage(self, name: str) -> StageResult:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def statuses(self) -> Dict[str, str]:
        return {s.name: s.status.value for s in self.stages}

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly summary without captured output."""
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "build_number": self.build_number,
            "status": self.status.value if self.status else None,
            "stages": self.statuses,
            "artifacts": [a.name for a in self.artifacts],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
