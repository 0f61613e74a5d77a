from runner.src.models.pipeline import (
    CredentialRef,
    WhenGuard,
    StepSpec,
    HookSpec,
    StageSpec,
    PipelineDefinition,
    PipelineJob,
)
from runner.src.models.result import (
    StageStatus,
    StepStatus,
    RunStatus,
    Artifact,
    StepResult,
    StageResult,
    RunResult,
)

__all__ = [
    "CredentialRef",
    "WhenGuard",
    "StepSpec",
    "HookSpec",
    "StageSpec",
    "PipelineDefinition",
    "PipelineJob",
    "StageStatus",
    "StepStatus",
    "RunStatus",
    "Artifact",
    "StepResult",
    "StageResult",
    "RunResult",
]
