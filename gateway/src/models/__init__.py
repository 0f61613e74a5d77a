from gateway.src.models.pipeline import Repository, PipelineRun, StageRun, StepRun
from gateway.src.models.run import (
    ArtifactResponse,
    ManualTriggerRequest,
    PipelineRunResponse,
    RepositoryResponse,
    StageResponse,
    StepResponse,
    TriggerResponse,
)

__all__ = [
    "Repository",
    "PipelineRun",
    "StageRun",
    "StepRun",
    "ArtifactResponse",
    "ManualTriggerRequest",
    "PipelineRunResponse",
    "RepositoryResponse",
    "StageResponse",
    "StepResponse",
    "TriggerResponse",
]
