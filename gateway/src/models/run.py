from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID

class StepResponse(BaseModel):
    id: UUID
    name: str
    action: str
    status: str
    stage_order: int
    step_order: int
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class StageResponse(BaseModel):
    id: UUID
    name: str
    status: str
    stage_order: int
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunBase(BaseModel):
    commit_sha: str
    branch: str

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    build_number: int
    status: str
    triggered_by: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    stages: List[StageResponse] = []
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True

class ArtifactResponse(BaseModel):
    name: str
    size: int
    sha256: str
    stage: Optional[str] = None

class ManualTriggerRequest(BaseModel):
    repository_url: str
    branch: str = "main"
    commit_sha: Optional[str] = None
    triggered_by: Optional[str] = None
    # Inline YAML definition; read from the repository when omitted
    definition: Optional[str] = None

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True

class TriggerResponse(BaseModel):
    status: str
    run_id: Optional[str] = None
    build_number: Optional[int] = None
    stages: Optional[int] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = {}
