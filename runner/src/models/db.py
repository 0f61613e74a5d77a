"""
Database models for the runner (sync version).
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, JSON, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

JsonType = JSON().with_variant(JSONB(), "postgresql")

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"
    __table_args__ = (UniqueConstraint("repository_id", "build_number", name="uq_pipeline_runs_build_number"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    repository_id = Column(Uuid)
    build_number = Column(Integer, nullable=False, default=1)
    commit_sha = Column(String(40), nullable=False)
    branch = Column(String(255), nullable=False)
    status = Column(String(50), default="pending")
    triggered_by = Column(String(255))
    config = Column(JsonType)
    artifacts = Column(JsonType)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class StageRun(Base):
    __tablename__ = "stage_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("pipeline_runs.id"))
    name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")
    error = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class StepRun(Base):
    __tablename__ = "step_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("pipeline_runs.id"))
    stage_order = Column(Integer, nullable=False)
    step_order = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    action = Column(String(50), nullable=False)
    status = Column(String(50), default="pending")
    exit_code = Column(Integer)
    logs = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
