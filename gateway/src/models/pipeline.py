from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, JSON, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from gateway.src.db.database import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")

class Repository(Base):
    __tablename__ = "repositories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False, unique=True)
    clone_url = Column(String(500), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    runs = relationship("PipelineRun", back_populates="repository")

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"
    __table_args__ = (UniqueConstraint("repository_id", "build_number", name="uq_pipeline_runs_build_number"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    repository_id = Column(Uuid, ForeignKey("repositories.id", ondelete="CASCADE"))
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

    repository = relationship("Repository", back_populates="runs")
    stages = relationship("StageRun", back_populates="run", order_by="StageRun.stage_order")
    steps = relationship("StepRun", back_populates="run", order_by=lambda: [StepRun.stage_order, StepRun.step_order])

class StageRun(Base):
    __tablename__ = "stage_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
    name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")
    error = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    run = relationship("PipelineRun", back_populates="stages")

class StepRun(Base):
    __tablename__ = "step_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
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

    run = relationship("PipelineRun", back_populates="steps")
