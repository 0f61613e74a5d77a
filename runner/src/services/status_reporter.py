"""
Report pipeline, stage and step status to the database.
"""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Optional
from uuid import UUID
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from runner.src.config import get_settings
from runner.src.models.db import PipelineRun, StageRun, StepRun
from runner.src.models.result import RunResult, StageResult, StepResult

logger = logging.getLogger(__name__)

class RunReporter:
    """Receives run transitions from the executor. Ignores them by default."""

    def run_started(self, run_id: str, started_at: datetime):
        pass

    def stage_started(self, run_id: str, stage: StageResult):
        pass

    def stage_finished(self, run_id: str, stage: StageResult):
        pass

    def step_finished(self, run_id: str, stage_order: int, step_order: int, result: StepResult, logs: str):
        pass

    def run_finished(self, run_id: str, result: RunResult):
        pass

    def run_rejected(self, run_id: str, reason: str):
        """The job could not be started; no stage will run."""
        pass

class NullReporter(RunReporter):
    pass

@lru_cache()
def get_session_factory() -> sessionmaker:
    # Sync database connection for the runner
    engine = create_engine(get_settings().database_url)
    return sessionmaker(bind=engine)

class StatusReporter(RunReporter):
    """Persists run transitions into the rows the gateway created at enqueue."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    def run_started(self, run_id: str, started_at: datetime):
        self.update_run_status(run_id, "running", started_at=started_at)

    def stage_started(self, run_id: str, stage: StageResult):
        self.update_stage_status(run_id, stage.order, "running", started_at=stage.started_at)

    def stage_finished(self, run_id: str, stage: StageResult):
        self.update_stage_status(
            run_id, stage.order, stage.status.value,
            error=stage.error or stage.skip_reason,
            finished_at=stage.finished_at,
        )

    def step_finished(self, run_id: str, stage_order: int, step_order: int, result: StepResult, logs: str):
        self.update_step_status(
            run_id, stage_order, step_order, result.status.value,
            exit_code=result.exit_code,
            logs=logs,
            started_at=result.started_at,
            finished_at=result.finished_at,
        )

    def run_finished(self, run_id: str, result: RunResult):
        self.update_run_status(
            run_id,
            result.status.value,
            finished_at=result.finished_at,
            artifacts=[a.model_dump() for a in result.artifacts],
        )

    def run_rejected(self, run_id: str, reason: str):
        with self.session_factory() as session:
            now = datetime.utcnow()
            session.execute(
                update(StageRun)
                .where(StageRun.run_id == UUID(run_id))
                .where(StageRun.status == "pending")
                .values(status="skipped", error=reason, updated_at=now)
            )
            session.execute(
                update(StepRun)
                .where(StepRun.run_id == UUID(run_id))
                .where(StepRun.status == "pending")
                .values(status="skipped", updated_at=now)
            )
            session.commit()
        self.update_run_status(run_id, "failed", finished_at=datetime.utcnow())

    def update_run_status(
        self,
        run_id: str,
        status: str,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
        artifacts: Optional[list] = None,
    ):
        """Update pipeline run status in database."""
        with self.session_factory() as session:
            values = {"status": status, "updated_at": datetime.utcnow()}

            if started_at:
                values["started_at"] = started_at
            if finished_at:
                values["finished_at"] = finished_at
            if artifacts is not None:
                values["artifacts"] = artifacts

            session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == UUID(run_id))
                .values(**values)
            )
            session.commit()
            logger.info(f"Updated run {run_id} status to {status}")

    def update_stage_status(
        self,
        run_id: str,
        stage_order: int,
        status: str,
        error: Optional[str] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ):
        """Update stage status in database."""
        with self.session_factory() as session:
            values = {"status": status, "updated_at": datetime.utcnow()}

            if error is not None:
                values["error"] = error
            if started_at:
                values["started_at"] = started_at
            if finished_at:
                values["finished_at"] = finished_at

            session.execute(
                update(StageRun)
                .where(StageRun.run_id == UUID(run_id))
                .where(StageRun.stage_order == stage_order)
                .values(**values)
            )
            session.commit()
            logger.debug(f"Updated stage {stage_order} of run {run_id} to {status}")

    def update_step_status(
        self,
        run_id: str,
        stage_order: int,
        step_order: int,
        status: str,
        exit_code: Optional[int] = None,
        logs: Optional[str] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ):
        """Update pipeline step status in database."""
        with self.session_factory() as session:
            values = {"status": status, "updated_at": datetime.utcnow()}

            if exit_code is not None:
                values["exit_code"] = exit_code
            if logs is not None:
                values["logs"] = logs
            if started_at:
                values["started_at"] = started_at
            if finished_at:
                values["finished_at"] = finished_at

            session.execute(
                update(StepRun)
                .where(StepRun.run_id == UUID(run_id))
                .where(StepRun.stage_order == stage_order)
                .where(StepRun.step_order == step_order)
                .values(**values)
            )
            session.commit()
            logger.debug(f"Updated step {stage_order}.{step_order} of run {run_id} to {status}")

