from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional
from uuid import UUID

from gateway.src.db.database import get_db
from gateway.src.models.pipeline import PipelineRun, Repository
from gateway.src.models.run import (
    ArtifactResponse,
    ManualTriggerRequest,
    PipelineRunResponse,
    RepositoryResponse,
    TriggerResponse,
)
from gateway.src.services.github import RepositoryError, repo_info_from_url
from gateway.src.services.queue import get_run_status, request_cancel
from gateway.src.services.runs import (
    create_pipeline_run,
    get_or_create_repository,
    load_repository_definition,
)
from runner.src.errors import DefinitionError
from runner.src.services.loader import parse_definition

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

FINISHED_STATUSES = {"success", "failed", "unstable", "aborted"}

async def _load_run(db: AsyncSession, run_id: UUID) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages), selectinload(PipelineRun.steps))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return run

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List all pipeline runs."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages), selectinload(PipelineRun.steps))
        .order_by(PipelineRun.created_at.desc())
    )

    if status:
        query = query.where(PipelineRun.status == status)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    runs = result.scalars().all()
    return runs

@router.post("/runs", response_model=TriggerResponse, status_code=202)
async def trigger_run(request: ManualTriggerRequest, db: AsyncSession = Depends(get_db)):
    """Manually trigger a run, with an inline definition or the repository's own."""
    repo_info = repo_info_from_url(request.repository_url, request.branch, request.commit_sha)

    try:
        if request.definition is not None:
            definition = parse_definition(request.definition)
        else:
            definition = await load_repository_definition(
                request.repository_url, request.commit_sha, request.branch
            )
    except DefinitionError as e:
        raise HTTPException(
            status_code=422,
            detail={"reason": e.cause, "location": e.location},
        )
    except RepositoryError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if definition is None:
        raise HTTPException(status_code=404, detail="No pipeline definition found in repository")

    repository = await get_or_create_repository(db, repo_info)
    pipeline_run = await create_pipeline_run(
        db, repository, definition, repo_info, triggered_by=request.triggered_by or "manual"
    )

    return TriggerResponse(
        status="queued",
        run_id=str(pipeline_run.id),
        build_number=pipeline_run.build_number,
        stages=len(definition.stages),
    )

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run."""
    return await _load_run(db, run_id)

@router.post("/runs/{run_id}/cancel", response_model=TriggerResponse)
async def cancel_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Ask the runner to abort a queued or running pipeline."""
    run = await _load_run(db, run_id)

    if run.status in FINISHED_STATUSES:
        raise HTTPException(status_code=409, detail=f"Run already finished ({run.status})")

    await request_cancel(str(run_id))
    return TriggerResponse(status="cancelling", run_id=str(run_id), build_number=run.build_number)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await _load_run(db, run_id)

    # Get live status from Redis
    redis_status = await get_run_status(str(run_id))

    return {
        "run_id": str(run_id),
        "build_number": run.build_number,
        "db_status": run.status,
        "live_status": redis_status,
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "order": stage.stage_order,
                "error": stage.error,
            }
            for stage in sorted(run.stages, key=lambda s: s.stage_order)
        ]
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: UUID, stage: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    """Redacted step logs, grouped by stage. Optionally for a single stage."""
    run = await _load_run(db, run_id)

    stages = sorted(run.stages, key=lambda s: s.stage_order)
    if stage is not None:
        stages = [s for s in stages if s.name == stage]
        if not stages:
            raise HTTPException(status_code=404, detail=f"Stage '{stage}' not found in run")

    steps_by_stage = {}
    for step in run.steps:
        steps_by_stage.setdefault(step.stage_order, []).append(step)

    return {
        "run_id": str(run_id),
        "stages": [
            {
                "name": s.name,
                "status": s.status,
                "steps": [
                    {
                        "order": step.step_order,
                        "name": step.name,
                        "status": step.status,
                        "exit_code": step.exit_code,
                        "logs": step.logs,
                    }
                    for step in sorted(steps_by_stage.get(s.stage_order, []), key=lambda x: x.step_order)
                ],
            }
            for s in stages
        ],
    }

@router.get("/runs/{run_id}/artifacts", response_model=List[ArtifactResponse])
async def get_run_artifacts(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """List the artifacts a run archived."""
    run = await _load_run(db, run_id)
    return [ArtifactResponse(**a) for a in (run.artifacts or [])]

@router.get("/repositories", response_model=List[RepositoryResponse])
async def list_repositories(db: AsyncSession = Depends(get_db)):
    """List all registered repositories."""
    query = select(Repository).order_by(Repository.created_at.desc())
    result = await db.execute(query)
    repos = result.scalars().all()
    return repos

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    # Count runs by status
    status_query = (
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    # Count total repositories
    repo_count_query = select(func.count(Repository.id))
    result = await db.execute(repo_count_query)
    repo_count = result.scalar()

    finished = sum(status_counts.get(s, 0) for s in FINISHED_STATUSES)
    return {
        "repositories": repo_count,
        "runs": status_counts,
        "total_runs": sum(status_counts.values()),
        "success_rate": round(status_counts.get("success", 0) / finished, 3) if finished else None,
    }
