"""
Create pipeline runs and hand them to the runner queue.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.src.models.pipeline import PipelineRun, Repository, StageRun, StepRun
from gateway.src.services.github import clone_repository, cleanup_repo, fetch_pipeline_config
from gateway.src.services.queue import enqueue_pipeline_run
from runner.src.models.pipeline import PipelineDefinition
from runner.src.services.loader import parse_definition

logger = logging.getLogger(__name__)

async def load_repository_definition(
    clone_url: str,
    commit_sha: Optional[str] = None,
    branch: Optional[str] = None,
) -> Optional[PipelineDefinition]:
    """
    Clone the repository and validate its pipeline definition.
    Returns None when the repository has no definition file.
    Raises RepositoryError or DefinitionError.
    """
    repo_path = None
    try:
        repo_path = await clone_repository(clone_url, commit_sha, branch=None if commit_sha else branch)
        content = await fetch_pipeline_config(repo_path)
        if content is None:
            return None
        return parse_definition(content)
    finally:
        if repo_path:
            cleanup_repo(repo_path)

async def get_or_create_repository(db: AsyncSession, repo_info: Dict[str, Any]) -> Repository:
    query = select(Repository).where(Repository.full_name == repo_info["repo_full_name"])
    result = await db.execute(query)
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            name=repo_info["repo_name"],
            full_name=repo_info["repo_full_name"],
            clone_url=repo_info["clone_url"],
        )
        db.add(repository)
        await db.flush()

    return repository

async def next_build_number(db: AsyncSession, repository_id) -> int:
    """Allocate the repository's next build number; the row lock is held until commit."""
    await db.execute(select(Repository.id).where(Repository.id == repository_id).with_for_update())
    query = select(func.max(PipelineRun.build_number)).where(PipelineRun.repository_id == repository_id)
    result = await db.execute(query)
    return (result.scalar() or 0) + 1

async def create_pipeline_run(
    db: AsyncSession,
    repository: Repository,
    definition: PipelineDefinition,
    repo_info: Dict[str, Any],
    triggered_by: Optional[str] = None,
) -> PipelineRun:
    """Persist the run with pending stage/step rows, then queue it."""
    config = definition.model_dump(mode="json")

    pipeline_run = PipelineRun(
        repository_id=repository.id,
        build_number=await next_build_number(db, repository.id),
        commit_sha=repo_info.get("commit_sha") or "",
        branch=repo_info.get("branch") or "",
        status="queued",
        triggered_by=triggered_by,
        config=config,
    )
    db.add(pipeline_run)
    await db.flush()

    # Rows the runner updates as the run progresses
    for i, stage in enumerate(definition.stages):
        db.add(StageRun(run_id=pipeline_run.id, name=stage.name, stage_order=i, status="pending"))
        for j, step in enumerate(stage.steps):
            db.add(StepRun(
                run_id=pipeline_run.id,
                stage_order=i,
                step_order=j,
                name=step.name,
                action=step.action,
                status="pending",
            ))

    await db.commit()

    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        definition=config,
        repo_info=repo_info,
        build_number=pipeline_run.build_number,
    )

    logger.info(f"Pipeline run {pipeline_run.id} (#{pipeline_run.build_number}) created and queued")
    return pipeline_run
