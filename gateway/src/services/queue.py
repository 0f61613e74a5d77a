"""
Redis queue service for pipeline jobs.

Key names and the job payload are shared with the runner's worker.
"""

import redis.asyncio as redis
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional
from datetime import datetime

from gateway.src.config import get_settings
from runner.src.models.pipeline import PipelineJob
from runner.src.worker import CANCEL_KEY, PIPELINE_QUEUE, PIPELINE_STATUS

settings = get_settings()

CANCEL_TTL = 24 * 60 * 60

@asynccontextmanager
async def redis_client():
    """Short-lived async client, closed on exit."""
    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        yield client
    finally:
        await client.close()

async def enqueue_pipeline_run(
    run_id: str,
    definition: Dict[str, Any],
    repo_info: Dict[str, Any],
    build_number: int = 1,
) -> PipelineJob:
    """Push a run onto the job list and mark it queued."""
    job = PipelineJob(
        run_id=run_id,
        definition=definition,
        repo_info=repo_info,
        build_number=build_number,
        queued_at=datetime.utcnow().isoformat(),
    )

    async with redis_client() as client:
        await client.lpush(PIPELINE_QUEUE, job.model_dump_json())
        await client.hset(PIPELINE_STATUS, run_id, "queued")

    return job

async def request_cancel(run_id: str):
    """Flag a run for cancellation; the runner's watcher polls this key."""
    async with redis_client() as client:
        await client.set(CANCEL_KEY.format(run_id=run_id), "1", ex=CANCEL_TTL)
        await client.hset(PIPELINE_STATUS, run_id, "cancelling")

async def get_run_status(run_id: str) -> Optional[str]:
    """Live status as last written by the gateway or the runner."""
    async with redis_client() as client:
        return await client.hget(PIPELINE_STATUS, run_id)

async def get_queue_length() -> int:
    async with redis_client() as client:
        return await client.llen(PIPELINE_QUEUE)
