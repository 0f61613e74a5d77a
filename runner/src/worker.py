"""
Queue worker - pulls jobs from Redis and executes them.
"""

import asyncio
import functools
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Optional

import redis
from pydantic import ValidationError

from runner.src.config import get_settings
from runner.src.errors import DefinitionError
from runner.src.models.pipeline import PipelineDefinition, PipelineJob
from runner.src.models.result import RunResult
from runner.src.services.context import RunContext
from runner.src.services.executor import PipelineExecutor
from runner.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)

PIPELINE_QUEUE = "conveyor:jobs"
PIPELINE_STATUS = "conveyor:status"
CANCEL_KEY = "conveyor:cancel:{run_id}"

@lru_cache()
def get_redis_client() -> redis.Redis:
    return redis.from_url(get_settings().redis_url, decode_responses=True)

def get_next_job(client: Optional[redis.Redis] = None, timeout: int = 5) -> Optional[PipelineJob]:
    """Pull next job from Redis queue."""
    client = client or get_redis_client()
    result = client.brpop(PIPELINE_QUEUE, timeout=timeout)
    if result:
        _, job_data = result
        return PipelineJob.model_validate(json.loads(job_data))
    return None

class CancelWatcher(threading.Thread):
    """Polls the run's cancel key and sets the cancel event when it appears."""

    def __init__(self, client: redis.Redis, run_id: str, cancel_event: threading.Event, interval: float):
        super().__init__(name=f"cancel-watcher-{run_id}", daemon=True)
        self.client = client
        self.key = CANCEL_KEY.format(run_id=run_id)
        self.cancel_event = cancel_event
        self.interval = interval
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self.interval):
            try:
                if self.client.exists(self.key):
                    logger.warning(f"Cancel requested via {self.key}")
                    self.cancel_event.set()
                    return
            except redis.RedisError as e:
                logger.error(f"Failed to poll {self.key}: {e}")

    def stop(self):
        self._stopped.set()

def build_executor() -> PipelineExecutor:
    return PipelineExecutor(reporter=StatusReporter())

def reject_job(job: PipelineJob, executor: PipelineExecutor, client: redis.Redis, reason: str):
    """Mark a job that never started as failed, live and in the database."""
    logger.error(f"Run {job.run_id} rejected: {reason}")
    client.hset(PIPELINE_STATUS, job.run_id, "failed")
    executor.reporter.run_rejected(job.run_id, reason)

def execute_job(
    job: PipelineJob,
    executor: PipelineExecutor,
    client: Optional[redis.Redis] = None,
) -> Optional[RunResult]:
    """Run one queued job to completion. Runs in a worker thread."""
    settings = get_settings()
    client = client or get_redis_client()

    try:
        definition = PipelineDefinition.model_validate(job.definition)
    except ValidationError as e:
        reject_job(job, executor, client, str(DefinitionError("", f"queued definition is invalid: {e}")))
        return None

    repo_info = job.repo_info or {}
    try:
        context = RunContext.create(
            run_id=job.run_id,
            pipeline=definition.name,
            build_number=job.build_number,
            branch=repo_info.get("branch"),
            scm=repo_info,
        )
    except OSError as e:
        reject_job(job, executor, client, f"workspace could not be created: {e}")
        return None

    cancel_event = threading.Event()
    watcher = CancelWatcher(client, job.run_id, cancel_event, settings.cancel_poll_interval)
    watcher.start()

    try:
        client.hset(PIPELINE_STATUS, job.run_id, "running")
        result = executor.execute(definition, context, cancel_event)
        client.hset(PIPELINE_STATUS, job.run_id, result.status.value)
        return result
    finally:
        watcher.stop()
        client.delete(CANCEL_KEY.format(run_id=job.run_id))

def _job_done(slots: asyncio.Semaphore, running: set, run_id: str, future: asyncio.Future):
    running.discard(future)
    slots.release()
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Failed to execute pipeline {run_id}: {error!r}")

async def worker_loop(executor: Optional[PipelineExecutor] = None):
    """Main worker loop. Runs up to max_concurrent_runs pipelines at once."""
    settings = get_settings()
    executor = executor or build_executor()
    loop = asyncio.get_running_loop()
    slots = asyncio.Semaphore(settings.max_concurrent_runs)
    running: set = set()

    logger.info(f"Worker started ({settings.max_concurrent_runs} slots), waiting for jobs...")

    with ThreadPoolExecutor(max_workers=settings.max_concurrent_runs) as pool:
        while True:
            await slots.acquire()
            try:
                job = await asyncio.to_thread(get_next_job)
            except Exception as e:
                slots.release()
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
                continue

            if job is None:
                slots.release()
                continue

            logger.info(f"Received job for run {job.run_id}")
            future = loop.run_in_executor(pool, execute_job, job, executor)
            running.add(future)
            future.add_done_callback(functools.partial(_job_done, slots, running, job.run_id))

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
