from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
import redis.asyncio as redis

from gateway.src.db.database import get_db
from gateway.src.config import get_settings
from gateway.src.models.pipeline import PipelineRun
from gateway.src.services.queue import get_queue_length

settings = get_settings()

router = APIRouter(tags=["health"])

ACTIVE_STATUSES = ("queued", "running")

async def check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

async def check_redis() -> str:
    client = redis.from_url(settings.redis_url)
    try:
        await client.ping()
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"
    finally:
        await client.close()

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "conveyor-gateway"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    database = await check_database(db)
    return {"status": "healthy" if database == "healthy" else "unhealthy", "database": database}

@router.get("/health/redis")
async def redis_health_check():
    status = await check_redis()
    return {"status": "healthy" if status == "healthy" else "unhealthy", "redis": status}

@router.get("/health/queue")
async def queue_health_check(db: AsyncSession = Depends(get_db)):
    try:
        queue_length = await get_queue_length()
        result = await db.execute(
            select(func.count(PipelineRun.id)).where(PipelineRun.status.in_(ACTIVE_STATUSES))
        )
        return {
            "status": "healthy",
            "queue_length": queue_length,
            "active_runs": result.scalar() or 0,
        }
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for all services."""
    health = {
        "api": "healthy",
        "database": await check_database(db),
        "redis": await check_redis(),
    }

    queue_length = None
    if health["redis"] == "healthy":
        queue_length = await get_queue_length()

    overall = "healthy" if all(v == "healthy" for v in health.values()) else "degraded"
    return {"status": overall, "services": health, "queue_length": queue_length}
