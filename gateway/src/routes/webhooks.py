"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from gateway.src.db.database import get_db
from gateway.src.services.github import (
    RepositoryError,
    verify_signature,
    parse_webhook_payload,
)
from gateway.src.services.runs import (
    create_pipeline_run,
    get_or_create_repository,
    load_repository_definition,
)
from runner.src.errors import DefinitionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

async def process_push_event(
    payload: dict,
    db: AsyncSession,
):
    """Process GitHub push event and create pipeline run."""

    # Parse webhook payload
    webhook_data = parse_webhook_payload(payload)

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    # Clone repo and validate its pipeline definition
    try:
        definition = await load_repository_definition(
            webhook_data["clone_url"],
            webhook_data["commit_sha"],
        )
    except DefinitionError as e:
        logger.error(f"Invalid pipeline definition: {e}")
        return {"status": "error", "reason": str(e), "location": e.location}
    except RepositoryError as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}

    if definition is None:
        logger.info(f"No pipeline definition found in {webhook_data['repo_full_name']}")
        return {"status": "skipped", "reason": "No pipeline definition found"}

    repository = await get_or_create_repository(db, webhook_data)
    pipeline_run = await create_pipeline_run(
        db,
        repository,
        definition,
        webhook_data,
        triggered_by=webhook_data["pusher"],
    )

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "build_number": pipeline_run.build_number,
        "stages": len(definition.stages),
    }

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    # Get raw body for signature verification
    body = await request.body()

    # Verify signature
    if not verify_signature(body, x_hub_signature_256):
        raise HTTPException(status_code=401, detail="Invalid signature")

    # Parse JSON payload
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    # Handle different event types
    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        result = await process_push_event(payload, db)
        return result

    # Ignore other events
    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }

@router.get("/test")
async def test_webhook():
    """Test endpoint to verify webhook route is working."""
    return {"status": "ok", "message": "Webhook endpoint is ready"}
