"""
Webhooks Router - Delivery notifications from providers

Endpoints:
- POST /webhooks/apify - Apify actor-run webhook

The webhook only queues a collect message; the worker reads the run and
ingests it, so a duplicate or late notification is harmless.
"""

import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException

from ..dependencies import get_services
from ..errors import QueueError
from ..models import MessageKind, QueueMessage
from ..services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


def _run_id(payload: Dict[str, Any]) -> Optional[str]:
    resource = payload.get("resource")
    if isinstance(resource, dict) and resource.get("id"):
        return resource["id"]
    event_data = payload.get("eventData")
    if isinstance(event_data, dict) and event_data.get("actorRunId"):
        return event_data["actorRunId"]
    return None


@router.post("/apify")
async def apify_webhook(
    payload: Dict[str, Any] = Body(...),
    x_webhook_secret: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Queue collection of a finished Apify run."""
    expected = services.settings.webhook_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Webhook secret not configured")
    if not x_webhook_secret or not secrets.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    try:
        run_id = _run_id(payload)
        if not run_id:
            raise HTTPException(status_code=400, detail="No run id in webhook payload")

        job = services.jobs.get_by_snapshot(run_id)
        if job is None:
            logger.info("[Webhook] Ignoring run %s: no matching job", run_id)
            return {"status": "ignored"}

        if job.is_terminal:
            logger.info("[Webhook] Ignoring run %s: job %s already %s", run_id, job.id, job.status.value)
            return {"status": "ignored", "jobId": job.id}

        services.queue.send(QueueMessage(
            kind=MessageKind.COLLECT,
            job_id=job.id,
            organization_id=job.organization_id,
            profile_ids=job.profile_ids,
            qualification_id=job.qualification_id,
            snapshot_id=run_id,
        ))
        logger.info("[Webhook] Run %s (%s) queued for job %s", run_id, payload.get("eventType"), job.id)
        return {"status": "queued", "jobId": job.id}

    except QueueError as e:
        raise HTTPException(status_code=503, detail=e.message)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
