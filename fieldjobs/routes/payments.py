import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..services.errors import JobNotFound
from ..services.settlement import record_settlement
from ..services.stripe_client import from_minor_units, verify_webhook_signature


router = APIRouter(prefix="/payments", tags=["payments"])
logger = structlog.get_logger(__name__)

SETTLED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Stripe webhook. Only paid Checkout sessions are acted on; they go
    through the same idempotent settlement as the field collector.
    """
    payload = await request.body()
    if not verify_webhook_signature(payload, request.headers.get("Stripe-Signature"), settings.stripe_webhook_secret):
        raise HTTPException(status_code=400, detail="Invalid signature")
    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_type = event.get("type")
    if event_type not in SETTLED_EVENTS:
        return {"received": True}

    session = (event.get("data") or {}).get("object") or {}
    if session.get("payment_status") != "paid":
        return {"received": True}

    job_id = (session.get("metadata") or {}).get("job_id") or session.get("client_reference_id")
    if not job_id:
        logger.warning("webhook_missing_job", event_id=event.get("id"))
        return {"received": True, "ignored": "no job reference"}

    try:
        job = record_settlement(
            db,
            job_id,
            reference=session.get("payment_intent") or session.get("id"),
            amount=from_minor_units(session.get("amount_total")),
            source="webhook",
        )
    except JobNotFound:
        # Acknowledge so the processor stops retrying a job that no longer exists
        logger.warning("webhook_unknown_job", job_id=str(job_id), event_id=event.get("id"))
        return {"received": True, "ignored": "unknown job"}

    return {"received": True, "job_id": str(job.id), "payment_status": job.payment_status.value}
