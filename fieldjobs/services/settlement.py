"""
Payment settlement.

The processor webhook and the field collector's poll loop both end up here,
so a payment confirmed twice is only applied once.
"""
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import utcnow
from ..schemas.jobs import SYSTEM_ACTOR, Actor, JobRecord
from . import job_store
from .activity import PendingEntry
from .errors import ConcurrentModification, ExternalServiceError
from .job_workflow import persist_result
from .ownership import ensure_can_act
from .stripe_client import PayableLink
from .transitions import TransitionResult, apply_paid_completion, apply_settlement

logger = structlog.get_logger(__name__)

MAX_SETTLEMENT_ATTEMPTS = 3


def record_settlement(
    db: Session,
    job_id: Any,
    reference: Optional[str] = None,
    amount: Optional[Decimal] = None,
    source: str = "processor",
    actor: Actor = SYSTEM_ACTOR,
) -> JobRecord:
    """
    Mark a job paid from a processor confirmation. Safe to call repeatedly;
    a lost compare-and-set is retried against the fresh row.
    """
    for attempt in range(1, MAX_SETTLEMENT_ATTEMPTS + 1):
        try:
            with job_store.transaction(db):
                job = job_store.get_job(db, job_id)
                result = apply_settlement(job, reference=reference, amount=amount, source=source)
                updated = persist_result(db, job, result, actor)
        except ConcurrentModification:
            if attempt == MAX_SETTLEMENT_ATTEMPTS:
                raise
            logger.info("settlement_retry", job_id=str(job_id), attempt=attempt)
            continue
        logger.info(
            "payment_settled",
            job_id=str(updated.id),
            source=source,
            duplicate=not result.mutated,
        )
        return updated
    raise ConcurrentModification("Could not record payment")


def complete_after_payment(db: Session, job_id: Any, actor: Actor) -> JobRecord:
    """Move an on-site job to field_complete once it is paid."""
    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        result = apply_paid_completion(job, actor)
        updated = persist_result(db, job, result, actor)
    if result.mutated:
        logger.info("job_completed_after_payment", job_id=str(updated.id), actor_role=actor.role)
    return updated


def record_payment_link(db: Session, job_id: Any, link: PayableLink, amount: Decimal, actor: Actor) -> JobRecord:
    """Store the generated link on the job and ledger it with the amount charged."""
    if not link.url:
        raise ExternalServiceError("payment", "Payment processor returned no link")
    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        ensure_can_act(actor, job)
        now = utcnow()
        result = TransitionResult(
            job=job,
            changes={"payment_link_id": link.reference, "checkout_url": link.url, "updated_at": now},
            entries=[
                PendingEntry(
                    "payment_link_created",
                    f"Payment link created (${amount})",
                    {"amount": str(amount), "reference": link.reference},
                )
            ],
        )
        updated = persist_result(db, job, result, actor)
    return updated
