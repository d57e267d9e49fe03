"""
Job workflow service.

Every mutating entry point follows the same path: load the job, check the
ownership guard, let the transition engine compute the change, then write the
job and its activity entries in one transaction.
"""
import re
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import JobActivity
from ..schemas.jobs import Actor, ActorRole, JobKind, JobRecord, JobStatus, PaymentStatus
from . import job_store
from .activity import PendingEntry, append_entries, compute_diff, create_activity, list_activity
from .delivery import ResultDelivery, default_recipients
from .errors import ExternalServiceError, Forbidden, InvalidFields, MissingFields
from .ownership import ensure_can_act, is_admin
from .transitions import (
    TransitionRequest,
    TransitionResult,
    apply_payment_status,
    apply_start_work,
    apply_transition,
)

logger = structlog.get_logger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\+?[0-9 ().\-]{7,20}$")

CUSTOMER_FIELDS = ("customer_name", "customer_email", "customer_phone")

CREATE_FIELDS = (
    "customer_name",
    "customer_email",
    "customer_phone",
    "address",
    "city",
    "state",
    "zip",
    "payer_type",
    "payer_name",
    "payer_email",
    "service_name",
    "tier_name",
    "invoice_amount",
    "catalog_total_price",
)


def persist_result(db: Session, job: JobRecord, result: TransitionResult, actor: Actor) -> JobRecord:
    """Write the job changes and append the entries. Caller owns the transaction."""
    updated = job_store.update_job(db, job, result.changes)
    append_entries(db, job.id, job.kind.value, result.entries, actor)
    return updated


def _resolve_assignees(db: Session, job: JobRecord, request: TransitionRequest) -> None:
    effective = request.assigned_to or job.assigned_to
    request.assignee = job_store.get_team_member(db, job.kind.value, effective)
    request.previous_assignee = job_store.get_team_member(db, job.kind.value, job.assigned_to)


def transition_job(
    db: Session,
    job_id: Any,
    request: TransitionRequest,
    actor: Actor,
    delivery: Optional[ResultDelivery] = None,
    recipients: Optional[List[str]] = None,
) -> JobRecord:
    """Apply one status transition requested by an admin or field tech."""
    if JobStatus(request.target) == JobStatus.delivered:
        return deliver_job(db, job_id, actor, delivery, recipients=recipients, reason=request.reason)

    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        if JobStatus(request.target) in (JobStatus.scheduled, JobStatus.rescheduled):
            _resolve_assignees(db, job, request)
        result = apply_transition(job, request, actor)
        updated = persist_result(db, job, result, actor)

    logger.info(
        "job_transition_applied",
        job_id=str(job.id),
        kind=job.kind.value,
        from_status=job.status.value,
        to_status=updated.status.value,
        actor_role=actor.role,
    )
    return updated


def deliver_job(
    db: Session,
    job_id: Any,
    actor: Actor,
    delivery: Optional[ResultDelivery],
    recipients: Optional[List[str]] = None,
    reason: Optional[str] = None,
) -> JobRecord:
    """
    report_ready -> delivered. Results are sent first; if sending fails the
    job is left in report_ready, nothing is ledgered and the error is raised.
    """
    if delivery is None:
        raise ExternalServiceError("delivery", "Result delivery is not available")

    job = job_store.get_job(db, job_id)
    result = apply_transition(job, TransitionRequest(target=JobStatus.delivered, reason=reason), actor)

    to = [r.strip() for r in (recipients or default_recipients(job)) if r and r.strip()]
    if not to:
        db.rollback()
        raise MissingFields(["recipients"], target=JobStatus.delivered.value)
    invalid = {r: "invalid email" for r in to if not EMAIL_RE.match(r)}
    if invalid:
        db.rollback()
        raise InvalidFields(invalid)

    outcome = delivery.deliver_result(result.job, to)
    if not outcome.ok:
        db.rollback()
        logger.warning("job_delivery_failed", job_id=str(job.id), error=outcome.error)
        raise ExternalServiceError("delivery", outcome.error or "Result delivery failed")

    for entry in result.entries:
        entry.metadata = dict(entry.metadata or {}, recipients=to)

    with job_store.transaction(db):
        updated = persist_result(db, job, result, actor)

    logger.info("job_delivered", job_id=str(job.id), branch=result.entries[0].metadata.get("branch"))
    return updated


def start_work(db: Session, job_id: Any, actor: Actor) -> JobRecord:
    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        result = apply_start_work(job, actor)
        updated = persist_result(db, job, result, actor)
    logger.info("job_work_started", job_id=str(job.id), actor_role=actor.role)
    return updated


def add_field_note(db: Session, job_id: Any, actor: Actor, note: str) -> JobActivity:
    text = (note or "").strip()
    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        ensure_can_act(actor, job)
        if not text:
            raise MissingFields(["note"])
        entry = create_activity(db, job.id, job.kind.value, "field_note", "Field note added", actor, {"note": text})
    return entry


def _validate_customer_fields(fields: Dict[str, Any]) -> Dict[str, Optional[str]]:
    cleaned: Dict[str, Optional[str]] = {}
    errors: Dict[str, str] = {}
    for key in CUSTOMER_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        value = value.strip() if isinstance(value, str) else value
        if key == "customer_name" and not value:
            errors[key] = "name cannot be empty"
        elif key == "customer_email" and value and not EMAIL_RE.match(value):
            errors[key] = "invalid email"
        elif key == "customer_phone" and value and not PHONE_RE.match(value):
            errors[key] = "invalid phone number"
        cleaned[key] = value or None
    if errors:
        raise InvalidFields(errors)
    return cleaned


def update_customer_contact(db: Session, job_id: Any, actor: Actor, fields: Dict[str, Any]) -> JobRecord:
    """Edit customer name/email/phone (admin, or the assigned field tech)."""
    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        ensure_can_act(actor, job)
        cleaned = _validate_customer_fields(fields)
        if not cleaned:
            raise MissingFields(CUSTOMER_FIELDS)

        before = {k: getattr(job, k) for k in cleaned}
        diff = compute_diff(before, cleaned)
        changes: Dict[str, Any] = {k: v["after"] for k, v in diff.items()}
        summary = "Customer details updated" if diff else "Customer details unchanged"
        result = TransitionResult(
            job=job,
            changes=changes,
            entries=[PendingEntry("customer_updated", summary, {"changes": diff})],
        )
        updated = persist_result(db, job, result, actor)
    return updated


def set_payment_status(
    db: Session,
    job_id: Any,
    actor: Actor,
    target: PaymentStatus,
    override: bool = False,
    reason: Optional[str] = None,
) -> JobRecord:
    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        result = apply_payment_status(job, target, actor, override=override, reason=reason)
        updated = persist_result(db, job, result, actor)
    logger.info(
        "job_payment_status_set",
        job_id=str(job.id),
        payment_status=updated.payment_status.value,
        override=override,
        mutated=result.mutated,
    )
    return updated


def _creation_values(payload: Dict[str, Any]) -> Dict[str, Any]:
    values = {k: payload.get(k) for k in CREATE_FIELDS if payload.get(k) is not None}
    for money in ("invoice_amount", "catalog_total_price"):
        if money in values:
            amount = Decimal(values[money])
            if amount < 0:
                raise InvalidFields({money: "must not be negative"})
            values[money] = amount
    if values.get("customer_email") and not EMAIL_RE.match(values["customer_email"]):
        raise InvalidFields({"customer_email": "invalid email"})
    return values


def _actor_uuid(actor: Actor) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(actor.id)) if actor.id else None
    except ValueError:
        return None


def create_job(db: Session, payload: Dict[str, Any], actor: Actor) -> JobRecord:
    """
    Direct creation by an admin. When scheduling data is supplied the job is
    scheduled in the same transaction, and all of date, time, assignee and
    amount must then be present.
    """
    if not is_admin(actor):
        raise Forbidden("Only admins can create jobs directly")
    kind = JobKind(payload["kind"]).value
    values = _creation_values(payload)
    values.update(status=JobStatus.pending.value, payment_status=PaymentStatus.unpaid.value, requested_by="admin")
    if payload.get("requested_by"):
        values["requested_by"] = payload["requested_by"]
    wants_schedule = any(payload.get(k) for k in ("scheduled_date", "scheduled_time", "assigned_to"))

    with job_store.transaction(db):
        row = job_store.create_job_row(db, kind, values)
        job = JobRecord.model_validate(row)
        create_activity(
            db, job.id, kind, "job_created",
            f"Job created - {job.customer_name or 'unnamed customer'}",
            actor, {"source": "admin"},
        )
        if wants_schedule:
            request = TransitionRequest(
                target=JobStatus.scheduled,
                scheduled_date=payload.get("scheduled_date"),
                scheduled_time=payload.get("scheduled_time"),
                assigned_to=payload.get("assigned_to"),
            )
            _resolve_assignees(db, job, request)
            result = apply_transition(job, request, actor)
            job = persist_result(db, job, result, actor)

    logger.info("job_created", job_id=str(job.id), kind=kind, status=job.status.value)
    return job


def request_job(db: Session, payload: Dict[str, Any], actor: Actor) -> JobRecord:
    """Homeowner-initiated request; always lands in pending."""
    if actor.role not in (ActorRole.homeowner.value, ActorRole.admin.value):
        raise Forbidden("Only homeowners can request a service")
    kind = JobKind(payload["kind"]).value
    values = _creation_values(payload)
    values.update(
        status=JobStatus.pending.value,
        payment_status=PaymentStatus.unpaid.value,
        requested_by="homeowner",
        requested_by_id=_actor_uuid(actor),
    )
    if not values.get("customer_email") and actor.email:
        values["customer_email"] = actor.email

    with job_store.transaction(db):
        row = job_store.create_job_row(db, kind, values)
        job = JobRecord.model_validate(row)
        create_activity(
            db, job.id, kind, "job_created",
            f"Service requested - {job.customer_name or actor.display_name}",
            actor, {"source": "homeowner"},
        )

    logger.info("job_requested", job_id=str(job.id), kind=kind)
    return job


def delete_job(db: Session, job_id: Any, actor: Actor, reason: Optional[str] = None) -> None:
    """
    Permanent delete (admin only). The job_deleted entry is written before the
    row goes, in the same transaction, and carries a snapshot of the job.
    """
    if not is_admin(actor):
        raise Forbidden("Only admins can delete jobs")
    with job_store.transaction(db):
        job = job_store.get_job(db, job_id)
        snapshot = {
            "status": job.status.value,
            "payment_status": job.payment_status.value,
            "customer_name": job.customer_name,
            "scheduled_date": job.scheduled_date.isoformat() if job.scheduled_date else None,
            "assigned_to": str(job.assigned_to) if job.assigned_to else None,
        }
        metadata: Dict[str, Any] = {"snapshot": snapshot}
        if reason:
            metadata["reason"] = reason
        create_activity(db, job.id, job.kind.value, "job_deleted", "Job deleted permanently", actor, metadata)
        job_store.delete_job_row(db, job)
    logger.info("job_deleted", job_id=str(job.id), kind=job.kind.value)


def get_job_for(db: Session, job_id: Any, actor: Actor) -> JobRecord:
    job = job_store.get_job(db, job_id)
    ensure_can_act(actor, job)
    return job


def job_activity(db: Session, job_id: Any, actor: Actor) -> List[JobActivity]:
    """Ledger for a job. Admins can read it even after the job was deleted."""
    if is_admin(actor):
        return list_activity(db, job_store._parse_id(job_id))
    job = get_job_for(db, job_id, actor)
    return list_activity(db, job.id)
