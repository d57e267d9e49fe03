"""
Job lifecycle transition engine.

Pure functions: given the current job, the requested change and the acting
identity, compute the job fields to write and the activity entries to append,
or raise a typed rejection. Nothing here touches the database; callers persist
the result and its entries in one transaction.
"""
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..models.models import utcnow
from ..schemas.jobs import Actor, JobRecord, JobStatus, PaymentStatus
from .activity import PendingEntry
from .errors import Forbidden, InvalidTransition, MissingFields
from .ownership import can_act, ensure_can_act, is_admin, is_field_tech

S = JobStatus

# Ordered by UI priority
ALLOWED_TRANSITIONS: Dict[JobStatus, Tuple[JobStatus, ...]] = {
    S.pending: (S.scheduled, S.cancelled),
    S.scheduled: (S.rescheduled, S.en_route, S.cancelled),
    S.rescheduled: (S.rescheduled, S.en_route, S.cancelled),
    S.en_route: (S.on_site, S.cancelled),
    S.on_site: (S.field_complete, S.cancelled),
    S.field_complete: (S.report_ready, S.cancelled),
    S.report_ready: (S.delivered, S.cancelled),
    S.delivered: (S.rescheduled, S.archived),
    S.cancelled: (S.rescheduled, S.archived),
    S.archived: (),
}

# Targets a field tech may drive directly, with the timestamp each one stamps
FIELD_TECH_TARGETS: Dict[JobStatus, str] = {
    S.en_route: "en_route_at",
    S.on_site: "arrived_at",
}

SCHEDULING_TARGETS = (S.scheduled, S.rescheduled)

# Field-visit timestamps cleared when a job is put back on the calendar
FIELD_VISIT_TIMESTAMPS = ("en_route_at", "arrived_at", "started_at")

ACTION_NAMES: Dict[JobStatus, str] = {
    S.scheduled: "job_scheduled",
    S.rescheduled: "job_rescheduled",
    S.cancelled: "job_cancelled",
    S.archived: "job_archived",
}

STATUS_SUMMARIES: Dict[JobStatus, str] = {
    S.en_route: "Tech en route",
    S.on_site: "Tech arrived on site",
    S.field_complete: "Field work completed",
    S.report_ready: "Reports ready",
    S.cancelled: "Job cancelled",
    S.archived: "Job archived",
}

PAYMENT_ORDER = (PaymentStatus.unpaid, PaymentStatus.invoiced, PaymentStatus.paid)

START_WORK_ACTION = "status_in_progress"


@dataclass(frozen=True)
class TeamMemberRef:
    id: uuid.UUID
    kind: str
    name: Optional[str] = None


@dataclass
class TransitionRequest:
    target: JobStatus
    reason: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    assigned_to: Optional[uuid.UUID] = None
    invoice_amount: Optional[Decimal] = None
    report_urls: Optional[Dict[str, str]] = None
    # Filled in by the data-access layer: the effective assignee looked up in the job's own pool
    assignee: Optional[TeamMemberRef] = None
    previous_assignee: Optional[TeamMemberRef] = None


@dataclass
class TransitionResult:
    job: JobRecord
    changes: Dict[str, Any]
    entries: List[PendingEntry] = field(default_factory=list)

    @property
    def mutated(self) -> bool:
        return bool(self.changes)


def action_name(target: JobStatus) -> str:
    return ACTION_NAMES.get(target, f"status_{target.value}")


def allowed_targets(status: JobStatus) -> Tuple[JobStatus, ...]:
    return ALLOWED_TRANSITIONS.get(JobStatus(status), ())


def is_allowed(current: JobStatus, target: JobStatus) -> bool:
    return JobStatus(target) in allowed_targets(current)


def allowed_actions_for(job: JobRecord, actor: Actor) -> List[JobStatus]:
    """Targets this actor could request right now (scheduling data aside)."""
    if not can_act(actor, job):
        return []
    targets = list(allowed_targets(job.status))
    if is_field_tech(actor):
        targets = [t for t in targets if t in FIELD_TECH_TARGETS]
    return targets


def _build_result(job: JobRecord, changes: Dict[str, Any], entries: List[PendingEntry]) -> TransitionResult:
    if changes:
        merged = job.model_dump()
        merged.update(changes)
        new_job = JobRecord.model_validate(merged)
    else:
        new_job = job
    return TransitionResult(job=new_job, changes=changes, entries=entries)


def _ensure_role_may_request(actor: Actor, target: JobStatus) -> None:
    if is_admin(actor):
        return
    if is_field_tech(actor) and target in FIELD_TECH_TARGETS:
        return
    if is_field_tech(actor) and target == S.field_complete:
        raise Forbidden("Field completion requires payment collection")
    raise Forbidden(f"Your role cannot move a job to {target.value}")


def _check_scheduling(job: JobRecord, request: TransitionRequest) -> Tuple[uuid.UUID, Decimal]:
    missing = []
    if not request.scheduled_date:
        missing.append("scheduled_date")
    if not (request.scheduled_time or "").strip():
        missing.append("scheduled_time")

    assignee_id = request.assigned_to or job.assigned_to
    assignee = request.assignee
    if (
        assignee_id is None
        or assignee is None
        or assignee.id != assignee_id
        or assignee.kind != job.kind.value
    ):
        missing.append("assigned_to")

    amount = request.invoice_amount if request.invoice_amount is not None else job.amount_due
    if amount is None or Decimal(amount) < 0:
        missing.append("invoice_amount")

    if missing:
        raise MissingFields(missing, target=request.target.value)
    return assignee_id, Decimal(amount)


def _member_label(ref: Optional[TeamMemberRef], fallback_id: Optional[uuid.UUID]) -> str:
    if ref and ref.name:
        return ref.name
    if fallback_id:
        return str(fallback_id)
    return "unassigned"


def apply_transition(
    job: JobRecord,
    request: TransitionRequest,
    actor: Actor,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Validate and compute one status transition.

    Raises:
        Forbidden: the ownership guard or the actor's role denies the request
        InvalidTransition: the target is not reachable from the current status
        MissingFields: data required by the target status is absent
    """
    now = now or utcnow()
    target = JobStatus(request.target)
    current = job.status

    ensure_can_act(actor, job)
    if not is_allowed(current, target):
        raise InvalidTransition(current.value, target.value, [t.value for t in allowed_targets(current)])
    _ensure_role_may_request(actor, target)

    changes: Dict[str, Any] = {"status": target.value, "updated_at": now}
    metadata: Dict[str, Any] = {"from": current.value, "to": target.value}
    entries: List[PendingEntry] = []
    summary = STATUS_SUMMARIES.get(target, f"Status changed to {target.value}")

    if target in SCHEDULING_TARGETS:
        assignee_id, amount = _check_scheduling(job, request)
        changes.update(
            scheduled_date=request.scheduled_date,
            scheduled_time=request.scheduled_time.strip(),
            assigned_to=assignee_id,
        )
        if request.invoice_amount is not None:
            changes["invoice_amount"] = Decimal(request.invoice_amount)
        metadata.update(
            scheduled_date=request.scheduled_date.isoformat(),
            scheduled_time=changes["scheduled_time"],
            assigned_to=str(assignee_id),
            amount=str(amount),
        )
        when = f"{request.scheduled_date.isoformat()} at {changes['scheduled_time']}"
        if target == S.scheduled:
            summary = f"Job scheduled for {when}"
        else:
            summary = f"Job rescheduled to {when}"
            metadata.update(
                previous_date=job.scheduled_date.isoformat() if job.scheduled_date else None,
                previous_time=job.scheduled_time,
            )
            for col in FIELD_VISIT_TIMESTAMPS:
                if getattr(job, col) is not None:
                    changes[col] = None

    elif target in FIELD_TECH_TARGETS:
        changes[FIELD_TECH_TARGETS[target]] = now

    elif target == S.field_complete:
        changes["completed_at"] = now

    elif target == S.report_ready:
        report_urls = dict(job.report_urls or {})
        report_urls.update({k: v for k, v in (request.report_urls or {}).items() if v})
        if not report_urls:
            raise MissingFields(["report_urls"], target=target.value)
        changes["report_urls"] = report_urls
        metadata["reports"] = sorted(report_urls)

    elif target == S.delivered:
        changes["reports_sent_at"] = now
        if job.payment_status == PaymentStatus.paid:
            metadata["branch"] = "paid"
            summary = "Reports delivered"
        else:
            metadata["branch"] = "invoiced"
            summary = "Reports delivered with invoice"
            if job.payment_status == PaymentStatus.unpaid:
                changes["payment_status"] = PaymentStatus.invoiced.value
            if job.invoice_sent_at is None:
                changes["invoice_sent_at"] = now

    if request.reason:
        metadata["reason"] = request.reason
        if target in (S.cancelled, S.archived):
            summary = f"{summary}: {request.reason}"

    entries.append(PendingEntry(action_name(target), summary, metadata))

    if target == S.rescheduled and changes["assigned_to"] != job.assigned_to:
        entries.append(
            PendingEntry(
                "job_reassigned",
                "Job reassigned from {} to {}".format(
                    _member_label(request.previous_assignee, job.assigned_to),
                    _member_label(request.assignee, changes["assigned_to"]),
                ),
                {
                    "previous_assignee": str(job.assigned_to) if job.assigned_to else None,
                    "previous_assignee_name": request.previous_assignee.name if request.previous_assignee else None,
                    "new_assignee": str(changes["assigned_to"]),
                    "new_assignee_name": request.assignee.name if request.assignee else None,
                },
            )
        )

    return _build_result(job, changes, entries)


def apply_start_work(job: JobRecord, actor: Actor, now: Optional[datetime] = None) -> TransitionResult:
    """
    Mark on-site work as started. The status stays on_site (the legacy
    in_progress state is an alias of it); only started_at is stamped.
    """
    now = now or utcnow()
    ensure_can_act(actor, job)
    if job.status != S.on_site or job.started_at is not None:
        raise InvalidTransition(job.status.value, "in_progress", [t.value for t in allowed_targets(job.status)])
    if not (is_admin(actor) or is_field_tech(actor)):
        raise Forbidden("Your role cannot start work on a job")
    changes = {"started_at": now, "updated_at": now}
    return _build_result(job, changes, [PendingEntry(START_WORK_ACTION, "Job started", {"status": job.status.value})])


def apply_paid_completion(job: JobRecord, actor: Actor, now: Optional[datetime] = None) -> TransitionResult:
    """
    on_site -> field_complete once payment has been captured. This is the
    only way a field tech can complete a job.
    """
    now = now or utcnow()
    ensure_can_act(actor, job)
    if job.payment_status != PaymentStatus.paid:
        raise MissingFields(["payment"], target=S.field_complete.value)
    if job.status == S.field_complete:
        # Already completed by another path
        return _build_result(job, {}, [])
    if not is_allowed(job.status, S.field_complete):
        raise InvalidTransition(job.status.value, S.field_complete.value, [t.value for t in allowed_targets(job.status)])
    changes = {"status": S.field_complete.value, "completed_at": now, "updated_at": now}
    entry = PendingEntry(
        action_name(S.field_complete),
        "Job completed after payment",
        {"from": job.status.value, "to": S.field_complete.value, "via": "payment_collection"},
    )
    return _build_result(job, changes, [entry])


def apply_payment_status(
    job: JobRecord,
    target: PaymentStatus,
    actor: Actor,
    override: bool = False,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Advance payment_status along unpaid -> invoiced -> paid. Going backwards
    needs the admin override, which is always ledgered. Repeating the current
    value changes nothing but still records the attempt.
    """
    now = now or utcnow()
    target = PaymentStatus(target)
    current = job.payment_status
    ensure_can_act(actor, job)
    if not is_admin(actor):
        raise Forbidden("Only admins can change payment status")

    metadata: Dict[str, Any] = {"from": current.value, "to": target.value}
    if reason:
        metadata["reason"] = reason

    if target == current:
        metadata["unchanged"] = True
        entry = PendingEntry(f"payment_marked_{target.value}", f"Payment already {target.value}", metadata)
        return _build_result(job, {}, [entry])

    forward = PAYMENT_ORDER.index(target) > PAYMENT_ORDER.index(current)
    if not forward and not override:
        later = [p.value for p in PAYMENT_ORDER[PAYMENT_ORDER.index(current) + 1:]]
        raise InvalidTransition(current.value, target.value, later)

    changes: Dict[str, Any] = {"payment_status": target.value, "updated_at": now}
    if target == PaymentStatus.paid and job.payment_received_at is None:
        changes["payment_received_at"] = now
    if target == PaymentStatus.invoiced and job.invoice_sent_at is None:
        changes["invoice_sent_at"] = now

    if forward and not override:
        entry = PendingEntry(f"payment_marked_{target.value}", f"Payment marked {target.value}", metadata)
    else:
        metadata["override"] = True
        entry = PendingEntry(
            "payment_status_overridden",
            f"Payment status overridden from {current.value} to {target.value}",
            metadata,
        )
    return _build_result(job, changes, [entry])


def apply_settlement(
    job: JobRecord,
    reference: Optional[str] = None,
    amount: Optional[Decimal] = None,
    source: str = "processor",
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Record the processor's paid signal. Idempotent: a job that is already
    paid is left as-is and only the repeat is ledgered.
    """
    now = now or utcnow()
    metadata: Dict[str, Any] = {"source": source}
    if reference:
        metadata["reference"] = reference
    if amount is not None:
        metadata["amount"] = str(amount)
    amount_label = f" (${amount})" if amount is not None else ""

    if job.payment_status == PaymentStatus.paid:
        metadata["duplicate"] = True
        return _build_result(
            job, {}, [PendingEntry("payment_received", f"Payment confirmation repeated{amount_label}", metadata)]
        )

    changes: Dict[str, Any] = {
        "payment_status": PaymentStatus.paid.value,
        "payment_received_at": now,
        "updated_at": now,
    }
    if reference:
        changes["payment_reference"] = reference
    return _build_result(job, changes, [PendingEntry("payment_received", f"Payment received{amount_label}", metadata)])
