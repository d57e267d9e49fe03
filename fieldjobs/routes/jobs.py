from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_actor, require_admin
from ..db import SessionLocal, get_db
from ..schemas.jobs import (
    Actor,
    ActivityEntryOut,
    CustomerUpdate,
    DeleteIn,
    DeliverIn,
    JobCreate,
    JobRecord,
    NoteIn,
    PaymentStatusIn,
    TransitionIn,
)
from ..services import job_workflow
from ..services.delivery import EmailResultDelivery, ResultDelivery
from ..services.errors import ExternalServiceError
from ..services.payment_collector import CollectorRegistry, FieldPaymentCollector
from ..services.stripe_client import PaymentProcessor, StripeClient
from ..services.transitions import TransitionRequest, allowed_actions_for


router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_delivery() -> ResultDelivery:
    return EmailResultDelivery()


def get_processor() -> PaymentProcessor:
    try:
        return StripeClient()
    except ValueError as exc:
        raise ExternalServiceError("payment", "Payment processor is not configured") from exc


def get_session_factory():
    return SessionLocal


def get_collector_registry(request: Request) -> CollectorRegistry:
    registry = getattr(request.app.state, "collectors", None)
    if registry is None:
        registry = CollectorRegistry()
        request.app.state.collectors = registry
    return registry


def _serialize_job(job: JobRecord) -> Dict[str, Any]:
    data = job.model_dump(mode="json")
    amount = job.amount_due
    data["amount_due"] = str(amount) if amount is not None else None
    data["service_label"] = job.service_label
    return data


def _serialize_activity(entries) -> List[Dict[str, Any]]:
    return [ActivityEntryOut.model_validate(e).model_dump(mode="json") for e in entries]


@router.post("")
def create_job(payload: JobCreate, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    job = job_workflow.create_job(db, payload.model_dump(), actor)
    return _serialize_job(job)


@router.post("/requests")
def request_job(payload: JobCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    data = payload.model_dump(exclude={"scheduled_date", "scheduled_time", "assigned_to"})
    job = job_workflow.request_job(db, data, actor)
    return _serialize_job(job)


@router.get("/{job_id}")
def get_job(job_id: str, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    return _serialize_job(job_workflow.get_job_for(db, job_id, actor))


@router.delete("/{job_id}")
def delete_job(
    job_id: str,
    payload: Optional[DeleteIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    job_workflow.delete_job(db, job_id, actor, reason=payload.reason if payload else None)
    return {"status": "ok"}


@router.get("/{job_id}/allowed-transitions")
def allowed_transitions(job_id: str, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    job = job_workflow.get_job_for(db, job_id, actor)
    return {
        "status": job.status.value,
        "allowed": [t.value for t in allowed_actions_for(job, actor)],
    }


@router.post("/{job_id}/transitions")
def transition_job(
    job_id: str,
    payload: TransitionIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    delivery: ResultDelivery = Depends(get_delivery),
):
    request = TransitionRequest(
        target=payload.target,
        reason=payload.reason,
        scheduled_date=payload.scheduled_date,
        scheduled_time=payload.scheduled_time,
        assigned_to=payload.assigned_to,
        invoice_amount=payload.invoice_amount,
        report_urls=payload.report_urls,
    )
    job = job_workflow.transition_job(db, job_id, request, actor, delivery=delivery)
    return _serialize_job(job)


@router.post("/{job_id}/start")
def start_work(job_id: str, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    return _serialize_job(job_workflow.start_work(db, job_id, actor))


@router.post("/{job_id}/notes")
def add_note(job_id: str, payload: NoteIn, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    entry = job_workflow.add_field_note(db, job_id, actor, payload.note)
    return ActivityEntryOut.model_validate(entry).model_dump(mode="json")


@router.patch("/{job_id}/customer")
def update_customer(
    job_id: str,
    payload: CustomerUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    job = job_workflow.update_customer_contact(db, job_id, actor, payload.model_dump(exclude_unset=True))
    return _serialize_job(job)


@router.post("/{job_id}/deliver")
def deliver(
    job_id: str,
    payload: Optional[DeliverIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    delivery: ResultDelivery = Depends(get_delivery),
):
    recipients = payload.recipients if payload else None
    job = job_workflow.deliver_job(db, job_id, actor, delivery, recipients=recipients)
    return _serialize_job(job)


@router.get("/{job_id}/activity")
def job_activity(job_id: str, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    return _serialize_activity(job_workflow.job_activity(db, job_id, actor))


@router.post("/{job_id}/payment-status")
def set_payment_status(
    job_id: str,
    payload: PaymentStatusIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    job = job_workflow.set_payment_status(
        db, job_id, actor, payload.payment_status, override=payload.override, reason=payload.reason
    )
    return _serialize_job(job)


# Field payment collection (one collector per job and client session).
# Handlers stay async: collectors and their poll tasks are only touched on the event loop.

def _session_key(actor: Actor, client_session: Optional[str]) -> str:
    return client_session or actor.id or "anonymous"


def _collector_or_404(registry: CollectorRegistry, job_id: str, session_id: str) -> FieldPaymentCollector:
    collector = registry.get(job_id, session_id)
    if collector is None:
        raise HTTPException(status_code=404, detail="No payment collection in progress")
    return collector


@router.post("/{job_id}/collection/confirm")
async def collection_confirm(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    client_session: Optional[str] = Header(default=None, alias="X-Client-Session"),
    registry: CollectorRegistry = Depends(get_collector_registry),
    processor: PaymentProcessor = Depends(get_processor),
    session_factory=Depends(get_session_factory),
):
    session_id = _session_key(actor, client_session)
    collector = registry.open(
        job_id,
        session_id,
        lambda: FieldPaymentCollector(job_id, actor, processor, session_factory),
    )
    collector.confirm()
    return collector.snapshot()


@router.post("/{job_id}/collection/generate")
async def collection_generate(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    client_session: Optional[str] = Header(default=None, alias="X-Client-Session"),
    registry: CollectorRegistry = Depends(get_collector_registry),
):
    collector = _collector_or_404(registry, job_id, _session_key(actor, client_session))
    await collector.generate()
    return collector.snapshot()


@router.post("/{job_id}/collection/continue")
async def collection_continue(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    client_session: Optional[str] = Header(default=None, alias="X-Client-Session"),
    registry: CollectorRegistry = Depends(get_collector_registry),
):
    collector = _collector_or_404(registry, job_id, _session_key(actor, client_session))
    collector.continue_waiting()
    return collector.snapshot()


@router.post("/{job_id}/collection/retry")
async def collection_retry(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    client_session: Optional[str] = Header(default=None, alias="X-Client-Session"),
    registry: CollectorRegistry = Depends(get_collector_registry),
):
    collector = _collector_or_404(registry, job_id, _session_key(actor, client_session))
    await collector.retry()
    return collector.snapshot()


@router.post("/{job_id}/collection/abandon")
async def collection_abandon(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    client_session: Optional[str] = Header(default=None, alias="X-Client-Session"),
    registry: CollectorRegistry = Depends(get_collector_registry),
):
    session_id = _session_key(actor, client_session)
    collector = registry.get(job_id, session_id)
    registry.discard(job_id, session_id)
    return {"job_id": job_id, "state": collector.state.value if collector else "idle"}


@router.get("/{job_id}/collection")
async def collection_status(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    client_session: Optional[str] = Header(default=None, alias="X-Client-Session"),
    registry: CollectorRegistry = Depends(get_collector_registry),
):
    collector = registry.get(job_id, _session_key(actor, client_session))
    if collector is None:
        return {"job_id": job_id, "state": "idle"}
    return collector.snapshot()
