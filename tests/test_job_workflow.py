from datetime import date
from decimal import Decimal

import pytest
from conftest import FakeDelivery
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.dml import Update

from fieldjobs.models.models import AssessmentJob, JobActivity
from fieldjobs.schemas.jobs import JobStatus, PaymentStatus
from fieldjobs.services import job_store, job_workflow, settlement
from fieldjobs.services.activity import list_activity
from fieldjobs.services.errors import (
    ConcurrentModification,
    ExternalServiceError,
    Forbidden,
    InvalidFields,
    JobNotFound,
    LedgerWriteError,
    MissingFields,
    PersistenceError,
)
from fieldjobs.services.transitions import TransitionRequest, apply_transition

REPORTS = {"energy_report": "https://reports.example.com/r/1"}


def test_direct_creation_without_schedule_lands_pending(db, admin):
    job = job_workflow.create_job(db, {"kind": "inspection", "customer_name": "Lee"}, admin)
    assert job.status == JobStatus.pending
    assert job.kind.value == "inspection"
    assert [e.action for e in list_activity(db, job.id)] == ["job_created"]


def test_direct_creation_with_schedule_lands_scheduled(db, admin, make_member):
    member = make_member()
    job = job_workflow.create_job(
        db,
        {
            "kind": "assessment",
            "customer_name": "Lee",
            "invoice_amount": Decimal("300.00"),
            "scheduled_date": date(2030, 7, 4),
            "scheduled_time": "10:00",
            "assigned_to": member.id,
        },
        admin,
    )
    assert job.status == JobStatus.scheduled
    assert job.assigned_to == member.id
    assert [e.action for e in list_activity(db, job.id)] == ["job_created", "job_scheduled"]


def test_direct_creation_with_partial_schedule_is_rejected_whole(db, admin):
    with pytest.raises(MissingFields) as exc:
        job_workflow.create_job(
            db, {"kind": "assessment", "scheduled_date": date(2030, 7, 4)}, admin
        )
    assert "scheduled_time" in exc.value.fields
    assert db.query(AssessmentJob).count() == 0


def test_only_admins_create_directly(db, homeowner):
    with pytest.raises(Forbidden):
        job_workflow.create_job(db, {"kind": "assessment"}, homeowner)


def test_homeowner_request_is_pending(db, homeowner):
    job = job_workflow.request_job(db, {"kind": "assessment", "customer_name": "Dana"}, homeowner)
    assert job.status == JobStatus.pending
    assert job.requested_by == "homeowner"
    assert job.customer_email == "dana@example.com"


def test_pending_to_scheduled_scenario(db, admin, make_member):
    job = job_workflow.request_job(db, {"kind": "assessment", "customer_name": "Dana"}, admin)
    with pytest.raises(MissingFields):
        job_workflow.transition_job(db, job.id, TransitionRequest(target=JobStatus.scheduled), admin)
    assert job_store.get_job(db, job.id).status == JobStatus.pending

    member = make_member()
    scheduled = job_workflow.transition_job(
        db,
        job.id,
        TransitionRequest(
            target=JobStatus.scheduled,
            scheduled_date=date(2030, 5, 1),
            scheduled_time="09:00",
            assigned_to=member.id,
            invoice_amount=Decimal("275.00"),
        ),
        admin,
    )
    assert scheduled.status == JobStatus.scheduled
    assert scheduled.invoice_amount == Decimal("275.00")


def test_failed_delivery_leaves_job_in_report_ready(db, make_job, admin):
    job = make_job(status="report_ready", report_urls=REPORTS)
    delivery = FakeDelivery(ok=False, error="SMTP connection refused")

    with pytest.raises(ExternalServiceError) as exc:
        job_workflow.deliver_job(db, job.id, admin, delivery)

    assert exc.value.message == "SMTP connection refused"
    reloaded = job_store.get_job(db, job.id)
    assert reloaded.status == JobStatus.report_ready
    assert reloaded.payment_status == PaymentStatus.unpaid
    assert list_activity(db, job.id) == []


def test_successful_delivery_records_recipients(db, make_job, admin):
    job = make_job(status="report_ready", report_urls=REPORTS, payer_email="broker@example.com")
    delivery = FakeDelivery()

    delivered = job_workflow.deliver_job(db, job.id, admin, delivery)

    assert delivered.status == JobStatus.delivered
    assert delivered.payment_status == PaymentStatus.invoiced
    assert delivery.calls == [(job.id, ["dana@example.com", "broker@example.com"])]
    entry = list_activity(db, job.id)[0]
    assert entry.action == "status_delivered"
    assert entry.details["recipients"] == ["dana@example.com", "broker@example.com"]


def test_transition_to_delivered_goes_through_delivery(db, make_job, admin):
    job = make_job(status="report_ready", report_urls=REPORTS)
    delivery = FakeDelivery()
    job_workflow.transition_job(db, job.id, TransitionRequest(target=JobStatus.delivered), admin, delivery=delivery)
    assert len(delivery.calls) == 1


def test_delivery_rejects_bad_recipient(db, make_job, admin):
    job = make_job(status="report_ready", report_urls=REPORTS)
    with pytest.raises(InvalidFields):
        job_workflow.deliver_job(db, job.id, admin, FakeDelivery(), recipients=["not-an-email"])


def test_start_work_by_assigned_tech(db, scheduled_job, make_tech):
    job, member = scheduled_job
    tech = make_tech(member)
    job_workflow.transition_job(db, job.id, TransitionRequest(target=JobStatus.en_route), tech)
    job_workflow.transition_job(db, job.id, TransitionRequest(target=JobStatus.on_site), tech)
    started = job_workflow.start_work(db, job.id, tech)

    assert started.status == JobStatus.on_site
    assert started.started_at is not None
    assert [e.action for e in list_activity(db, job.id)] == [
        "status_en_route",
        "status_on_site",
        "status_in_progress",
    ]


def test_field_note_requires_text(db, scheduled_job, make_tech):
    job, member = scheduled_job
    tech = make_tech(member)
    with pytest.raises(MissingFields):
        job_workflow.add_field_note(db, job.id, tech, "   ")
    entry = job_workflow.add_field_note(db, job.id, tech, "Dog in the yard")
    assert entry.action == "field_note"
    assert entry.details == {"note": "Dog in the yard"}


def test_customer_update_is_diffed(db, make_job, admin):
    job = make_job(customer_phone="555-0100")
    updated = job_workflow.update_customer_contact(db, job.id, admin, {"customer_phone": "555-0199"})
    assert updated.customer_phone == "555-0199"
    entry = list_activity(db, job.id)[0]
    assert entry.details["changes"] == {"customer_phone": {"before": "555-0100", "after": "555-0199"}}


def test_customer_update_validates_email(db, make_job, admin):
    job = make_job()
    with pytest.raises(InvalidFields) as exc:
        job_workflow.update_customer_contact(db, job.id, admin, {"customer_email": "nope"})
    assert "customer_email" in exc.value.errors


def test_marking_paid_twice_is_idempotent(db, make_job, admin):
    job = make_job(status="delivered", payment_status="invoiced")
    first = job_workflow.set_payment_status(db, job.id, admin, PaymentStatus.paid)
    second = job_workflow.set_payment_status(db, job.id, admin, PaymentStatus.paid)

    assert first.payment_status == second.payment_status == PaymentStatus.paid
    assert second.payment_received_at == first.payment_received_at
    assert second.version == first.version
    entries = list_activity(db, job.id)
    assert [e.action for e in entries] == ["payment_marked_paid", "payment_marked_paid"]
    assert entries[1].details["unchanged"] is True


def test_stale_writer_loses(db, scheduled_job, admin):
    job, _ = scheduled_job
    stale = job_store.get_job(db, job.id)

    job_workflow.transition_job(db, job.id, TransitionRequest(target=JobStatus.cancelled), admin)

    result = apply_transition(stale, TransitionRequest(target=JobStatus.en_route), admin)
    with pytest.raises(ConcurrentModification):
        with job_store.transaction(db):
            job_workflow.persist_result(db, stale, result, admin)

    assert job_store.get_job(db, job.id).status == JobStatus.cancelled
    assert [e.action for e in list_activity(db, job.id)] == ["job_cancelled"]


def test_webhook_and_poller_settle_once(db, make_job):
    job = make_job(status="on_site")
    settlement.record_settlement(db, job.id, reference="pi_1", source="webhook")
    again = settlement.record_settlement(db, job.id, reference="pi_1", source="field_collection")

    assert again.payment_status == PaymentStatus.paid
    entries = list_activity(db, job.id)
    assert [e.details.get("duplicate") for e in entries] == [None, True]


def test_unknown_job_is_not_found(db, admin):
    with pytest.raises(JobNotFound):
        job_workflow.get_job_for(db, "not-a-uuid", admin)


def test_hard_delete_is_admin_only(db, scheduled_job, make_tech):
    job, member = scheduled_job
    with pytest.raises(Forbidden):
        job_workflow.delete_job(db, job.id, make_tech(member))


def test_failed_ledger_write_fails_the_whole_transition(db, session_factory, scheduled_job, make_tech, monkeypatch):
    job, member = scheduled_job
    real_flush = db.flush

    def flush(*args, **kwargs):
        if any(isinstance(obj, JobActivity) for obj in db.new):
            raise SQLAlchemyError("disk I/O error")
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(db, "flush", flush)
    with pytest.raises(LedgerWriteError):
        job_workflow.transition_job(db, job.id, TransitionRequest(target=JobStatus.en_route), make_tech(member))

    with session_factory() as s:
        reloaded = job_store.get_job(s, job.id)
        assert reloaded.status == JobStatus.scheduled
        assert reloaded.en_route_at is None
        assert reloaded.version == job.version
        assert list_activity(s, job.id) == []


def test_failed_job_write_is_a_persistence_error(db, session_factory, scheduled_job, admin, monkeypatch):
    job, _ = scheduled_job
    real_execute = db.execute

    def execute(statement, *args, **kwargs):
        if isinstance(statement, Update):
            raise SQLAlchemyError("database is locked")
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", execute)
    with pytest.raises(PersistenceError):
        job_workflow.transition_job(db, job.id, TransitionRequest(target=JobStatus.cancelled), admin)

    with session_factory() as s:
        assert job_store.get_job(s, job.id).status == JobStatus.scheduled
        assert list_activity(s, job.id) == []
