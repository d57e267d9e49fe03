import hashlib
import hmac
import json
import time
import uuid
from datetime import date

import jwt
import pytest
from conftest import FakeDelivery, FakeProcessor
from fastapi.testclient import TestClient

from fieldjobs.config import settings
from fieldjobs.db import get_db
from fieldjobs.main import app
from fieldjobs.routes.jobs import get_delivery, get_processor, get_session_factory


def _token(role: str, email: str = None, sub: str = None) -> str:
    payload = {"sub": sub or str(uuid.uuid4()), "role": role, "name": f"Test {role}"}
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _auth(role: str, email: str = None) -> dict:
    return {"Authorization": f"Bearer {_token(role, email)}"}


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def processor():
    return FakeProcessor(paid_on=1)


@pytest.fixture
def client(session_factory, delivery, processor, monkeypatch):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(settings, "auto_create_db", False)
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_delivery] = lambda: delivery
    app.dependency_overrides[get_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return _auth("admin", "alex@example.com")


def test_requires_authentication(client):
    response = client.get(f"/jobs/{uuid.uuid4()}")
    assert response.status_code == 401


def test_create_and_read_job(client, admin_headers):
    response = client.post("/jobs", json={"kind": "assessment", "customer_name": "Lee", "invoice_amount": "250.00"}, headers=admin_headers)
    assert response.status_code == 200
    job = response.json()
    assert job["status"] == "pending"
    assert job["amount_due"] == "250.00"

    fetched = client.get(f"/jobs/{job['id']}", headers=admin_headers)
    assert fetched.json()["id"] == job["id"]

    activity = client.get(f"/jobs/{job['id']}/activity", headers=admin_headers).json()
    assert [e["action"] for e in activity] == ["job_created"]
    assert activity[0]["actor_role"] == "admin"


def test_non_admin_cannot_create_directly(client):
    response = client.post("/jobs", json={"kind": "assessment"}, headers=_auth("homeowner", "dana@example.com"))
    assert response.status_code == 403


def test_missing_fields_are_listed(client, make_job, admin_headers):
    job = make_job()
    response = client.post(f"/jobs/{job.id}/transitions", json={"target": "scheduled"}, headers=admin_headers)
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "missing_fields"
    assert "scheduled_date" in body["fields"]


def test_invalid_transition_reports_allowed_targets(client, make_job, admin_headers):
    job = make_job()
    response = client.post(f"/jobs/{job.id}/transitions", json={"target": "en_route"}, headers=admin_headers)
    assert response.status_code == 409
    assert response.json()["allowed"] == ["scheduled", "cancelled"]


def test_unassigned_tech_gets_forbidden(client, scheduled_job, make_member):
    job, _ = scheduled_job
    make_member(name="Robin", email="robin@example.com")
    response = client.post(
        f"/jobs/{job.id}/transitions",
        json={"target": "en_route"},
        headers=_auth("field_tech", "robin@example.com"),
    )
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_assigned_tech_moves_en_route(client, scheduled_job):
    job, _ = scheduled_job
    headers = _auth("field_tech", "sam@example.com")

    allowed = client.get(f"/jobs/{job.id}/allowed-transitions", headers=headers).json()
    assert allowed == {"status": "scheduled", "allowed": ["en_route"]}

    response = client.post(f"/jobs/{job.id}/transitions", json={"target": "en_route"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["en_route_at"] is not None


def test_admin_schedules_with_full_data(client, make_job, make_member, admin_headers):
    member = make_member()
    job = make_job()
    response = client.post(
        f"/jobs/{job.id}/transitions",
        json={
            "target": "scheduled",
            "scheduled_date": date(2030, 5, 1).isoformat(),
            "scheduled_time": "09:00",
            "assigned_to": str(member.id),
        },
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "scheduled"


def test_failed_delivery_is_a_bad_gateway(client, make_job, delivery, admin_headers):
    delivery.ok = False
    delivery.error = "SMTP down"
    job = make_job(status="report_ready", report_urls={"energy_report": "https://r.example.com/1"})

    response = client.post(f"/jobs/{job.id}/deliver", json={}, headers=admin_headers)

    assert response.status_code == 502
    assert response.json()["detail"] == "SMTP down"
    assert client.get(f"/jobs/{job.id}", headers=admin_headers).json()["status"] == "report_ready"


def test_payment_status_override_requires_flag(client, make_job, admin_headers):
    job = make_job(status="delivered", payment_status="invoiced")
    response = client.post(f"/jobs/{job.id}/payment-status", json={"payment_status": "unpaid"}, headers=admin_headers)
    assert response.status_code == 409

    response = client.post(
        f"/jobs/{job.id}/payment-status",
        json={"payment_status": "unpaid", "override": True, "reason": "refund"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["payment_status"] == "unpaid"


def test_delete_keeps_history_for_admins(client, make_job, admin_headers):
    job = make_job()
    assert client.delete(f"/jobs/{job.id}", headers=admin_headers).status_code == 200
    assert client.get(f"/jobs/{job.id}", headers=admin_headers).status_code == 404
    activity = client.get(f"/jobs/{job.id}/activity", headers=admin_headers).json()
    assert [e["action"] for e in activity] == ["job_deleted"]


def _signed(payload: dict, secret: str) -> tuple:
    body = json.dumps(payload).encode()
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


def test_webhook_settles_idempotently(client, make_job, monkeypatch, admin_headers):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    job = make_job(status="on_site")
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "payment_status": "paid",
                "payment_intent": "pi_1",
                "amount_total": 25000,
                "metadata": {"job_id": str(job.id)},
            }
        },
    }

    for _ in range(2):
        body, headers = _signed(event, "whsec_test")
        response = client.post("/payments/webhook", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json()["payment_status"] == "paid"

    activity = client.get(f"/jobs/{job.id}/activity", headers=admin_headers).json()
    assert [e["action"] for e in activity] == ["payment_received", "payment_received"]
    assert activity[1]["metadata"]["duplicate"] is True


def test_webhook_rejects_bad_signature(client, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    body, headers = _signed({"type": "checkout.session.completed"}, "whsec_wrong")
    assert client.post("/payments/webhook", content=body, headers=headers).status_code == 400


@pytest.fixture
def collection_app(session_factory, processor, monkeypatch):
    """The app wired to the test database, run with its lifespan so poll tasks share one loop."""
    monkeypatch.setattr(settings, "auto_create_db", False)

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_processor] = lambda: processor
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def test_collection_flow_over_http(collection_app, make_job, make_member, monkeypatch):
    monkeypatch.setattr(settings, "payment_poll_interval_seconds", 0.01)
    client = collection_app
    member = make_member()
    job = make_job(status="on_site", assigned_to=member.id)
    headers = dict(_auth("field_tech", "sam@example.com"), **{"X-Client-Session": "tab-1"})

    confirmed = client.post(f"/jobs/{job.id}/collection/confirm", headers=headers).json()
    assert confirmed["state"] == "confirm"
    assert confirmed["amount"] == "250.00"

    generated = client.post(f"/jobs/{job.id}/collection/generate", headers=headers).json()
    assert generated["checkout_url"] == f"https://pay.example.com/{job.id}"

    # Let the poll task finish before touching the shared connection again
    time.sleep(0.3)
    state = client.get(f"/jobs/{job.id}/collection", headers=headers).json()["state"]
    deadline = time.monotonic() + 5
    while state == "collecting" and time.monotonic() < deadline:
        time.sleep(0.2)
        state = client.get(f"/jobs/{job.id}/collection", headers=headers).json()["state"]
    assert state == "success"

    job_body = client.get(f"/jobs/{job.id}", headers=headers).json()
    assert job_body["status"] == "field_complete"
    assert job_body["payment_status"] == "paid"


def test_abandon_over_http_stops_polling(collection_app, make_job, make_member, processor, monkeypatch):
    monkeypatch.setattr(settings, "payment_poll_interval_seconds", 30.0)
    processor.paid_on = None
    client = collection_app
    member = make_member()
    job = make_job(status="on_site", assigned_to=member.id)
    headers = dict(_auth("field_tech", "sam@example.com"), **{"X-Client-Session": "tab-abandon"})

    client.post(f"/jobs/{job.id}/collection/confirm", headers=headers)
    assert client.post(f"/jobs/{job.id}/collection/generate", headers=headers).json()["state"] == "collecting"
    collector = app.state.collectors.get(job.id, "tab-abandon")
    assert collector.running

    response = client.post(f"/jobs/{job.id}/collection/abandon", headers=headers)
    assert response.json()["state"] == "idle"

    deadline = time.monotonic() + 2
    while collector.running and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not collector.running
    assert processor.polls == 0
    assert client.get(f"/jobs/{job.id}/collection", headers=headers).json()["state"] == "idle"

    job_body = client.get(f"/jobs/{job.id}", headers=headers).json()
    assert job_body["status"] == "on_site"
    assert job_body["payment_status"] == "unpaid"
