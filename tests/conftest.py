"""
Shared test fixtures.

Provides: in-memory SQLite session factory, actors, team members, a job
factory, and fake payment processor / result delivery doubles.
"""
import asyncio
import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldjobs.db import Base
from fieldjobs.models.models import JOB_MODELS, TEAM_MEMBER_MODELS, utcnow
from fieldjobs.schemas.jobs import Actor, ActorRole, JobRecord
from fieldjobs.services.delivery import DeliveryOutcome
from fieldjobs.services.errors import ExternalServiceError
from fieldjobs.services.stripe_client import PayableLink, Settlement


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_member(db):
    def _make(kind: str = "assessment", name: str = "Sam Tech", email: Optional[str] = "sam@example.com", active: bool = True):
        model = TEAM_MEMBER_MODELS[kind]
        member = model(name=name, email=email, is_active=active)
        db.add(member)
        db.commit()
        return member

    return _make


@pytest.fixture
def make_job(db):
    """Insert a job row directly (bypassing the workflow) in any status."""

    def _make(kind: str = "assessment", status: str = "pending", **fields) -> JobRecord:
        values = {
            "status": status,
            "payment_status": "unpaid",
            "customer_name": "Dana Homeowner",
            "customer_email": "dana@example.com",
            "address": "12 Elm St",
            "city": "Springfield",
            "invoice_amount": Decimal("250.00"),
            "created_at": utcnow(),
        }
        values.update(fields)
        row = JOB_MODELS[kind](**values)
        db.add(row)
        db.commit()
        return JobRecord.model_validate(row)

    return _make


@pytest.fixture
def admin():
    return Actor(id=str(uuid.uuid4()), role=ActorRole.admin.value, name="Alex Admin", email="alex@example.com")


@pytest.fixture
def homeowner():
    return Actor(id=str(uuid.uuid4()), role=ActorRole.homeowner.value, name="Dana", email="dana@example.com")


@pytest.fixture
def make_tech():
    def _make(*members, email: str = "sam@example.com") -> Actor:
        return Actor(
            id=str(uuid.uuid4()),
            role=ActorRole.field_tech.value,
            name="Sam Tech",
            email=email,
            member_ids=frozenset(str(m.id) for m in members),
        )

    return _make


@pytest.fixture
def scheduled_job(make_job, make_member):
    """An assessment already scheduled and assigned to a team member."""
    member = make_member()
    job = make_job(
        status="scheduled",
        assigned_to=member.id,
        scheduled_date=date(2030, 5, 1),
        scheduled_time="09:00",
    )
    return job, member


class FakeDelivery:
    def __init__(self, ok: bool = True, error: Optional[str] = None):
        self.ok = ok
        self.error = error
        self.calls: List[tuple] = []

    def deliver_result(self, job, recipients):
        self.calls.append((job.id, list(recipients)))
        return DeliveryOutcome(ok=self.ok, error=None if self.ok else (self.error or "smtp down"))


class FakeProcessor:
    """Settles on the Nth poll (never when paid_on is None)."""

    def __init__(self, paid_on: Optional[int] = None, fail_link: Optional[str] = None, fail_polls: int = 0):
        self.paid_on = paid_on
        self.fail_link = fail_link
        self.fail_polls = fail_polls
        self.polls = 0
        self.links: List[tuple] = []

    async def create_payable_link(self, job, amount: Decimal) -> PayableLink:
        if self.fail_link:
            raise ExternalServiceError("payment", self.fail_link)
        self.links.append((job.id, amount))
        return PayableLink(url=f"https://pay.example.com/{job.id}", reference=f"cs_test_{len(self.links)}")

    async def get_settlement(self, job_id: str, reference: Optional[str]) -> Settlement:
        self.polls += 1
        if self.polls <= self.fail_polls:
            raise ExternalServiceError("payment", "temporarily unavailable")
        if self.paid_on is not None and self.polls >= self.paid_on:
            return Settlement(status="paid", reference="pi_test_1", amount=Decimal("250.00"))
        return Settlement(status="pending")


class FakeClock:
    """Monotonic clock advanced by the fake sleep, so poll loops run instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()
