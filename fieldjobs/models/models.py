import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    Integer,
    Numeric,
    JSON,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class JobColumnsMixin:
    """Columns shared by both job kinds. Lifecycle code never branches on kind."""

    id: Mapped[uuid.UUID] = uuid_pk()
    status: Mapped[str] = mapped_column(String(50), default="pending", index=True)
    payment_status: Mapped[str] = mapped_column(String(20), default="unpaid", index=True)  # unpaid|invoiced|paid
    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)  # team member of this kind's pool
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date, index=True)
    scheduled_time: Mapped[Optional[str]] = mapped_column(String(20))  # HH:MM local

    # Customer / location
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(50))
    zip: Mapped[Optional[str]] = mapped_column(String(20))

    # Requester / payer
    requested_by: Mapped[str] = mapped_column(String(20), default="admin")  # homeowner|broker|admin
    requested_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    payer_type: Mapped[Optional[str]] = mapped_column(String(20))  # homeowner|broker
    payer_name: Mapped[Optional[str]] = mapped_column(String(255))
    payer_email: Mapped[Optional[str]] = mapped_column(String(255))

    # Pricing snapshot (computed by the catalog, stored as-is)
    service_name: Mapped[Optional[str]] = mapped_column(String(255))
    tier_name: Mapped[Optional[str]] = mapped_column(String(255))
    invoice_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    catalog_total_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))

    # Delivered artifacts: {report_kind: url}
    report_urls: Mapped[Optional[dict]] = mapped_column(JSON)

    # Payment processor references
    payment_link_id: Mapped[Optional[str]] = mapped_column(String(255))
    checkout_url: Mapped[Optional[str]] = mapped_column(Text)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reports_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    invoice_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Field-operational timestamps
    en_route_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    arrived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Compare-and-set token for update_job
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class AssessmentJob(JobColumnsMixin, Base):
    """Home-energy assessment jobs"""
    __tablename__ = "assessment_jobs"

    kind = "assessment"


class InspectionJob(JobColumnsMixin, Base):
    """Home inspection jobs"""
    __tablename__ = "inspection_jobs"

    kind = "inspection"


class TeamMemberColumnsMixin:
    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AssessmentTeamMember(TeamMemberColumnsMixin, Base):
    """Energy assessors"""
    __tablename__ = "assessment_team_members"

    kind = "assessment"


class InspectionTeamMember(TeamMemberColumnsMixin, Base):
    """Home inspectors"""
    __tablename__ = "inspection_team_members"

    kind = "inspection"


class JobActivity(Base):
    """Append-only activity ledger. Rows never reference the job tables so they outlive deleted jobs."""
    __tablename__ = "job_activity_log"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    job_kind: Mapped[str] = mapped_column(String(20), nullable=False)  # assessment|inspection
    action: Mapped[str] = mapped_column(String(64), nullable=False)  # job_scheduled|status_en_route|field_note|job_deleted|...
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    actor_name: Mapped[str] = mapped_column(String(255), default="System")
    actor_role: Mapped[str] = mapped_column(String(20), default="system")  # admin|field_tech|homeowner|system
    details: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 over canonical entry

    __table_args__ = (
        Index('idx_activity_job_created', 'job_id', 'created_at'),
    )


JOB_MODELS = {
    "assessment": AssessmentJob,
    "inspection": InspectionJob,
}

TEAM_MEMBER_MODELS = {
    "assessment": AssessmentTeamMember,
    "inspection": InspectionTeamMember,
}
