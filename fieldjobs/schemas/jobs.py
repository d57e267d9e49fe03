import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator


class JobKind(str, Enum):
    assessment = "assessment"
    inspection = "inspection"


class JobStatus(str, Enum):
    pending = "pending"
    scheduled = "scheduled"
    rescheduled = "rescheduled"
    en_route = "en_route"
    on_site = "on_site"
    field_complete = "field_complete"
    report_ready = "report_ready"
    delivered = "delivered"
    cancelled = "cancelled"
    archived = "archived"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    invoiced = "invoiced"
    paid = "paid"


class ActorRole(str, Enum):
    admin = "admin"
    field_tech = "field_tech"
    homeowner = "homeowner"
    system = "system"


# Legacy names still found in older rows; translated on read, never written.
LEGACY_STATUS_ALIASES = {
    "in_progress": JobStatus.on_site.value,
    "completed": JobStatus.delivered.value,
    "confirmed": JobStatus.scheduled.value,
}

LEGACY_PAYMENT_ALIASES = {
    None: PaymentStatus.unpaid.value,
    "": PaymentStatus.unpaid.value,
    "none": PaymentStatus.unpaid.value,
    "pending": PaymentStatus.unpaid.value,
}


def normalize_status(raw: Optional[str]) -> str:
    value = (raw or JobStatus.pending.value).strip().lower()
    return LEGACY_STATUS_ALIASES.get(value, value)


def normalize_payment_status(raw: Optional[str]) -> str:
    if raw in LEGACY_PAYMENT_ALIASES:
        return LEGACY_PAYMENT_ALIASES[raw]
    value = raw.strip().lower()
    return LEGACY_PAYMENT_ALIASES.get(value, value)


@dataclass(frozen=True)
class Actor:
    """Acting identity, resolved once at the request boundary and passed into every core call."""

    id: Optional[str]
    role: str
    name: Optional[str] = None
    email: Optional[str] = None
    # Team-member ids in either pool whose contact email matches this actor
    member_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.role == ActorRole.field_tech.value:
            return "Field Tech"
        if self.role == ActorRole.system.value:
            return "System"
        return self.email or self.role.replace("_", " ").title()

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"id": self.id, "name": self.display_name, "role": self.role}


SYSTEM_ACTOR = Actor(id=None, role=ActorRole.system.value, name="System")


class JobRecord(BaseModel):
    """Unified in-memory shape of a job, whatever table it came from."""

    id: uuid.UUID
    kind: JobKind
    status: JobStatus
    payment_status: PaymentStatus = PaymentStatus.unpaid
    assigned_to: Optional[uuid.UUID] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None

    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None

    requested_by: Optional[str] = None
    requested_by_id: Optional[uuid.UUID] = None
    payer_type: Optional[str] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None

    service_name: Optional[str] = None
    tier_name: Optional[str] = None
    invoice_amount: Optional[Decimal] = None
    catalog_total_price: Optional[Decimal] = None
    report_urls: Optional[Dict[str, str]] = None

    payment_link_id: Optional[str] = None
    checkout_url: Optional[str] = None
    payment_reference: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    reports_sent_at: Optional[datetime] = None
    invoice_sent_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    payment_received_at: Optional[datetime] = None

    version: int = 1

    class Config:
        from_attributes = True

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        if isinstance(v, JobStatus):
            return v
        return normalize_status(v)

    @field_validator("payment_status", mode="before")
    @classmethod
    def _normalize_payment_status(cls, v):
        if isinstance(v, PaymentStatus):
            return v
        return normalize_payment_status(v)

    @property
    def amount_due(self) -> Optional[Decimal]:
        if self.catalog_total_price is not None:
            return self.catalog_total_price
        return self.invoice_amount

    @property
    def service_label(self) -> str:
        label = " - ".join(p for p in [self.service_name, self.tier_name] if p)
        if label:
            return label
        return "Home Energy Assessment" if self.kind == JobKind.assessment else "Home Inspection"

    @property
    def service_address(self) -> str:
        return ", ".join(p for p in [self.address, self.city, self.state, self.zip] if p)


class ActivityEntryOut(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    job_kind: str
    action: str
    summary: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    actor_role: str
    metadata: Optional[dict] = Field(default=None, validation_alias="details")
    created_at: datetime

    class Config:
        from_attributes = True


# Request payloads

class JobCreate(BaseModel):
    kind: JobKind
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    requested_by: Optional[str] = None
    payer_type: Optional[str] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    service_name: Optional[str] = None
    tier_name: Optional[str] = None
    invoice_amount: Optional[Decimal] = None
    catalog_total_price: Optional[Decimal] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    assigned_to: Optional[uuid.UUID] = None


class TransitionIn(BaseModel):
    target: JobStatus
    reason: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    assigned_to: Optional[uuid.UUID] = None
    invoice_amount: Optional[Decimal] = None
    report_urls: Optional[Dict[str, str]] = None


class NoteIn(BaseModel):
    note: str = Field(min_length=1)


class CustomerUpdate(BaseModel):
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


class DeliverIn(BaseModel):
    recipients: Optional[List[str]] = None


class PaymentStatusIn(BaseModel):
    payment_status: PaymentStatus
    override: bool = False
    reason: Optional[str] = None


class DeleteIn(BaseModel):
    reason: Optional[str] = None
