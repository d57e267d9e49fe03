"""
Stripe Checkout client.
Creates payable links for jobs and reads their settlement state.
"""
import hashlib
import hmac
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from ..config import settings
from ..schemas.jobs import JobRecord
from .errors import ExternalServiceError

logger = structlog.get_logger(__name__)

SETTLEMENT_PENDING = "pending"
SETTLEMENT_PAID = "paid"


@dataclass
class PayableLink:
    url: str
    reference: str


@dataclass
class Settlement:
    status: str  # pending|paid
    reference: Optional[str] = None
    amount: Optional[Decimal] = None

    @property
    def paid(self) -> bool:
        return self.status == SETTLEMENT_PAID


class PaymentProcessor(Protocol):
    async def create_payable_link(self, job: JobRecord, amount: Decimal) -> PayableLink:
        ...

    async def get_settlement(self, job_id: str, reference: Optional[str]) -> Settlement:
        ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: Optional[int]) -> Optional[Decimal]:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


class StripeClient:
    """Client for the Stripe REST API (form-encoded requests, JSON responses)"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.stripe_secret_key
        self.base_url = (base_url or settings.stripe_api_base).rstrip("/")
        self.transport = transport

        if not self.api_key:
            raise ValueError("Stripe secret key is required")

    def _get_auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self._get_auth_header()
        headers.update(kwargs.pop("headers", {}))

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
                return response.json()
        except ValueError as e:
            logger.warning("stripe_invalid_response", endpoint=endpoint, error=str(e))
            raise ExternalServiceError("payment", "Payment processor returned an unreadable response") from e
        except httpx.HTTPStatusError as e:
            message = _stripe_error_message(e.response)
            logger.warning("stripe_request_failed", endpoint=endpoint, status=e.response.status_code, error=message)
            raise ExternalServiceError("payment", message) from e
        except httpx.HTTPError as e:
            logger.warning("stripe_unreachable", endpoint=endpoint, error=str(e))
            raise ExternalServiceError("payment", f"Payment processor unreachable: {e}") from e

    async def create_payable_link(self, job: JobRecord, amount: Decimal) -> PayableLink:
        """Create a Checkout Session for the job's total and return its hosted URL."""
        app_url = settings.public_base_url.rstrip("/")
        address = job.service_address
        data = {
            "mode": "payment",
            "client_reference_id": str(job.id),
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": settings.currency,
            "line_items[0][price_data][unit_amount]": str(to_minor_units(amount)),
            "line_items[0][price_data][product_data][name]": job.service_label,
            "metadata[job_id]": str(job.id),
            "metadata[job_kind]": job.kind.value,
            "success_url": f"{app_url}/payment/success?job_id={job.id}",
            "cancel_url": f"{app_url}/portal/jobs/{job.id}",
        }
        if address:
            data["line_items[0][price_data][product_data][description]"] = f"Service at {address}"
        if job.customer_email:
            data["customer_email"] = job.customer_email

        session = await self._request("POST", "checkout/sessions", data=data)
        url = session.get("url")
        if not url or not session.get("id"):
            raise ExternalServiceError("payment", "Payment processor returned no link")
        return PayableLink(url=url, reference=session["id"])

    async def get_settlement(self, job_id: str, reference: Optional[str]) -> Settlement:
        if not reference:
            return Settlement(status=SETTLEMENT_PENDING)
        session = await self._request("GET", f"checkout/sessions/{reference}")
        session_job = (session.get("metadata") or {}).get("job_id")
        if session_job and session_job != str(job_id):
            raise ExternalServiceError("payment", "Payment session belongs to a different job")
        status = SETTLEMENT_PAID if session.get("payment_status") == "paid" else SETTLEMENT_PENDING
        return Settlement(
            status=status,
            reference=session.get("payment_intent") or session.get("id"),
            amount=from_minor_units(session.get("amount_total")),
        )


def _stripe_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Payment processor error ({response.status_code})"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return f"Payment processor error ({response.status_code})"


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """
    Check a Stripe-Signature header: "t=<unix>,v1=<hex hmac>[,v1=...]".
    The HMAC-SHA256 is computed over "<t>.<raw body>" with the endpoint secret.
    """
    if not signature_header or not secret:
        return False
    if tolerance_seconds is None:
        tolerance_seconds = settings.stripe_webhook_tolerance_seconds

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - ts) > tolerance_seconds:
        return False

    signed = timestamp.encode() + b"." + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)
