"""
Result delivery to homeowners and brokers.
Sends report links by email; callers decide what a failed delivery means.
"""
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional, Protocol

import structlog

from ..config import settings
from ..schemas.jobs import JobRecord

logger = structlog.get_logger(__name__)


@dataclass
class DeliveryOutcome:
    ok: bool
    error: Optional[str] = None


class ResultDelivery(Protocol):
    def deliver_result(self, job: JobRecord, recipients: List[str]) -> DeliveryOutcome:
        ...


def default_recipients(job: JobRecord) -> List[str]:
    """Homeowner first, then the payer when it is someone else (e.g. a referring broker)."""
    recipients: List[str] = []
    for email in (job.customer_email, job.payer_email):
        if email and email.strip() and email.strip().lower() not in {r.lower() for r in recipients}:
            recipients.append(email.strip())
    return recipients


def build_result_message(job: JobRecord, recipients: List[str], sender: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = f"Your {job.service_label} results"
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)

    lines = [f"Hello {job.customer_name or ''},".replace(" ,", ","), ""]
    address = job.service_address
    lines.append(f"The results for your {job.service_label}" + (f" at {address}" if address else "") + " are ready.")
    lines.append("")
    for report_kind, url in sorted((job.report_urls or {}).items()):
        lines.append(f"{report_kind.replace('_', ' ').title()}: {url}")
    if job.payment_status.value != "paid" and job.amount_due is not None:
        lines.append("")
        lines.append(f"Amount due: ${job.amount_due}")
        if job.checkout_url:
            lines.append(f"Pay online: {job.checkout_url}")
    msg.set_content("\n".join(lines))
    return msg


class EmailResultDelivery:
    """SMTP delivery using the MAIL/SMTP settings."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
    ):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username or settings.smtp_username
        self.password = password or settings.smtp_password
        self.use_tls = settings.smtp_tls if use_tls is None else use_tls
        self.sender = sender or settings.mail_from or settings.smtp_username

    def deliver_result(self, job: JobRecord, recipients: List[str]) -> DeliveryOutcome:
        if not settings.enable_email:
            return DeliveryOutcome(ok=False, error="Email delivery is disabled")
        if not self.host or not self.sender:
            return DeliveryOutcome(ok=False, error="Email delivery is not configured")
        if not recipients:
            return DeliveryOutcome(ok=False, error="No recipients to deliver to")

        msg = build_result_message(job, recipients, self.sender)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as s:
                if self.use_tls:
                    s.starttls()
                if self.username and self.password:
                    s.login(self.username, self.password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("result_delivery_failed", job_id=str(job.id), error=str(e))
            return DeliveryOutcome(ok=False, error=str(e) or e.__class__.__name__)

        logger.info("result_delivered", job_id=str(job.id), recipients=len(recipients))
        return DeliveryOutcome(ok=True)
