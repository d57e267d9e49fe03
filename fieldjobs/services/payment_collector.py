"""
Field payment collection.

Drives the on-site "collect payment, then complete" flow for one job and one
client session:

    idle -> confirm -> generating -> collecting -> success | timeout | error

Polling runs as an asyncio task that sleeps between attempts. The processor's
answer is only a signal: the paid write itself goes through
settlement.record_settlement, the same idempotent path the webhook uses.
"""
import asyncio
import time
from contextlib import contextmanager
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..logging import job_context
from ..schemas.jobs import Actor, JobRecord, JobStatus, PaymentStatus
from .errors import ExternalServiceError, InvalidTransition, JobWorkflowError, MissingFields
from .job_workflow import get_job_for
from .settlement import complete_after_payment, record_payment_link, record_settlement
from .stripe_client import PayableLink, PaymentProcessor, Settlement

logger = structlog.get_logger(__name__)


class CollectorState(str, Enum):
    idle = "idle"
    confirm = "confirm"
    generating = "generating"
    collecting = "collecting"
    success = "success"
    timeout = "timeout"
    error = "error"


class FieldPaymentCollector:
    def __init__(
        self,
        job_id: Any,
        actor: Actor,
        processor: PaymentProcessor,
        session_factory: Callable[[], Session],
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.job_id = str(job_id)
        self.actor = actor
        self.processor = processor
        self.session_factory = session_factory
        self.poll_interval = settings.payment_poll_interval_seconds if poll_interval is None else poll_interval
        self.poll_timeout = settings.payment_poll_timeout_seconds if poll_timeout is None else poll_timeout
        self._clock = clock
        self._sleep = sleep

        self._state = CollectorState.idle
        self.changed_at = clock()
        self.amount: Optional[Decimal] = None
        self.link: Optional[PayableLink] = None
        self.error: Optional[str] = None
        self.job: Optional[JobRecord] = None
        self.polls = 0
        self._deadline: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @contextmanager
    def _db(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _require(self, requested: str, *states: CollectorState) -> None:
        if self.state not in states:
            raise InvalidTransition(self.state.value, requested, [s.value for s in states])

    @property
    def state(self) -> CollectorState:
        return self._state

    @state.setter
    def state(self, value: CollectorState) -> None:
        self._state = value
        self.changed_at = self._clock()

    def idle_for(self) -> float:
        """Seconds since the last state change."""
        return self._clock() - self.changed_at

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def confirm(self) -> Decimal:
        """
        Load the job and present the total to collect. A job that is already
        paid skips straight to completion.
        """
        self._require("confirm", CollectorState.idle, CollectorState.confirm)
        with self._db() as db:
            job = get_job_for(db, self.job_id, self.actor)
            if job.payment_status == PaymentStatus.paid:
                self._finish(db)
                return job.amount_due or Decimal("0")
            if job.status != JobStatus.on_site:
                raise InvalidTransition(job.status.value, JobStatus.field_complete.value, [JobStatus.on_site.value])
            if job.amount_due is None:
                raise MissingFields(["invoice_amount"], target=JobStatus.field_complete.value)
        self.job = job
        self.amount = Decimal(job.amount_due)
        self.error = None
        self.state = CollectorState.confirm
        return self.amount

    async def generate(self) -> CollectorState:
        """Request a payable link and start polling for its settlement."""
        self._require("generate", CollectorState.confirm, CollectorState.error)
        self.state = CollectorState.generating
        self.error = None
        try:
            with self._db() as db:
                job = get_job_for(db, self.job_id, self.actor)
                if job.payment_status == PaymentStatus.paid:
                    self._finish(db)
                    return self.state
                amount = job.amount_due if job.amount_due is not None else self.amount
                if amount is None:
                    raise MissingFields(["invoice_amount"], target=JobStatus.field_complete.value)
                link = await self.processor.create_payable_link(job, Decimal(amount))
                if self.state != CollectorState.generating:
                    # Abandoned while the processor was answering
                    return self.state
                self.job = record_payment_link(db, job.id, link, Decimal(amount), self.actor)
        except JobWorkflowError as e:
            self._fail(e.message)
            return self.state

        self.link = link
        self.amount = Decimal(amount)
        logger.info("payment_link_generated", job_id=self.job_id, reference=link.reference)
        self._start_polling()
        return self.state

    def continue_waiting(self) -> CollectorState:
        """Re-enter collecting with a fresh timeout window."""
        self._require("continue", CollectorState.timeout)
        self._start_polling()
        return self.state

    async def retry(self) -> CollectorState:
        self._require("retry", CollectorState.error)
        return await self.generate()

    def abandon(self) -> CollectorState:
        """Stop polling and go back to idle. The job is left as it is."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._deadline = None
        if self.state != CollectorState.success:
            self.state = CollectorState.idle
            self.error = None
        logger.info("payment_collection_abandoned", job_id=self.job_id, state=self.state.value)
        return self.state

    async def wait(self) -> CollectorState:
        """Wait for the current poll loop to end (used by tests and shutdown)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        return self.state

    def _start_polling(self) -> None:
        self.state = CollectorState.collecting
        self._deadline = self._clock() + self.poll_timeout
        self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        with job_context(self.job_id, actor_role=self.actor.role):
            while True:
                await self._sleep(self.poll_interval)
                self.polls += 1
                try:
                    settlement = await self.processor.get_settlement(
                        self.job_id, self.link.reference if self.link else None
                    )
                except ExternalServiceError as e:
                    logger.warning("payment_poll_failed", error=e.message, attempt=self.polls)
                    settlement = None

                if settlement is not None and settlement.paid:
                    self._settle(settlement)
                    return

                if self._clock() >= self._deadline:
                    self.state = CollectorState.timeout
                    logger.info("payment_poll_timeout", polls=self.polls)
                    return

    def _settle(self, settlement: Settlement) -> None:
        try:
            with self._db() as db:
                record_settlement(
                    db,
                    self.job_id,
                    reference=settlement.reference or (self.link.reference if self.link else None),
                    amount=settlement.amount,
                    source="field_collection",
                )
                self._finish(db)
        except JobWorkflowError as e:
            self._fail(e.message)

    def _finish(self, db: Session) -> None:
        self.job = complete_after_payment(db, self.job_id, self.actor)
        self.state = CollectorState.success
        logger.info("payment_collection_succeeded", job_id=self.job_id, polls=self.polls)

    def _fail(self, message: str) -> None:
        self.state = CollectorState.error
        self.error = message
        logger.warning("payment_collection_failed", job_id=self.job_id, error=message)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "amount": str(self.amount) if self.amount is not None else None,
            "checkout_url": self.link.url if self.link else None,
            "error": self.error,
            "polls": self.polls,
        }


class CollectorRegistry:
    """
    One collector per (job, client session); a second open reuses the first.

    Collectors that are not polling are evicted once they have sat unchanged
    for the retention window, so finished and forgotten collections do not
    accumulate. A successful collection stays readable for that window.
    """

    def __init__(self, retention_seconds: Optional[float] = None):
        self.retention_seconds = (
            settings.payment_collector_retention_seconds if retention_seconds is None else retention_seconds
        )
        self._collectors: Dict[Tuple[str, str], FieldPaymentCollector] = {}

    def __len__(self) -> int:
        return len(self._collectors)

    def prune(self) -> int:
        stale = [
            key
            for key, collector in self._collectors.items()
            if not collector.running and collector.idle_for() >= self.retention_seconds
        ]
        for key in stale:
            del self._collectors[key]
        if stale:
            logger.info("payment_collectors_evicted", count=len(stale))
        return len(stale)

    def get(self, job_id: Any, session_id: str) -> Optional[FieldPaymentCollector]:
        self.prune()
        return self._collectors.get((str(job_id), session_id))

    def open(
        self,
        job_id: Any,
        session_id: str,
        factory: Callable[[], FieldPaymentCollector],
    ) -> FieldPaymentCollector:
        self.prune()
        key = (str(job_id), session_id)
        existing = self._collectors.get(key)
        if existing is not None and existing.state not in (CollectorState.idle, CollectorState.success):
            return existing
        collector = factory()
        self._collectors[key] = collector
        return collector

    def discard(self, job_id: Any, session_id: str) -> None:
        collector = self._collectors.pop((str(job_id), session_id), None)
        if collector is not None:
            collector.abandon()

    async def shutdown(self) -> None:
        for collector in list(self._collectors.values()):
            collector.abandon()
            await collector.wait()
        self._collectors.clear()
