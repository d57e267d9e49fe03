"""
Job activity ledger.
Append-only log with integrity hashing. Entries are self-contained (job kind is
denormalized onto each row) so they can be rendered after the job is deleted.
"""
import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import JobActivity, utcnow
from ..schemas.jobs import Actor
from .errors import LedgerWriteError

logger = structlog.get_logger(__name__)


class PendingEntry:
    """An activity entry computed by the transition engine, not yet written."""

    __slots__ = ("action", "summary", "metadata")

    def __init__(self, action: str, summary: str, metadata: Optional[Dict[str, Any]] = None):
        self.action = action
        self.summary = summary
        self.metadata = metadata

    def __repr__(self) -> str:
        return f"PendingEntry({self.action!r}, {self.summary!r})"


def _json_safe(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    return json.loads(json.dumps(value, default=str))


def _canonical_ts(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts.isoformat()


def compute_integrity_hash(
    job_id: str,
    job_kind: str,
    action: str,
    summary: str,
    actor_id: Optional[str],
    actor_role: Optional[str],
    details: Optional[Dict],
    created_at: datetime,
    secret: Optional[str] = None,
) -> Optional[str]:
    if secret is None:
        secret = settings.ledger_integrity_secret or settings.jwt_secret
    if not secret:
        return None

    canonical_data = {
        "job_id": str(job_id),
        "job_kind": job_kind,
        "action": action,
        "summary": summary,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "details": details,
        "created_at": _canonical_ts(created_at),
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)

    hash_input = f"{canonical_json}:{secret}"
    return hashlib.sha256(hash_input.encode()).hexdigest()


def create_activity(
    db: Session,
    job_id: uuid.UUID,
    job_kind: str,
    action: str,
    summary: str,
    actor: Actor,
    metadata: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> JobActivity:
    """
    Append an activity entry to the caller's transaction.

    The row is flushed immediately so a failing write aborts the surrounding
    operation; committing is left to the caller so the job change and its
    audit trail land together.

    Raises:
        LedgerWriteError: the entry could not be written
    """
    created_at = created_at or utcnow()
    details = _json_safe(metadata)
    entry = JobActivity(
        job_id=job_id,
        job_kind=str(job_kind),
        action=action,
        summary=summary,
        actor_id=str(actor.id) if actor.id else None,
        actor_name=actor.display_name,
        actor_role=actor.role,
        details=details,
        created_at=created_at,
        integrity_hash=compute_integrity_hash(
            str(job_id), str(job_kind), action, summary, actor.id, actor.role, details, created_at
        ),
    )
    try:
        db.add(entry)
        db.flush()
    except SQLAlchemyError as e:
        logger.error("activity_write_failed", job_id=str(job_id), action=action, error=str(e))
        raise LedgerWriteError(f"Could not record activity '{action}'") from e
    logger.info("activity_recorded", job_id=str(job_id), action=action, actor_role=actor.role)
    return entry


def append_entries(
    db: Session,
    job_id: uuid.UUID,
    job_kind: str,
    entries: Iterable[PendingEntry],
    actor: Actor,
) -> List[JobActivity]:
    """Write several entries from one operation, keeping their order stable on read."""
    base = utcnow()
    written = []
    for offset, pending in enumerate(entries):
        written.append(
            create_activity(
                db,
                job_id,
                job_kind,
                pending.action,
                pending.summary,
                actor,
                metadata=pending.metadata,
                created_at=base + timedelta(microseconds=offset),
            )
        )
    return written


def list_activity(db: Session, job_id: uuid.UUID, limit: Optional[int] = None) -> List[JobActivity]:
    """Entries for a job, oldest first (newest last). Never joins the job tables."""
    query = (
        db.query(JobActivity)
        .filter(JobActivity.job_id == job_id)
        .order_by(JobActivity.created_at.asc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


def verify_integrity(entry: JobActivity, secret: Optional[str] = None) -> bool:
    if not entry.integrity_hash:
        return False
    expected = compute_integrity_hash(
        str(entry.job_id),
        entry.job_kind,
        entry.action,
        entry.summary,
        entry.actor_id,
        entry.actor_role,
        entry.details,
        entry.created_at,
        secret=secret,
    )
    return expected == entry.integrity_hash


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in sorted(all_keys):
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff
