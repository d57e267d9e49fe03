"""
Data access for jobs and team members.

The backing table is chosen here, once, from the job kind; everything above
this module works on the unified JobRecord. Legacy status names are
translated on the way in (JobRecord validators) and never written back.
"""
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import JOB_MODELS, TEAM_MEMBER_MODELS, utcnow
from ..schemas.jobs import JobRecord
from .errors import ConcurrentModification, JobNotFound, JobWorkflowError, PersistenceError
from .transitions import TeamMemberRef

logger = structlog.get_logger(__name__)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    One job change plus its activity entries: both commit or neither does.
    A failed audit write therefore fails the whole operation.
    """
    try:
        yield db
        db.commit()
    except JobWorkflowError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("job_transaction_failed", error=str(e))
        raise PersistenceError("Could not save the job change and its activity") from e


def _parse_id(job_id: Any) -> uuid.UUID:
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except ValueError as exc:
        raise JobNotFound(job_id) from exc


def find_job_row(db: Session, job_id: Any, kind: Optional[str] = None):
    """Look a job up by id. Without a kind, assessments are tried before inspections."""
    jid = _parse_id(job_id)
    kinds = [str(kind)] if kind else list(JOB_MODELS)
    for k in kinds:
        row = db.query(JOB_MODELS[k]).filter(JOB_MODELS[k].id == jid).first()
        if row is not None:
            return row
    return None


def get_job_with_row(db: Session, job_id: Any, kind: Optional[str] = None) -> Tuple[JobRecord, Any]:
    row = find_job_row(db, job_id, kind)
    if row is None:
        raise JobNotFound(job_id)
    return JobRecord.model_validate(row), row


def get_job(db: Session, job_id: Any, kind: Optional[str] = None) -> JobRecord:
    record, _ = get_job_with_row(db, job_id, kind)
    return record


def update_job(db: Session, job: JobRecord, changes: Dict[str, Any]) -> JobRecord:
    """
    Write changed fields with a compare-and-set on the row version.

    Raises:
        ConcurrentModification: another writer changed the job since it was read
    """
    if not changes:
        return job
    model = JOB_MODELS[job.kind.value]
    values = dict(changes)
    values["version"] = job.version + 1
    result = db.execute(
        update(model)
        .where(model.id == job.id, model.version == job.version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("job_update_conflict", job_id=str(job.id), expected_version=job.version)
        raise ConcurrentModification("Job was changed by someone else; reload and try again")
    row = db.get(model, job.id, populate_existing=True)
    return JobRecord.model_validate(row)


def create_job_row(db: Session, kind: str, values: Dict[str, Any]):
    model = JOB_MODELS[str(kind)]
    row = model(**values)
    if row.created_at is None:
        row.created_at = utcnow()
    db.add(row)
    db.flush()
    return row


def delete_job_row(db: Session, job: JobRecord) -> None:
    row = find_job_row(db, job.id, job.kind.value)
    if row is None:
        raise JobNotFound(job.id)
    db.delete(row)
    db.flush()


def get_team_member(db: Session, kind: str, member_id: Optional[uuid.UUID]) -> Optional[TeamMemberRef]:
    """Resolve an active member within one pool only."""
    if member_id is None:
        return None
    model = TEAM_MEMBER_MODELS[str(kind)]
    member = db.query(model).filter(model.id == member_id, model.is_active.is_(True)).first()
    if member is None:
        return None
    return TeamMemberRef(id=member.id, kind=str(kind), name=member.name)
