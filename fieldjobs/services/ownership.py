"""
Ownership checks for job mutations.
"""
from typing import FrozenSet, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.models import TEAM_MEMBER_MODELS
from ..schemas.jobs import Actor, ActorRole, JobRecord
from .errors import Forbidden


def is_admin(actor: Actor) -> bool:
    return actor.role == ActorRole.admin.value


def is_field_tech(actor: Actor) -> bool:
    return actor.role == ActorRole.field_tech.value


def find_assignable(db: Session, kind: str, email: Optional[str]) -> FrozenSet[str]:
    """Ids of active team members in one pool whose contact email matches."""
    if not email or not email.strip():
        return frozenset()
    model = TEAM_MEMBER_MODELS[str(kind)]
    rows = (
        db.query(model.id)
        .filter(func.lower(model.email) == email.strip().lower(), model.is_active.is_(True))
        .all()
    )
    return frozenset(str(r.id) for r in rows)


def resolve_member_ids(db: Session, email: Optional[str]) -> FrozenSet[str]:
    """
    A technician may be registered as both an assessor and an inspector,
    so both pools are searched.
    """
    ids: FrozenSet[str] = frozenset()
    for kind in TEAM_MEMBER_MODELS:
        ids = ids | find_assignable(db, kind, email)
    return ids


def can_act(actor: Actor, job: JobRecord) -> bool:
    """
    Check if an actor may mutate a job.
    - Admin can act on any job
    - Field tech only on jobs currently assigned to one of their team-member records
    - Anyone else cannot
    """
    if is_admin(actor):
        return True

    if is_field_tech(actor):
        # Fail closed when there is no contact identity to match on
        if not actor.email or not actor.member_ids:
            return False
        if job.assigned_to is None:
            return False
        return str(job.assigned_to) in actor.member_ids

    return False


def ensure_can_act(actor: Actor, job: JobRecord) -> None:
    if not can_act(actor, job):
        if is_field_tech(actor):
            raise Forbidden("Job not assigned to you")
        raise Forbidden("You do not have access to this job")
