from typing import List, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..schemas.jobs import Actor, ActorRole
from ..services.ownership import is_admin, resolve_member_ids


http_bearer = HTTPBearer(auto_error=False)

# Most privileged first; a token carrying several roles acts as the first match
ROLE_PRECEDENCE = (ActorRole.admin.value, ActorRole.field_tech.value, ActorRole.homeowner.value)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def _role_from_claims(payload: dict) -> Optional[str]:
    roles: List[str] = []
    if payload.get("role"):
        roles.append(str(payload["role"]))
    roles.extend(str(r) for r in (payload.get("roles") or []))
    normalized = {r.strip().lower().replace("-", "_") for r in roles}
    for role in ROLE_PRECEDENCE:
        if role in normalized:
            return role
    return None


def actor_from_claims(payload: dict, db: Session) -> Actor:
    """
    Build the acting identity once per request. Field techs get the ids of
    every team-member record sharing their contact email.
    """
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    role = _role_from_claims(payload)
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    email = (payload.get("email") or "").strip() or None
    member_ids = resolve_member_ids(db, email) if role == ActorRole.field_tech.value else frozenset()
    return Actor(
        id=str(subject),
        role=role,
        name=payload.get("name"),
        email=email,
        member_ids=member_ids,
    )


def get_current_actor(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> Actor:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    return actor_from_claims(payload, db)


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not is_admin(actor):
        raise HTTPException(status_code=403, detail="Forbidden")
    return actor
