"""Actor identities for history display and the role check on field events."""
import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import PermissionDenied
from models import Profile
from schemas import Actor, EventType

logger = logging.getLogger(__name__)

PLACEHOLDER_ACTOR = Actor(name="System", role="Platform", avatar_url=None)

FIELD_ROLES = {"FARMER", "ADMIN"}
ROLE_RESTRICTED = {
    EventType.PLANTED.value: FIELD_ROLES,
    EventType.INPUT_APPLIED.value: FIELD_ROLES,
    EventType.HARVESTED.value: FIELD_ROLES,
}


class ProfileDirectory:
    """Looks actors up in the profiles table, all ids in one query."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_many(self, actor_ids: Iterable[str]) -> Dict[str, Actor]:
        ids = sorted(set(actor_ids))
        if not ids:
            return {}
        rows = self.db.scalars(select(Profile).where(Profile.user_id.in_(ids))).all()
        return {
            p.user_id: Actor(
                name=p.display_name or "Unknown Actor",
                role=p.primary_role or "Unknown Role",
                avatar_url=p.avatar_url,
            )
            for p in rows
        }


def get_role(db: Session, user_id: str) -> Optional[str]:
    profile = db.get(Profile, user_id)
    return profile.primary_role.upper() if profile and profile.primary_role else None


def authorize_event(db: Session, caller_id: str, actor_id: str, event_type: str,
                    enforce_roles: bool = True) -> None:
    """Raise PermissionDenied when `caller_id` may not record this event."""
    role = get_role(db, caller_id)
    if actor_id != caller_id and role != "ADMIN":
        raise PermissionDenied("Cannot record events on behalf of another actor.")
    if not enforce_roles:
        return
    allowed = ROLE_RESTRICTED.get(event_type.strip().upper())
    if allowed and role not in allowed:
        logger.info("caller %s with role %s refused %s", caller_id, role, event_type)
        raise PermissionDenied(f"Only farmers or admins can log {event_type} events.")
