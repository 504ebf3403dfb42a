"""
History assembler: the ordered lineage of a VTI for display and audit.

Ordering is by event timestamp, then event id, never by arrival. Actor
identities come from one batched directory lookup; actors that cannot be
resolved show up as a placeholder instead of failing the read.
"""
import json
import logging
from typing import Dict, Iterable, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import registry
from errors import Internal, NotFound
from models import Event
from profiles import PLACEHOLDER_ACTOR, ProfileDirectory
from schemas import Actor, GeoLocation, History, HistoryEvent, Verification
from utils import chain_body, verify_chain

logger = logging.getLogger(__name__)


class ActorDirectory(Protocol):
    def resolve_many(self, actor_ids: Iterable[str]) -> Dict[str, Actor]: ...


def _resolve_actors(directory: ActorDirectory, actor_ids: Iterable[str]) -> Dict[str, Actor]:
    ids = set(actor_ids)
    if not ids:
        return {}
    try:
        return directory.resolve_many(ids)
    except Exception:
        # display data only, the lineage itself is still complete
        logger.warning("actor lookup failed for %d actors, using placeholders", len(ids), exc_info=True)
        return {}


def _geo(e: Event) -> Optional[GeoLocation]:
    if e.geo_lat is None or e.geo_lng is None:
        return None
    return GeoLocation(lat=e.geo_lat, lng=e.geo_lng)


def _events_in_time_order(db: Session, vti_id: str) -> List[Event]:
    return db.scalars(
        select(Event)
        .where(Event.vti_id == vti_id)
        .order_by(Event.timestamp.asc(), Event.id.asc())
    ).all()


def get_history(db: Session, vti_id: str, directory: Optional[ActorDirectory] = None) -> History:
    try:
        vti = registry.get_summary(db, vti_id)
        events = _events_in_time_order(db, vti_id)
    except SQLAlchemyError as exc:
        logger.exception("failed to read history of VTI %s", vti_id)
        raise Internal("Failed to fetch traceability history.") from exc

    actors = _resolve_actors(directory or ProfileDirectory(db), (e.actor_id for e in events))
    return History(
        vti=registry.to_summary(vti),
        events=[
            HistoryEvent(
                id=e.id,
                event_type=e.event_type,
                timestamp=e.timestamp,
                payload=json.loads(e.payload),
                actor_id=e.actor_id,
                actor=actors.get(e.actor_id, PLACEHOLDER_ACTOR),
                geo_location=_geo(e),
                document_id=e.document_id,
                hash=e.hash,
            )
            for e in events
        ],
    )


def get_field_history(db: Session, field_id: str, directory: Optional[ActorDirectory] = None) -> History:
    vti = registry.find_by_field(db, field_id)
    if vti is None:
        raise NotFound(f"No VTI is anchored to field {field_id}.")
    return get_history(db, vti.id, directory)


def chain_of(db: Session, vti_id: str) -> List[dict]:
    events = db.scalars(select(Event).where(Event.vti_id == vti_id).order_by(Event.seq.asc())).all()
    chain = []
    for e in events:
        geo = _geo(e)
        chain.append({
            "body": chain_body(e.event_type, e.actor_id, json.loads(e.payload),
                               geo.model_dump() if geo else None),
            "timestamp": e.timestamp,
            "prev_hash": e.prev_hash,
            "hash": e.hash,
        })
    return chain


def verify_lineage(db: Session, vti_id: str) -> Verification:
    registry.get_summary(db, vti_id)
    chain = chain_of(db, vti_id)
    verified = verify_chain(chain)
    if not verified:
        logger.warning("hash chain of VTI %s does not verify", vti_id)
    return Verification(vti_id=vti_id, verified=verified, events=len(chain))
