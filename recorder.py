"""
Event recorder: validates one lifecycle event and appends it to a VTI.

Events are immutable once written. Each VTI's events also form a hash chain
in write order (`seq`), so tampering with stored rows is detectable; the
display order is by event timestamp and is the history assembler's concern.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

import registry
from config import CHAIN_APPEND_RETRIES
from errors import Internal, InvalidArgument, NotFound, Unauthenticated
from models import Event, Vti
from schemas import EventType, GeoLocation, PAYLOAD_MODELS, RecordResult
from utils import GENESIS, chain_body, compute_hash, new_id, parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

# events that may open the VTI of a field seen for the first time
FIELD_STAGE = {
    EventType.PLANTED.value,
    EventType.OBSERVED.value,
    EventType.INPUT_APPLIED.value,
    EventType.HARVESTED.value,
}


def summary_fields(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Metadata keys an event refreshes on its VTI."""
    out: Dict[str, Any] = {}
    if event_type == EventType.PLANTED.value:
        out["cropType"] = payload["cropType"]
    elif event_type == EventType.HARVESTED.value:
        out["initialYieldKg"] = payload["yieldKg"]
        if payload.get("qualityGrade") is not None:
            out["initialQualityGrade"] = payload["qualityGrade"]
    return out


def _check_event_type(event_type: Optional[str]) -> str:
    if not event_type or not isinstance(event_type, str):
        raise InvalidArgument("The 'eventType' parameter is required and must be a string.")
    name = event_type.strip().upper()
    if name not in PAYLOAD_MODELS:
        raise InvalidArgument(f"Unknown event type {event_type!r}.")
    return name


def _check_payload(event_type: str, payload: Dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise InvalidArgument("The 'payload' parameter must be an object.")
    try:
        PAYLOAD_MODELS[event_type].model_validate(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidArgument(f"Invalid {event_type} payload: {problems}")


def _check_geo(geo: Union[GeoLocation, Dict[str, Any], None]) -> Optional[Dict[str, float]]:
    if geo is None:
        return None
    if isinstance(geo, GeoLocation):
        return geo.model_dump()
    try:
        return GeoLocation.model_validate(geo).model_dump()
    except ValidationError:
        raise InvalidArgument("The 'geoLocation' parameter must be an object with lat and lng.")


def _check_timestamp(value: Union[str, datetime, None]) -> str:
    try:
        ts = parse_timestamp(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid timestamp {value!r}, expected ISO-8601.")
    return to_iso(ts or utcnow())


def _find_by_document(db: Session, document_id: str) -> Optional[Event]:
    return db.scalar(select(Event).where(Event.document_id == document_id))


def _resolve_vti(db: Session, event_type: str, target: str) -> str:
    if db.get(Vti, target) is not None:
        return target
    vti = registry.find_by_field(db, target)
    if vti is not None:
        return vti.id
    if event_type in FIELD_STAGE:
        return registry.ensure(db, target)
    raise NotFound(f"VTI or field with ID {target} not found.")


def _append_event(db: Session, vti_id: str, ev_type: str, actor_id: str, payload: dict,
                  ts_iso: str, geo: Optional[dict], document_id: Optional[str]) -> Event:
    prev = db.scalar(select(Event).where(Event.vti_id == vti_id).order_by(Event.seq.desc()).limit(1))
    prev_hash = prev.hash if prev else GENESIS
    last_seq = prev.seq if prev else 0
    h = compute_hash(prev_hash, chain_body(ev_type, actor_id, payload, geo), ts_iso)
    ev = Event(
        id=new_id(),
        vti_id=vti_id,
        event_type=ev_type,
        actor_id=actor_id,
        payload=json.dumps(payload),
        timestamp=ts_iso,
        recorded_at=to_iso(utcnow()),
        geo_lat=geo["lat"] if geo else None,
        geo_lng=geo["lng"] if geo else None,
        document_id=document_id,
        seq=last_seq + 1,
        prev_hash=prev_hash,
        hash=h,
    )
    db.add(ev)
    db.flush()
    return ev


def record_event(
    db: Session,
    event_type: str,
    field_or_vti_id: str,
    actor_id: str,
    payload: Optional[Dict[str, Any]] = None,
    timestamp: Union[str, datetime, None] = None,
    geo_location: Union[GeoLocation, Dict[str, Any], None] = None,
    document_id: Optional[str] = None,
) -> RecordResult:
    """Validate and append one event, opening the field's VTI when needed.

    A `document_id` that was already recorded returns the stored event with
    `duplicate=True` and writes nothing.
    """
    if not actor_id:
        raise Unauthenticated("User must be authenticated to log a trace event.")
    ev_type = _check_event_type(event_type)
    if not field_or_vti_id or not str(field_or_vti_id).strip():
        raise InvalidArgument("A field or VTI id is required.")
    payload = {} if payload is None else payload
    _check_payload(ev_type, payload)
    geo = _check_geo(geo_location)
    ts_iso = _check_timestamp(timestamp)
    target = str(field_or_vti_id).strip()

    try:
        if document_id:
            existing = _find_by_document(db, document_id)
            if existing:
                logger.info("document %s already recorded as event %s", document_id, existing.id)
                return RecordResult(event_id=existing.id, vti_id=existing.vti_id, duplicate=True)

        vti_id = _resolve_vti(db, ev_type, target)
        for attempt in range(1, CHAIN_APPEND_RETRIES + 1):
            try:
                ev = _append_event(db, vti_id, ev_type, actor_id, payload, ts_iso, geo, document_id)
                summary = summary_fields(ev_type, payload)
                if summary:
                    registry.merge_metadata(db, vti_id, summary, commit=False)
                db.commit()
            except (IntegrityError, StaleDataError):
                db.rollback()
                if document_id:
                    existing = _find_by_document(db, document_id)
                    if existing:
                        return RecordResult(event_id=existing.id, vti_id=existing.vti_id, duplicate=True)
                logger.info("append to VTI %s raced another writer (attempt %d)", vti_id, attempt)
                continue
            logger.info("recorded %s event %s on VTI %s by %s", ev_type, ev.id, vti_id, actor_id)
            return RecordResult(event_id=ev.id, vti_id=vti_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("failed to record %s event on %s", ev_type, target)
        raise Internal("Failed to log trace event.") from exc
    raise Internal(f"Could not append to VTI {vti_id} after {CHAIN_APPEND_RETRIES} attempts.")
