"""
VTI registry: identity and cached summary metadata of traceable items.

A field gets at most one VTI. The unique index on `vtis.field_id` is what
enforces this; `ensure` only has to recover when it loses an insert race.
Metadata is a convenience snapshot and never authoritative, the event log is.
"""
import json
import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import Conflict, InvalidArgument, NotFound
from models import Vti
from schemas import VtiSummary
from utils import new_id, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_VTI_TYPE = "farm_batch"
MERGE_RETRIES = 3


def find_by_field(db: Session, field_id: str) -> Optional[Vti]:
    return db.scalar(select(Vti).where(Vti.field_id == field_id))


def _new_vti(vti_type: str, metadata: Dict[str, Any], field_id: Optional[str] = None,
             linked_vtis: Iterable[str] = ()) -> Vti:
    return Vti(
        id=new_id(),
        field_id=field_id,
        type=vti_type,
        meta=json.dumps(metadata),
        linked_vtis=json.dumps(list(linked_vtis)),
        creation_time=to_iso(utcnow()),
    )


def ensure(db: Session, field_id: str, vti_type: str = DEFAULT_VTI_TYPE) -> str:
    """Return the VTI id anchored to `field_id`, creating it if absent."""
    vti = find_by_field(db, field_id)
    if vti:
        return vti.id
    vti = _new_vti(vti_type, {"farmFieldId": field_id}, field_id=field_id)
    db.add(vti)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = find_by_field(db, field_id)
        if winner is None:
            raise
        logger.info("field %s was anchored concurrently, reusing VTI %s", field_id, winner.id)
        return winner.id
    logger.info("created VTI %s for field %s", vti.id, field_id)
    return vti.id


def register(db: Session, vti_type: str, metadata: Optional[Dict[str, Any]] = None,
             field_id: Optional[str] = None, linked_vtis: Iterable[str] = ()) -> Vti:
    if not vti_type or not vti_type.strip():
        raise InvalidArgument("The 'type' parameter is required.")
    if field_id and find_by_field(db, field_id):
        raise Conflict(f"field {field_id} already has a VTI")
    linked = list(linked_vtis)
    for parent in linked:
        if db.get(Vti, parent) is None:
            raise NotFound(f"linked VTI {parent} not found")
    vti = _new_vti(vti_type, dict(metadata or {}), field_id=field_id, linked_vtis=linked)
    db.add(vti)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"field {field_id} already has a VTI")
    db.refresh(vti)
    logger.info("registered VTI %s (%s)", vti.id, vti_type)
    return vti


def get_summary(db: Session, vti_id: str) -> Vti:
    vti = db.get(Vti, vti_id)
    if vti is None:
        raise NotFound(f"VTI with ID {vti_id} not found.")
    return vti


def to_summary(vti: Vti) -> VtiSummary:
    return VtiSummary(
        id=vti.id,
        type=vti.type,
        field_id=vti.field_id,
        metadata=json.loads(vti.meta or "{}"),
        metadata_version=vti.metadata_version,
        linked_vtis=json.loads(vti.linked_vtis or "[]"),
        creation_time=vti.creation_time,
    )


def merge_metadata(db: Session, vti_id: str, partial: Dict[str, Any],
                   expected_version: Optional[int] = None, commit: bool = True) -> Vti:
    """Shallow-merge `partial` into the VTI metadata.

    Without `expected_version` the merge is last-write-wins and silently
    re-applied when another writer bumped the row first. With it, a stale
    version raises Conflict.

    With `commit=False` the change is only flushed, so it joins the caller's
    transaction; a concurrent bump then surfaces as StaleDataError there.
    """
    for attempt in range(MERGE_RETRIES):
        vti = get_summary(db, vti_id)
        if expected_version is not None and vti.metadata_version != expected_version:
            raise Conflict(
                f"VTI {vti_id} metadata is at version {vti.metadata_version}, "
                f"not {expected_version}"
            )
        meta = json.loads(vti.meta or "{}")
        meta.update(partial)
        vti.meta = json.dumps(meta)
        if not commit:
            db.flush()
            return vti
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            if expected_version is not None:
                raise Conflict(f"VTI {vti_id} metadata changed concurrently")
            logger.info("metadata of VTI %s changed underneath, retrying merge", vti_id)
            continue
        db.refresh(vti)
        return vti
    raise Conflict(f"could not merge metadata of VTI {vti_id}")
