import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Union

GENESIS = "GENESIS"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    # fixed width so that string order == time order in the db
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Accept an ISO-8601 string or datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif not isinstance(value, str):
        raise TypeError(f"timestamp must be an ISO-8601 string, got {type(value).__name__}")
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def compute_hash(prev_hash: str, payload: dict, timestamp: str) -> str:
    block = json.dumps({
        "prev_hash": prev_hash,
        "payload": payload,
        "timestamp": timestamp
    }, sort_keys=True)
    return hashlib.sha256(block.encode("utf-8")).hexdigest()


def chain_body(event_type: str, actor_id: str, payload: dict, geo: Optional[dict]) -> dict:
    """The part of an event covered by its hash."""
    return {
        "event_type": event_type,
        "actor_id": actor_id,
        "payload": payload,
        "geo_location": geo,
    }


def verify_chain(events: List[Dict[str, Any]]) -> bool:
    """Events must be given in write order (seq), not timestamp order."""
    prev = GENESIS
    for ev in events:
        expected = compute_hash(prev, ev["body"], ev["timestamp"])
        if ev["hash"] != expected or ev["prev_hash"] != prev:
            return False
        prev = ev["hash"]
    return True
