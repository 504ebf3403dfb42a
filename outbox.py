"""
Offline outbox: device-side queue of event submissions made without
connectivity, flushed to the recorder once the device is back online.

The queue lives in a small local database so it survives restarts. Each
action carries a client-generated `document_id` that travels with every
retry, so a flush whose acknowledgement got lost cannot record the event
twice.

    with Outbox(RecorderTransport(SessionLocal)) as outbox:
        outbox.enqueue(RECORD_EVENT, {...})
        report = outbox.flush()
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests
from sqlalchemy import select, func
from sqlalchemy.orm import sessionmaker

import errors
import recorder
from config import (
    OUTBOX_BACKOFF_BASE_SECONDS,
    OUTBOX_BACKOFF_MAX_SECONDS,
    OUTBOX_DATABASE_URL,
    OUTBOX_MAX_AGE_HOURS,
)
from database import LocalBase, make_engine
from errors import InvalidArgument, TraceError, Unavailable
from models import OutboxAction
from schemas import FlushReport, OutboxRecord, SubmitResult, SubmitStatus
from utils import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

RECORD_EVENT = "recordEvent"
RECORD_KEYS = ("event_type", "field_or_vti_id", "actor_id", "payload", "timestamp", "geo_location")


class OutboxStatus(str, Enum):
    QUEUED = "QUEUED"
    FLUSHING = "FLUSHING"
    DROPPED = "DROPPED"    # rejected by the server, retrying cannot help
    EXPIRED = "EXPIRED"    # older than the maximum age, gave up


class Transport(Protocol):
    def call(self, operation: str, document_id: str, payload: Dict[str, Any]) -> Dict[str, Any]: ...


def _record_args(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: payload.get(k) for k in RECORD_KEYS}


class RecorderTransport:
    """Calls the recorder in-process, one session per call."""

    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory

    def call(self, operation: str, document_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if operation != RECORD_EVENT:
            raise InvalidArgument(f"Unknown operation {operation!r}.")
        db = self.session_factory()
        try:
            result = recorder.record_event(db, document_id=document_id, **_record_args(payload))
        finally:
            db.close()
        return result.model_dump()


class HttpTransport:
    """Posts to the service's /api/events endpoint."""

    def __init__(self, base_url: str, user_id: str, session=None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def call(self, operation: str, document_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if operation != RECORD_EVENT:
            raise InvalidArgument(f"Unknown operation {operation!r}.")
        body = dict(_record_args(payload), document_id=document_id)
        try:
            r = self.session.post(
                f"{self.base_url}/api/events",
                json=body,
                headers={"X-User-Id": self.user_id, "Idempotency-Key": document_id},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise Unavailable(f"Service unreachable: {exc}") from exc
        if r.status_code >= 400:
            try:
                detail = r.json().get("detail", r.text)
            except ValueError:
                detail = r.text
            raise errors.from_status(r.status_code, str(detail))
        return r.json()


def make_document_id(operation: str, payload: Dict[str, Any], now: datetime) -> str:
    kind = str(payload.get("event_type") or operation).lower()
    return f"{kind}-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}"


def _encode(value):
    if isinstance(value, datetime):
        return to_iso(value)
    if hasattr(value, "model_dump"):
        return value.model_dump()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _to_record(action: OutboxAction) -> OutboxRecord:
    return OutboxRecord(
        operation=action.operation,
        document_id=action.document_id,
        payload=json.loads(action.payload),
        enqueued_at=action.enqueued_at,
        status=action.status,
        attempts=action.attempts or 0,
        last_error=action.last_error,
    )


class Outbox:
    def __init__(
        self,
        transport: Transport,
        url: str = OUTBOX_DATABASE_URL,
        clock: Callable[[], datetime] = utcnow,
        backoff_base: float = OUTBOX_BACKOFF_BASE_SECONDS,
        backoff_max: float = OUTBOX_BACKOFF_MAX_SECONDS,
        max_age: timedelta = timedelta(hours=OUTBOX_MAX_AGE_HOURS),
    ):
        self.transport = transport
        self.url = url
        self.clock = clock
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_age = max_age
        self._engine = None
        self._session = None
        self._flush_lock = threading.Lock()

    # ---------- lifecycle ----------

    def open(self) -> "Outbox":
        self._engine = make_engine(self.url)
        LocalBase.metadata.create_all(bind=self._engine)
        self._session = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
        with self._session() as db:
            interrupted = db.scalars(
                select(OutboxAction).where(OutboxAction.status == OutboxStatus.FLUSHING.value)
            ).all()
            for action in interrupted:
                action.status = OutboxStatus.QUEUED.value
            db.commit()
        if interrupted:
            logger.info("requeued %d actions interrupted mid-flush", len(interrupted))
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session = None

    def __enter__(self) -> "Outbox":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def _db(self):
        if self._session is None:
            raise RuntimeError("outbox is not open")
        return self._session()

    # ---------- queue ----------

    def enqueue(self, operation: str, payload: Dict[str, Any],
                document_id: Optional[str] = None) -> OutboxRecord:
        """Persist an action for later; never touches the network."""
        now = self.clock()
        document_id = document_id or make_document_id(operation, payload, now)
        with self._db() as db:
            action = db.scalar(select(OutboxAction).where(OutboxAction.document_id == document_id))
            if action is None:
                action = OutboxAction(
                    document_id=document_id,
                    operation=operation,
                    payload=json.dumps(payload, default=_encode),
                    status=OutboxStatus.QUEUED.value,
                    enqueued_at=to_iso(now),
                    attempts=0,
                )
                db.add(action)
                db.commit()
                logger.info("queued %s action %s", operation, document_id)
            return _to_record(action)

    def _list(self, *statuses: OutboxStatus) -> List[OutboxRecord]:
        with self._db() as db:
            rows = db.scalars(
                select(OutboxAction)
                .where(OutboxAction.status.in_([s.value for s in statuses]))
                .order_by(OutboxAction.seq.asc())
            ).all()
            return [_to_record(a) for a in rows]

    def pending(self) -> List[OutboxRecord]:
        return self._list(OutboxStatus.QUEUED, OutboxStatus.FLUSHING)

    def failed(self) -> List[OutboxRecord]:
        """Actions that will never sync; shown to the user until acknowledged."""
        return self._list(OutboxStatus.DROPPED, OutboxStatus.EXPIRED)

    def acknowledge(self, document_id: str) -> bool:
        with self._db() as db:
            action = db.scalar(select(OutboxAction).where(
                OutboxAction.document_id == document_id,
                OutboxAction.status.in_([OutboxStatus.DROPPED.value, OutboxStatus.EXPIRED.value]),
            ))
            if action is None:
                return False
            db.delete(action)
            db.commit()
            return True

    # ---------- sync ----------

    def _backoff(self, attempts: int) -> timedelta:
        return timedelta(seconds=min(self.backoff_base * 2 ** (attempts - 1), self.backoff_max))

    def flush(self) -> FlushReport:
        """Replay queued actions in FIFO order.

        Rejected actions are dropped and flushing goes on; any other failure
        keeps the action at the head of the queue with a backoff delay and
        ends this cycle.
        """
        report = FlushReport()
        if not self._flush_lock.acquire(blocking=False):
            logger.info("flush already running, skipped")
            return report
        try:
            with self._db() as db:
                queued = db.scalars(
                    select(OutboxAction)
                    .where(OutboxAction.status == OutboxStatus.QUEUED.value)
                    .order_by(OutboxAction.seq.asc())
                ).all()
                for action in queued:
                    now = self.clock()
                    if parse_timestamp(action.enqueued_at) + self.max_age < now:
                        action.status = OutboxStatus.EXPIRED.value
                        action.last_error = "failed to sync before the maximum age"
                        db.commit()
                        logger.warning("action %s expired unsynced", action.document_id)
                        report.expired.append(action.document_id)
                        continue
                    if action.next_attempt_at and parse_timestamp(action.next_attempt_at) > now:
                        break

                    action.status = OutboxStatus.FLUSHING.value
                    db.commit()
                    try:
                        self.transport.call(action.operation, action.document_id, json.loads(action.payload))
                    except TraceError as exc:
                        action.attempts = (action.attempts or 0) + 1
                        action.last_error = f"{exc.code}: {exc.message}"
                        if exc.transient:
                            action.status = OutboxStatus.QUEUED.value
                            action.next_attempt_at = to_iso(now + self._backoff(action.attempts))
                            db.commit()
                            logger.info("action %s will be retried: %s", action.document_id, exc.message)
                            break
                        action.status = OutboxStatus.DROPPED.value
                        db.commit()
                        logger.warning("dropping action %s: %s", action.document_id, exc.message)
                        report.dropped.append(action.document_id)
                        continue
                    except Exception:
                        action.status = OutboxStatus.QUEUED.value
                        db.commit()
                        raise
                    db.delete(action)
                    db.commit()
                    report.committed.append(action.document_id)

                report.remaining = db.scalar(
                    select(func.count()).select_from(OutboxAction)
                    .where(OutboxAction.status == OutboxStatus.QUEUED.value)
                ) or 0
        finally:
            self._flush_lock.release()
        if report.committed or report.dropped or report.expired:
            logger.info("flush: %d committed, %d dropped, %d expired, %d remaining",
                        len(report.committed), len(report.dropped), len(report.expired), report.remaining)
        return report

    def submit(self, operation: str, payload: Dict[str, Any], document_id: Optional[str] = None,
               online: bool = True) -> SubmitResult:
        """Send now when online, queue otherwise.

        Online failures are raised for the caller to show, except a lost
        connection, which falls back to the queue.
        """
        document_id = document_id or make_document_id(operation, payload, self.clock())
        if online:
            try:
                result = self.transport.call(operation, document_id,
                                             json.loads(json.dumps(payload, default=_encode)))
                return SubmitResult(status=SubmitStatus.COMMITTED, document_id=document_id, result=result)
            except Unavailable as exc:
                logger.info("connection lost, queueing %s: %s", document_id, exc.message)
        self.enqueue(operation, payload, document_id)
        return SubmitResult(status=SubmitStatus.QUEUED, document_id=document_id)
