from enum import Enum
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Any, Dict, List, Type


class EventType(str, Enum):
    PLANTED = "PLANTED"
    OBSERVED = "OBSERVED"
    INPUT_APPLIED = "INPUT_APPLIED"
    HARVESTED = "HARVESTED"
    PACKAGED = "PACKAGED"
    TRANSPORTED = "TRANSPORTED"
    PROCESSED = "PROCESSED"
    VERIFIED = "VERIFIED"
    SOLD = "SOLD"


# ---------- Event payloads (one shape per event type) ----------
# Only the listed keys are checked; anything else the client sends is kept.

class EventPayload(BaseModel):
    """Extension variant: any object is accepted."""
    model_config = ConfigDict(extra="allow")


class PlantedPayload(EventPayload):
    crop_type: str = Field(..., alias="cropType", min_length=1)
    variety: Optional[str] = None


class ObservedPayload(EventPayload):
    observation_type: str = Field(..., alias="observationType", min_length=1)
    details: str = Field(..., min_length=1)
    media_urls: List[str] = Field(default_factory=list, alias="mediaUrls")


class InputAppliedPayload(EventPayload):
    input_id: str = Field(..., alias="inputId", min_length=1)
    quantity: float = Field(..., ge=0)
    unit: str = Field(..., min_length=1)
    method: Optional[str] = None


class HarvestedPayload(EventPayload):
    yield_kg: float = Field(..., alias="yieldKg", ge=0)
    quality_grade: Optional[str] = Field(None, alias="qualityGrade")


PAYLOAD_MODELS: Dict[str, Type[EventPayload]] = {
    EventType.PLANTED.value: PlantedPayload,
    EventType.OBSERVED.value: ObservedPayload,
    EventType.INPUT_APPLIED.value: InputAppliedPayload,
    EventType.HARVESTED.value: HarvestedPayload,
    EventType.PACKAGED.value: EventPayload,
    EventType.TRANSPORTED.value: EventPayload,
    EventType.PROCESSED.value: EventPayload,
    EventType.VERIFIED.value: EventPayload,
    EventType.SOLD.value: EventPayload,
}


def register_event_type(name: str, payload_model: Type[EventPayload] = EventPayload) -> None:
    PAYLOAD_MODELS[name.upper()] = payload_model


# ---------- Requests ----------

class GeoLocation(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class RecordEvent(BaseModel):
    event_type: str
    field_or_vti_id: str = Field(..., min_length=1, max_length=64)
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    geo_location: Optional[GeoLocation] = None
    document_id: Optional[str] = Field(None, max_length=128)


class RegisterVti(BaseModel):
    type: str = Field(..., min_length=1, max_length=50)
    field_id: Optional[str] = Field(None, min_length=1, max_length=64)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    linked_vtis: List[str] = Field(default_factory=list)


class MetadataPatch(BaseModel):
    metadata: Dict[str, Any]
    expected_version: Optional[int] = None


# ---------- Responses ----------

class RecordResult(BaseModel):
    event_id: str
    vti_id: str
    duplicate: bool = False


class VtiSummary(BaseModel):
    id: str
    type: str
    field_id: Optional[str] = None
    metadata: Dict[str, Any]
    metadata_version: int
    linked_vtis: List[str]
    creation_time: str


class Actor(BaseModel):
    name: str
    role: str
    avatar_url: Optional[str] = None


class HistoryEvent(BaseModel):
    id: str
    event_type: str
    timestamp: str
    payload: Dict[str, Any]
    actor_id: str
    actor: Actor
    geo_location: Optional[GeoLocation] = None
    document_id: Optional[str] = None
    hash: str


class History(BaseModel):
    vti: VtiSummary
    events: List[HistoryEvent]


class VtiBrief(BaseModel):
    id: str
    type: str
    field_id: Optional[str] = None
    crop_type: Optional[str] = None
    total_events: int
    verified: bool
    creation_time: str


class VtiList(BaseModel):
    items: List[VtiBrief]
    total: int
    page: int
    page_size: int


class Verification(BaseModel):
    vti_id: str
    verified: bool
    events: int


class OutboxRecord(BaseModel):
    operation: str
    document_id: str
    payload: Dict[str, Any]
    enqueued_at: str
    status: str
    attempts: int = 0
    last_error: Optional[str] = None


class SubmitStatus(str, Enum):
    COMMITTED = "committed"
    QUEUED = "queued"


class SubmitResult(BaseModel):
    status: SubmitStatus
    document_id: str
    result: Optional[Dict[str, Any]] = None


class FlushReport(BaseModel):
    committed: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)
    expired: List[str] = Field(default_factory=list)
    remaining: int = 0
