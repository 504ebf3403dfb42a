import io
import logging
from typing import Optional

from fastapi import FastAPI, Depends, Header, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sqlalchemy import select, func, or_
from sqlalchemy.orm import Session

import qrcode

import history
import recorder
import registry
import schemas
from config import BASE_URL, CORS_ORIGINS, ENFORCE_ROLES, LOG_LEVEL
from database import Base, engine, SessionLocal
from errors import TraceError, Unauthenticated
from models import Vti, Event, Profile
from profiles import authorize_event
from schemas import RecordEvent, RegisterVti, MetadataPatch

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="VTI TraceChain", version="0.2.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TraceError)
def trace_error_handler(request: Request, exc: TraceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------- DB ----------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)


# ---------- Auth ----------
def get_caller(x_user_id: Optional[str] = Header(None)) -> str:
    # identity is verified upstream; we only trust the forwarded header
    if not x_user_id:
        raise Unauthenticated("User must be authenticated.")
    return x_user_id


# ---------- APIs: events ----------
@app.post("/api/events", response_model=schemas.RecordResult)
def record_event(
    body: RecordEvent,
    caller: str = Depends(get_caller),
    idempotency_key: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    actor_id = body.actor_id or caller
    authorize_event(db, caller, actor_id, body.event_type, enforce_roles=ENFORCE_ROLES)
    return recorder.record_event(
        db,
        event_type=body.event_type,
        field_or_vti_id=body.field_or_vti_id,
        actor_id=actor_id,
        payload=body.payload,
        timestamp=body.timestamp,
        geo_location=body.geo_location,
        document_id=body.document_id or idempotency_key,
    )


# ---------- APIs: one VTI ----------
@app.post("/api/vtis", response_model=schemas.VtiSummary)
def register_vti(body: RegisterVti, caller: str = Depends(get_caller), db: Session = Depends(get_db)):
    vti = registry.register(db, body.type, body.metadata, field_id=body.field_id,
                            linked_vtis=body.linked_vtis)
    return registry.to_summary(vti)


@app.get("/api/vtis/{vti_id}", response_model=schemas.VtiSummary)
def get_vti(vti_id: str, db: Session = Depends(get_db)):
    return registry.to_summary(registry.get_summary(db, vti_id))


@app.patch("/api/vtis/{vti_id}/metadata", response_model=schemas.VtiSummary)
def patch_metadata(vti_id: str, body: MetadataPatch, caller: str = Depends(get_caller),
                   db: Session = Depends(get_db)):
    vti = registry.merge_metadata(db, vti_id, body.metadata, expected_version=body.expected_version)
    return registry.to_summary(vti)


@app.get("/api/vtis/{vti_id}/history", response_model=schemas.History)
def vti_history(vti_id: str, caller: str = Depends(get_caller), db: Session = Depends(get_db)):
    return history.get_history(db, vti_id)


@app.get("/api/fields/{field_id}/history", response_model=schemas.History)
def field_history(field_id: str, caller: str = Depends(get_caller), db: Session = Depends(get_db)):
    return history.get_field_history(db, field_id)


@app.get("/api/vtis/{vti_id}/verify", response_model=schemas.Verification)
def verify_vti(vti_id: str, db: Session = Depends(get_db)):
    return history.verify_lineage(db, vti_id)


@app.get("/api/vtis/{vti_id}/qrcode")
def vti_qrcode(vti_id: str, db: Session = Depends(get_db)):
    registry.get_summary(db, vti_id)
    url = f"{BASE_URL}/trace.html?vti_id={vti_id}"
    img = qrcode.make(url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")


@app.get("/api/seed")
def seed(db: Session = Depends(get_db)):
    field_id = "FIELD-001"
    existing = db.scalar(select(Vti).where(Vti.field_id == field_id))
    if existing:
        return {"status": "exists", "vti_id": existing.id}

    if db.get(Profile, "farmer-001") is None:
        db.add(Profile(user_id="farmer-001", display_name="Baan Mae Rim Farm",
                       primary_role="FARMER", avatar_url=None))
        db.commit()

    steps = [
        ("PLANTED", "2024-05-02T06:00:00Z", {"cropType": "Maize", "variety": "SC403"}),
        ("INPUT_APPLIED", "2024-06-10T07:30:00Z",
         {"inputId": "NPK-15-15-15", "quantity": 50, "unit": "kg", "method": "broadcast"}),
        ("OBSERVED", "2024-07-21T16:00:00Z", {"observationType": "pest", "details": "Fall armyworm on 5% of plants"}),
        ("HARVESTED", "2024-09-05T08:00:00Z", {"yieldKg": 1200, "qualityGrade": "A"}),
    ]
    result = None
    for event_type, ts, payload in steps:
        result = recorder.record_event(db, event_type, field_id, "farmer-001", payload, timestamp=ts,
                                       geo_location={"lat": 18.91, "lng": 98.94})
    return {"status": "seeded", "vti_id": result.vti_id}


# ---------- VTI listing & search ----------
@app.get("/api/vtis", response_model=schemas.VtiList)
def list_vtis(
    q: Optional[str] = Query(None, description="search field_id / type / metadata"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    base = select(Vti)
    if q:
        like = f"%{q}%"
        base = base.where(or_(Vti.field_id.ilike(like), Vti.type.ilike(like), Vti.meta.ilike(like)))

    total = db.scalar(select(func.count()).select_from(base.subquery()))
    rows = db.scalars(
        base.order_by(Vti.creation_time.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
    ).all()

    items = []
    for vti in rows:
        summary = registry.to_summary(vti)
        total_events = db.scalar(select(func.count()).select_from(Event).where(Event.vti_id == vti.id))
        items.append(schemas.VtiBrief(
            id=vti.id,
            type=vti.type,
            field_id=vti.field_id,
            crop_type=summary.metadata.get("cropType"),
            total_events=total_events or 0,
            verified=history.verify_lineage(db, vti.id).verified,
            creation_time=vti.creation_time,
        ))

    return schemas.VtiList(
        items=items,
        total=total or 0,
        page=page,
        page_size=page_size
    )
