from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, Float, ForeignKey, UniqueConstraint
from database import Base, LocalBase


class Vti(Base):
    __tablename__ = "vtis"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    field_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True, nullable=True)
    type: Mapped[str] = mapped_column(String(50))
    # "metadata" is reserved on declarative classes
    meta: Mapped[str] = mapped_column("metadata", Text, default="{}")
    metadata_version: Mapped[int] = mapped_column(Integer, nullable=False)
    linked_vtis: Mapped[str] = mapped_column(Text, default="[]")
    creation_time: Mapped[str] = mapped_column(String(40))
    events: Mapped[list["Event"]] = relationship("Event", back_populates="vti")

    __mapper_args__ = {"version_id_col": metadata_version}


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (UniqueConstraint("vti_id", "seq", name="uq_events_vti_seq"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vti_id: Mapped[str] = mapped_column(String(36), ForeignKey("vtis.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(50))
    actor_id: Mapped[str] = mapped_column(String(128), index=True)
    payload: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[str] = mapped_column(String(40), index=True)
    recorded_at: Mapped[str] = mapped_column(String(40))
    geo_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    geo_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    document_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    seq: Mapped[int] = mapped_column(Integer)
    prev_hash: Mapped[str] = mapped_column(String(128))
    hash: Mapped[str] = mapped_column(String(128))
    vti: Mapped[Vti] = relationship("Vti", back_populates="events")


class Profile(Base):
    __tablename__ = "profiles"
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255))
    primary_role: Mapped[str] = mapped_column(String(50))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)


class OutboxAction(LocalBase):
    __tablename__ = "outbox_actions"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    operation: Mapped[str] = mapped_column(String(64))
    payload: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), index=True)
    enqueued_at: Mapped[str] = mapped_column(String(40))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
