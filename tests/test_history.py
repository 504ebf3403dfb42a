"""Tests for the history assembler: ordering, payload fidelity, actor resolution
and lineage verification."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

import history
import recorder
import registry
from errors import NotFound
from models import Event
from profiles import PLACEHOLDER_ACTOR
from schemas import Actor


def observe(db, ts, actor="u1", details="scouting", target="f1"):
    return recorder.record_event(
        db, "OBSERVED", target, actor,
        {"observationType": "scouting", "details": details}, timestamp=ts,
    )


def test_events_come_back_in_timestamp_order_not_arrival_order(db):
    observe(db, "2024-06-01T10:00:00Z", details="third")
    observe(db, "2024-06-01T08:00:00Z", details="first")
    vti_id = observe(db, "2024-06-01T09:00:00Z", details="second").vti_id

    events = history.get_history(db, vti_id).events
    assert [e.payload["details"] for e in events] == ["first", "second", "third"]
    stamps = [e.timestamp for e in events]
    assert stamps == sorted(stamps)


def test_equal_timestamps_are_ordered_by_event_id_and_stable(db):
    ts = "2024-06-01T08:00:00Z"
    ids = [observe(db, ts, details=str(i)).event_id for i in range(4)]
    vti_id = registry.ensure(db, "f1")

    first = [e.id for e in history.get_history(db, vti_id).events]
    second = [e.id for e in history.get_history(db, vti_id).events]
    assert first == sorted(ids)
    assert first == second


def test_payload_round_trips_unchanged(db):
    payload = {
        "yieldKg": 120,
        "qualityGrade": "A",
        "moisturePct": 13.5,
        "bags": [50, 50, 20],
        "notes": "récolte après la pluie",
        "inspector": None,
        "lab": {"aflatoxinPpb": 2.1, "passed": True},
    }
    result = recorder.record_event(db, "HARVESTED", "f1", "u1", payload)
    [event] = history.get_history(db, result.vti_id).events
    assert event.payload == payload
    assert isinstance(event.payload["yieldKg"], int)


def test_vti_without_events_has_empty_history(db):
    vti = registry.register(db, "farm_batch", {"cropType": "Cassava"})
    result = history.get_history(db, vti.id)
    assert result.events == []
    assert result.vti.id == vti.id
    assert result.vti.metadata == {"cropType": "Cassava"}


def test_unknown_vti_is_not_found(db):
    with pytest.raises(NotFound):
        history.get_history(db, "missing")


def test_actors_are_resolved_with_placeholder_for_unknown(db):
    observe(db, "2024-06-01T08:00:00Z", actor="u1")
    vti_id = observe(db, "2024-06-01T09:00:00Z", actor="ghost").vti_id

    known, unknown = history.get_history(db, vti_id).events
    assert known.actor == Actor(name="Amina Okafor", role="FARMER", avatar_url="https://example.org/a/u1.png")
    assert unknown.actor == PLACEHOLDER_ACTOR
    assert unknown.actor_id == "ghost"


def test_actor_lookup_is_batched_over_distinct_ids(db):
    for i, actor in enumerate(["u1", "u1", "admin-1", "u1"]):
        vti_id = observe(db, f"2024-06-01T0{i}:00:00Z", actor=actor).vti_id
    directory = MagicMock()
    directory.resolve_many.return_value = {}

    history.get_history(db, vti_id, directory=directory)

    directory.resolve_many.assert_called_once()
    assert set(directory.resolve_many.call_args.args[0]) == {"u1", "admin-1"}


def test_failing_directory_degrades_to_placeholders(db):
    vti_id = observe(db, "2024-06-01T08:00:00Z").vti_id
    directory = MagicMock()
    directory.resolve_many.side_effect = RuntimeError("profile service down")

    [event] = history.get_history(db, vti_id, directory=directory).events
    assert event.actor == PLACEHOLDER_ACTOR


def test_field_history_matches_vti_history(db):
    vti_id = observe(db, "2024-06-01T08:00:00Z").vti_id
    assert history.get_field_history(db, "f1") == history.get_history(db, vti_id)
    with pytest.raises(NotFound):
        history.get_field_history(db, "f-unknown")


def test_geo_location_is_returned(db):
    result = recorder.record_event(db, "PLANTED", "f1", "u1", {"cropType": "Maize"},
                                   geo_location={"lat": 18.9, "lng": 98.9})
    [event] = history.get_history(db, result.vti_id).events
    assert event.geo_location.lat == 18.9
    assert event.geo_location.lng == 98.9


def test_verify_lineage_detects_tampering(db):
    recorder.record_event(db, "PLANTED", "f1", "u1", {"cropType": "Maize"},
                          geo_location={"lat": 18.9, "lng": 98.9})
    result = recorder.record_event(db, "HARVESTED", "f1", "u1", {"yieldKg": 120})

    check = history.verify_lineage(db, result.vti_id)
    assert check.verified and check.events == 2

    db.execute(update(Event).where(Event.id == result.event_id).values(payload='{"yieldKg": 900}'))
    db.commit()
    assert not history.verify_lineage(db, result.vti_id).verified
