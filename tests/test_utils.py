"""Tests for timestamp normalisation and the per-VTI hash chain helpers."""

from datetime import datetime, timezone

from utils import GENESIS, chain_body, compute_hash, parse_timestamp, to_iso, verify_chain


def make_chain(n: int) -> list:
    chain = []
    prev = GENESIS
    for i in range(n):
        body = chain_body("OBSERVED", "u1", {"observationType": "pest", "details": f"round {i}"}, None)
        ts = f"2024-06-01T0{i}:00:00.000000+00:00"
        h = compute_hash(prev, body, ts)
        chain.append({"body": body, "timestamp": ts, "prev_hash": prev, "hash": h})
        prev = h
    return chain


def test_to_iso_normalises_offsets_to_utc():
    ts = parse_timestamp("2024-05-01T10:00:00+02:00")
    assert to_iso(ts) == "2024-05-01T08:00:00.000000+00:00"


def test_parse_timestamp_accepts_z_suffix_and_naive_values():
    assert parse_timestamp("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    naive = parse_timestamp(datetime(2024, 5, 1, 10))
    assert naive.tzinfo is timezone.utc


def test_normalised_strings_sort_like_the_times_they_encode():
    # 12:00+02:00 is 10:00 UTC, half a second after the first reading
    first = to_iso(parse_timestamp("2024-05-01T09:59:59.5+00:00"))
    second = to_iso(parse_timestamp("2024-05-01T12:00:00+02:00"))
    assert first < second


def test_verify_chain_accepts_intact_chain():
    assert verify_chain(make_chain(3))
    assert verify_chain([])


def test_verify_chain_detects_edited_payload():
    chain = make_chain(3)
    chain[1]["body"]["payload"]["details"] = "nothing to see"
    assert not verify_chain(chain)


def test_verify_chain_detects_removed_event():
    chain = make_chain(3)
    del chain[1]
    assert not verify_chain(chain)
