"""
Simple simulator: a field device logging events, part of them while offline.
Run:
    python scripts/simulate_field.py
"""
import os
import sys
import random
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from outbox import Outbox, HttpTransport, RECORD_EVENT  # noqa: E402

API = os.getenv("TRACE_API", "http://localhost:8000")
USER = os.getenv("TRACE_USER", "farmer-001")


def main():
    r = requests.get(f"{API}/api/seed")
    print("Seed:", r.json())

    field_id = "FIELD-001"
    transport = HttpTransport(API, USER)
    with Outbox(transport, url="sqlite:///./simulated_device.db") as outbox:
        for i in range(3):
            online = i % 2 == 0
            res = outbox.submit(RECORD_EVENT, {
                "event_type": "OBSERVED",
                "field_or_vti_id": field_id,
                "payload": {
                    "observationType": "moisture",
                    "details": f"soil moisture {round(random.uniform(25, 45), 1)}%",
                },
            }, online=online)
            print("observation", i, res.status.value, res.document_id)

        report = outbox.flush()
        print("flush:", report)
        for failed in outbox.failed():
            print("failed to sync:", failed.document_id, failed.last_error)

    rr = requests.get(f"{API}/api/fields/{field_id}/history", headers={"X-User-Id": USER})
    print("history:", rr.status_code, len(rr.json().get("events", [])), "events")


if __name__ == "__main__":
    main()
