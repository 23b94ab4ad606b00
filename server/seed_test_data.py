#!/usr/bin/env python3
"""Seed the database with GPS test fixture data for development.

Usage:
    python seed_test_data.py

Stores the 50-point San Francisco commute trace for a demo user and runs a
full timeline generation over it.
"""

from database import init_db, SessionLocal
from generation import GenerationMode
from runtime import build_runtime
from tests.gps_test_fixtures import DEMO_USER_ID, commute_points


def seed():
    init_db()
    runtime = build_runtime(SessionLocal)

    added = runtime.store.save_points(DEMO_USER_ID, commute_points())
    if not added:
        print(f"Demo user {DEMO_USER_ID} already has points. Regenerating anyway.")
    else:
        print(f"Inserted {added} location points for user {DEMO_USER_ID}")

    try:
        result = runtime.generator.regenerate(DEMO_USER_ID, GenerationMode.FULL)
    finally:
        runtime.generator.shutdown()
    print(f"Job {result.job_id}: {result.points_processed} points -> {result.events_written} events")

    for event in runtime.store.load_timeline(DEMO_USER_ID):
        label = event.kind
        if event.kind == "trip":
            label = f"trip ({event.travel_type.value}, {event.distance_meters:.0f} m)"
        print(f"  - {event.start.strftime('%H:%M')}-{event.end.strftime('%H:%M')} "
              f"{label}: {int(event.duration_seconds) // 60}m")


if __name__ == "__main__":
    seed()
