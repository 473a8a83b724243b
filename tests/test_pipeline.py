from datetime import timedelta

import pytest

from identity_sync import pipeline
from identity_sync.errors import InvalidEventError, UnknownDestinationTypeError
from identity_sync.models.tables import Destination, Event, Identity, IngestionDeadLetter, SyncJob, UnifiedUser, UserSegmentMembership
from identity_sync.utils.clock import utcnow
from identity_sync.workers import SyncWorkerPool
from identity_sync.infrastructure.throttle import DestinationThrottle, ThrottleConfig
from identity_sync.sync_queue import QueuePolicy

from conftest import make_destination


def payload(name="add_to_cart", minutes_ago=60, **props):
    return {
        "workspace_id": "ws1",
        "source": "js",
        "event": name,
        "properties": {"product_id": "p1", **props},
        "context": {"anonymous_id": "anon-1"},
        "timestamp": (utcnow() - timedelta(minutes=minutes_ago)).isoformat() + "Z",
    }


def jobs(session, **filters):
    rows = session.query(SyncJob).filter_by(**filters).order_by(SyncJob.id).all()
    session.rollback()
    return rows


def test_ingest_processes_event_end_to_end(session, recording):
    dest = make_destination(session)
    result = pipeline.ingest(payload(email="Ann@Shop.io"))
    assert result.accepted and not result.duplicate
    assert result.event_name == "Product Added"

    event = session.get(Event, result.event_id)
    assert event.status == "processed"
    assert event.raw_event_name == "add_to_cart"
    assert event.event_type == "cart"
    user = session.get(UnifiedUser, event.unified_user_id)
    assert user.primary_email == "ann@shop.io"
    assert user.computed["drop_off_stage"] == "cart"
    assert user.computed["intent_score"] == 39
    segments = {m.segment_key for m in session.query(UserSegmentMembership).filter_by(unified_user_id=user.id)}
    assert segments == {"atc_no_checkout_24h"}
    session.rollback()

    profile = jobs(session, job_type="profile_upsert", status="pending")
    assert len(profile) == 1 and profile[0].destination_id == dest.id
    assert profile[0].payload["traits"]["intent_score"] == 39
    assert profile[0].payload["traits"]["segments"] == "atc_no_checkout_24h"
    track = jobs(session, job_type="event_track")
    assert len(track) == 1 and track[0].status == "pending"
    assert track[0].payload["properties"]["sf_event_id"] == result.event_id
    assert track[0].payload["unique_id"] == result.dedupe_key


def test_duplicate_is_counted_not_reprocessed(session, recording):
    make_destination(session)
    p = payload()
    first = pipeline.ingest(p)
    second = pipeline.ingest(p)
    assert second.duplicate and second.event_id == first.event_id
    assert second.dupe_count == 1
    assert len(jobs(session, job_type="event_track")) == 1
    assert len(jobs(session, job_type="profile_upsert")) == 1


def test_noise_event_is_blocked_for_destinations(session, recording):
    make_destination(session)
    pipeline.ingest(payload(name="page_view"))
    track = jobs(session, job_type="event_track")
    assert [j.outcome for j in track] == ["blocked"]


def test_identify_links_and_stores_traits(session, recording):
    make_destination(session)
    anon = pipeline.ingest(payload())
    ident = pipeline.identify("ws1", {"email": "bo@shop.io", "first_name": "Bo"}, anonymous_id="anon-1")
    assert ident.accepted

    a = session.get(Event, anon.event_id)
    b = session.get(Event, ident.event_id)
    assert a.unified_user_id == b.unified_user_id
    user = session.get(UnifiedUser, b.unified_user_id)
    assert user.traits == {"first_name": "Bo"}
    assert user.primary_email == "bo@shop.io"
    session.rollback()

    # identify is not forwarded as an event; the profile snapshot carries the trait
    assert len(jobs(session, job_type="event_track")) == 1
    latest = jobs(session, job_type="profile_upsert", status="pending")
    assert len(latest) == 1
    assert latest[0].payload["traits"]["first_name"] == "Bo"


def test_identify_calls_with_different_emails_are_distinct(session):
    a = pipeline.identify("ws1", {"email": "a@shop.io"})
    b = pipeline.identify("ws1", {"email": "b@shop.io"})
    assert a.accepted and b.accepted
    assert a.event_id != b.event_id
    emails = {i.identity_value for i in session.query(Identity).filter_by(identity_type="email")}
    assert emails == {"a@shop.io", "b@shop.io"}
    session.rollback()


def test_identify_adds_new_phone_for_known_visitor(session):
    pipeline.identify("ws1", {"email": "a@shop.io"}, anonymous_id="anon-1")
    result = pipeline.identify("ws1", {"phone": "+1 555 0100"}, anonymous_id="anon-1")
    assert result.accepted
    user = session.get(UnifiedUser, session.get(Event, result.event_id).unified_user_id)
    assert user.phones == ["+15550100"]
    assert user.emails == ["a@shop.io"]
    session.rollback()


def test_invalid_event_goes_to_dead_letter(session):
    with pytest.raises(InvalidEventError) as exc:
        pipeline.ingest({"workspace_id": "ws1", "properties": {}})
    assert exc.value.reason.startswith("validation_error:")
    with pytest.raises(InvalidEventError):
        pipeline.ingest({"workspace_id": "ws1", "event": "x", "properties": {"a": "b" * 60_000}})
    rows = session.query(IngestionDeadLetter).order_by(IngestionDeadLetter.id).all()
    assert [r.error for r in rows][1] == "properties_too_large"
    assert rows[0].workspace_id == "ws1"
    session.rollback()


def test_bulk_ingest_reports_per_item(session):
    p = payload()
    results = pipeline.ingest_bulk([p, p, {"workspace_id": "ws1"}])
    assert [r["accepted"] for r in results] == [True, False, False]
    assert results[1]["duplicate"] is True
    assert results[2]["reason"].startswith("validation_error")


def test_bulk_ingest_limit(monkeypatch):
    monkeypatch.setattr(pipeline.get_settings(), "max_bulk_events", 2)
    with pytest.raises(InvalidEventError):
        pipeline.ingest_bulk([payload()] * 3)


def test_processing_failure_marks_event_and_is_retryable(session, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("scoring exploded")

    monkeypatch.setattr(pipeline, "recompute_user", boom)
    result = pipeline.ingest(payload())
    event = session.get(Event, result.event_id)
    assert event.status == "failed"
    assert "scoring exploded" in event.last_error
    assert event.processing_attempts == 1
    assert pipeline.stale_event_ids(session, older_than_minutes=0) == [result.event_id]
    session.rollback()

    monkeypatch.undo()
    assert pipeline.process_admitted_event(result.event_id)["status"] == "ok"
    assert pipeline.process_admitted_event(result.event_id)["status"] == "already_processed"
    assert pipeline.process_admitted_event(999_999)["status"] == "missing"


def test_force_drain_delivers_queued_jobs(session, recording):
    make_destination(session)
    pipeline.ingest(payload(email="cy@shop.io"))
    workers = SyncWorkerPool(threads=2, throttle=DestinationThrottle(ThrottleConfig(rate_per_second=1000, burst_capacity=1000)),
                             policy=QueuePolicy())
    result = pipeline.force_drain(workspace_id="ws1", pool=workers)
    assert result["processed"] == 2
    ops = sorted(c["op"] for c in recording.calls)
    assert ops == ["track_event", "upsert_profile"]
    track = next(c for c in recording.calls if c["op"] == "track_event")
    assert track["name"] == "Product Added"
    assert track["identifiers"]["email"] == "cy@shop.io"


def test_recompute_and_sweep(session, recording):
    make_destination(session)
    pipeline.ingest(payload())
    assert pipeline.recompute_workspace("ws1") == {"recomputed": 1, "failed": 0}
    assert pipeline.sweep_recency(older_than_minutes=60) == {"due": 0, "recomputed": 0}
    assert pipeline.sweep_recency(older_than_minutes=-1)["recomputed"] == 1
    # every recompute leaves exactly one pending snapshot
    assert len(jobs(session, job_type="profile_upsert", status="pending")) == 1


def test_destination_controls(session, recording):
    dest = pipeline.create_destination("ws1", "crm", "recording", {"token": "t"})
    with pytest.raises(UnknownDestinationTypeError):
        pipeline.create_destination("ws1", "x", "nope")

    stored = session.get(Destination, dest.id)
    stored.consecutive_failures = 4
    stored.backoff_until = utcnow() + timedelta(hours=1)
    session.commit()

    assert pipeline.set_destination_enabled("ws1", dest.id, False) == {"destination_id": dest.id, "enabled": False}
    pipeline.set_destination_enabled("ws1", dest.id, True)
    stored = session.get(Destination, dest.id, populate_existing=True)
    assert stored.enabled and stored.backoff_until is None and stored.consecutive_failures == 0
    session.rollback()

    with pytest.raises(LookupError):
        pipeline.set_destination_enabled("ws1", 12345, True)
