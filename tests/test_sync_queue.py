from datetime import timedelta

import pytest

from identity_sync.errors import WorkspaceMismatchError
from identity_sync.models.tables import Destination, SyncJob
from identity_sync.outcomes import DeliveryOutcome
from identity_sync.sync_queue import (
    EVENT_TRACK,
    PROFILE_UPSERT,
    BlockedEventPolicy,
    QueuePolicy,
    claim_next,
    complete,
    enqueue,
    enqueue_event_track,
    enqueue_profile_upsert,
    recover_expired_leases,
    release_claim,
    retry_failed,
)
from identity_sync.utils.clock import utcnow

from conftest import make_destination, make_event, make_user

POLICY = QueuePolicy()


def _profile_job(session, user, dest, version=1):
    job = enqueue_profile_upsert(session, user, dest, {"traits": {"v": version}}, POLICY)
    session.commit()
    return job


def _reload(session, model, pk):
    return session.get(model, pk, populate_existing=True)


def test_backoff_schedule():
    assert [POLICY.backoff_seconds(n) for n in (1, 2, 3, 4)] == [60, 120, 240, 480]
    assert QueuePolicy(backoff_max_seconds=100).backoff_seconds(5) == 100


def test_newer_profile_snapshot_supersedes_pending(session):
    user, dest = make_user(session), make_destination(session)
    first = _profile_job(session, user, dest, 1)
    second = _profile_job(session, user, dest, 2)

    old = _reload(session, SyncJob, first.id)
    assert old.status == "completed" and old.outcome == "skipped"
    assert old.last_error == f"Skipped: superseded by job {second.id}"
    assert old.dedupe_slot is None
    new = _reload(session, SyncJob, second.id)
    assert new.status == "pending"
    assert new.dedupe_slot == f"{dest.id}:{user.id}"
    session.rollback()


def test_claim_and_complete_once(session):
    user, dest = make_user(session), make_destination(session)
    job = _profile_job(session, user, dest)

    claimed = claim_next(session, "w1", policy=POLICY)
    assert claimed.id == job.id
    assert claimed.status == "running" and claimed.attempts == 1
    assert claimed.dedupe_slot is None
    token = claimed.claim_token
    assert claim_next(session, "w2", policy=POLICY) is None

    assert complete(session, job.id, token, DeliveryOutcome.success(), policy=POLICY)
    assert not complete(session, job.id, token, DeliveryOutcome.success(), policy=POLICY)

    done = _reload(session, SyncJob, job.id)
    assert done.status == "completed" and done.outcome == "success"
    assert done.claim_token is None
    assert _reload(session, Destination, dest.id).last_sync_at is not None
    session.rollback()


def test_running_profile_blocks_next_snapshot_for_same_pair(session):
    user, dest = make_user(session), make_destination(session)
    other = make_user(session)
    _profile_job(session, user, dest, 1)
    running = claim_next(session, "w1", policy=POLICY)

    _profile_job(session, user, dest, 2)
    third = _profile_job(session, other, dest, 1)
    # the second snapshot for `user` waits, the other user's job does not
    nxt = claim_next(session, "w2", policy=POLICY)
    assert nxt.id == third.id
    assert claim_next(session, "w3", policy=POLICY) is None

    complete(session, running.id, running.claim_token, DeliveryOutcome.success(), policy=POLICY)
    assert claim_next(session, "w4", policy=POLICY).unified_user_id == user.id
    session.rollback()


def test_transient_failures_back_off_then_fail(session):
    user, dest = make_user(session), make_destination(session)
    job = _profile_job(session, user, dest)
    now = utcnow() + timedelta(seconds=1)

    for attempt, delay in ((1, 60), (2, 120)):
        claimed = claim_next(session, "w1", now=now, policy=POLICY)
        assert claimed.attempts == attempt
        complete(session, job.id, claimed.claim_token, DeliveryOutcome.transient("HTTP 503"), now=now, policy=POLICY)
        stored = _reload(session, SyncJob, job.id)
        assert stored.status == "pending"
        assert stored.scheduled_at == now + timedelta(seconds=delay)
        assert stored.dedupe_slot == f"{dest.id}:{user.id}"
        assert claim_next(session, "w1", now=now, policy=POLICY) is None
        now = stored.scheduled_at

    claimed = claim_next(session, "w1", now=now, policy=POLICY)
    complete(session, job.id, claimed.claim_token, DeliveryOutcome.transient("HTTP 503"), now=now, policy=POLICY)
    stored = _reload(session, SyncJob, job.id)
    assert stored.status == "failed" and stored.outcome == "failed"
    assert "gave up after 3 attempts" in stored.last_error

    health = _reload(session, Destination, dest.id)
    assert health.consecutive_failures == 3
    assert health.backoff_until == now + timedelta(seconds=60)
    session.rollback()


def test_rate_limit_gives_attempt_back_and_pauses_destination(session):
    user, dest = make_user(session), make_destination(session)
    job = _profile_job(session, user, dest)
    now = utcnow() + timedelta(seconds=1)

    claimed = claim_next(session, "w1", now=now, policy=POLICY)
    complete(session, job.id, claimed.claim_token, DeliveryOutcome.rate_limited(30), now=now, policy=POLICY)
    stored = _reload(session, SyncJob, job.id)
    assert stored.status == "pending"
    assert stored.attempts == 0
    assert stored.scheduled_at == now + timedelta(seconds=30)
    assert _reload(session, Destination, dest.id).backoff_until == now + timedelta(seconds=30)
    assert _reload(session, Destination, dest.id).consecutive_failures == 0

    assert claim_next(session, "w1", now=now + timedelta(seconds=10), policy=POLICY) is None
    assert claim_next(session, "w1", now=now + timedelta(seconds=31), policy=POLICY).id == job.id
    session.rollback()


def test_rejection_is_terminal_and_retry_failed_requeues(session):
    user, dest = make_user(session), make_destination(session)
    job = _profile_job(session, user, dest)
    claimed = claim_next(session, "w1", policy=POLICY)
    complete(session, job.id, claimed.claim_token, DeliveryOutcome.rejected("HTTP 400: bad email"), policy=POLICY)
    stored = _reload(session, SyncJob, job.id)
    assert stored.status == "failed" and stored.outcome == "rejected"
    assert _reload(session, Destination, dest.id).last_error == "HTTP 400: bad email"
    session.rollback()

    assert retry_failed(session, "other-ws") == 0
    assert retry_failed(session, "ws1") == 1
    stored = _reload(session, SyncJob, job.id)
    assert stored.status == "pending" and stored.attempts == 0 and stored.outcome is None
    assert stored.dedupe_slot == f"{dest.id}:{user.id}"
    session.rollback()


def test_expired_lease_is_recovered_and_late_completion_ignored(session):
    user, dest = make_user(session), make_destination(session)
    job = _profile_job(session, user, dest)
    now = utcnow() + timedelta(seconds=1)
    claimed = claim_next(session, "crashed", now=now, policy=POLICY)

    assert recover_expired_leases(session, now=now + timedelta(seconds=60), policy=POLICY)["requeued"] == 0
    counts = recover_expired_leases(session, now=now + timedelta(seconds=121), policy=POLICY)
    assert counts["requeued"] == 1
    stored = _reload(session, SyncJob, job.id)
    assert stored.status == "pending" and stored.claim_token is None
    assert "crashed" in stored.last_error

    assert not complete(session, job.id, claimed.claim_token, DeliveryOutcome.success(), policy=POLICY)
    session.rollback()


def test_release_claim_returns_job_untouched(session):
    user, dest = make_user(session), make_destination(session)
    job = _profile_job(session, user, dest)
    now = utcnow() + timedelta(seconds=1)
    claimed = claim_next(session, "w1", now=now, policy=POLICY)

    assert release_claim(session, job.id, claimed.claim_token, delay_seconds=5, now=now)
    assert not release_claim(session, job.id, claimed.claim_token, now=now)
    stored = _reload(session, SyncJob, job.id)
    assert stored.status == "pending" and stored.attempts == 0
    assert stored.scheduled_at == now + timedelta(seconds=5)
    assert _reload(session, Destination, dest.id).consecutive_failures == 0
    session.rollback()


def test_disabled_destination_is_not_claimed(session):
    user = make_user(session)
    dest = make_destination(session, enabled=False)
    job = _profile_job(session, user, dest)
    assert claim_next(session, "w1", policy=POLICY) is None

    dest = _reload(session, Destination, dest.id)
    dest.enabled = True
    session.commit()
    assert claim_next(session, "w1", policy=POLICY).id == job.id
    session.rollback()


def test_claim_is_scoped_to_workspace(session):
    dest_a = make_destination(session, workspace_id="ws-a")
    dest_b = make_destination(session, workspace_id="ws-b")
    _profile_job(session, make_user(session, workspace_id="ws-a"), dest_a)
    job_b = _profile_job(session, make_user(session, workspace_id="ws-b"), dest_b)
    assert claim_next(session, "w1", policy=POLICY, workspace_id="ws-b").id == job_b.id
    assert claim_next(session, "w1", policy=POLICY, workspace_id="ws-b") is None
    session.rollback()


def test_noise_events_are_recorded_as_blocked(session):
    user = make_user(session)
    dest = make_destination(session, blocked_events=["Product Removed"])
    policy = BlockedEventPolicy()

    page = make_event(session, event_name="Page View")
    job = enqueue_event_track(session, page, user, dest, {}, policy, POLICY)
    session.commit()
    assert job.status == "completed" and job.outcome == "blocked"
    assert "policy builtin-1" in job.last_error

    removed = make_event(session, event_name="Product Removed")
    job = enqueue_event_track(session, removed, user, dest, {}, policy, POLICY)
    session.commit()
    assert job.outcome == "blocked" and "(destination)" in job.last_error

    added = make_event(session, event_name="Product Added")
    job = enqueue_event_track(session, added, user, dest, {}, policy, POLICY)
    session.commit()
    assert job.status == "pending"
    again = enqueue_event_track(session, added, user, dest, {}, policy, POLICY)
    session.commit()
    assert again.id == job.id
    session.rollback()


def test_destination_without_event_tracking(session):
    user = make_user(session)
    dest = make_destination(session, track_events=False)
    event = make_event(session)
    assert enqueue_event_track(session, event, user, dest, {}, BlockedEventPolicy(), POLICY) is None
    session.rollback()


def test_blocked_patterns_from_settings():
    class S:
        blocked_event_patterns = '{"version": "2024-07", "patterns": ["debug *"]}'
        blocked_events_version = "unused"

    policy = BlockedEventPolicy.from_settings(S())
    assert policy.version == "2024-07"
    assert policy.match("Debug Ping") == "debug *"
    assert policy.match("Page View") is None


def test_cross_workspace_enqueue_is_rejected(session):
    user = make_user(session, workspace_id="ws2")
    dest = make_destination(session, workspace_id="ws1")
    with pytest.raises(WorkspaceMismatchError):
        enqueue_profile_upsert(session, user, dest, {}, POLICY)
    session.rollback()


def test_enqueue_dispatches_on_job_type(session):
    user, dest = make_user(session), make_destination(session)
    event = make_event(session, unified_user_id=user.id)

    profile = enqueue(session, PROFILE_UPSERT, user, dest, {"traits": {}}, policy=POLICY)
    track = enqueue(session, EVENT_TRACK, event, dest, {}, user=user, blocked=BlockedEventPolicy(patterns=()), policy=POLICY)
    session.commit()
    assert (profile.job_type, profile.unified_user_id) == (PROFILE_UPSERT, user.id)
    assert (track.job_type, track.event_id) == (EVENT_TRACK, event.id)

    with pytest.raises(ValueError):
        enqueue(session, "carrier_pigeon", user, dest, {})
    session.rollback()
