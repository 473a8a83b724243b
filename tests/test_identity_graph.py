import threading
from datetime import datetime

import pytest

from identity_sync.errors import WorkspaceMismatchError
from identity_sync.infrastructure import db
from identity_sync.identity_graph import (
    MALFORMED_CONFIDENCE,
    delete_profile,
    extract_identifiers,
    normalize_phone,
    resolve_event,
    resolve_user_id,
    set_operator_traits,
)
from identity_sync.models.tables import Event, Identity, IdentityMerge, SyncJob, UnifiedUser
from identity_sync.sync_queue import enqueue_profile_upsert

from conftest import make_destination, make_event


def _resolve(session, event):
    return resolve_event(session, event.id)


def test_extract_identifiers_normalizes_and_flags_malformed():
    found = extract_identifiers(
        {"email": "  Ann@Example.COM ", "phone": "+1 (555) 010-2000"},
        {"anonymous_id": "anon-1", "traits": {"customer_email": "not-an-email"}},
        "fallback",
    )
    by_value = {(o.type, o.value): o for o in found}
    assert ("email", "ann@example.com") in by_value
    assert by_value[("email", "ann@example.com")].confidence == 1.0
    bad = by_value[("email", "not-an-email")]
    assert bad.confidence == MALFORMED_CONFIDENCE and not bad.is_valid
    assert ("phone", "+15550102000") in by_value
    assert ("anonymous_id", "anon-1") in by_value
    assert ("anonymous_id", "fallback") not in by_value


def test_fallback_anonymous_id_when_none_given():
    found = extract_identifiers({}, {}, "anon-fallback")
    assert [(o.type, o.value) for o in found] == [("anonymous_id", "anon-fallback")]


def test_normalize_phone_bounds():
    assert normalize_phone("555-0100") == ("+5550100", True)
    assert normalize_phone("12")[1] is False


def test_first_event_creates_user_and_identities(session):
    ev = make_event(session, properties={"email": "a@shop.io"}, context={"anonymous_id": "anon-a"})
    uid = _resolve(session, ev)
    user = session.get(UnifiedUser, uid)
    assert user.emails == ["a@shop.io"]
    assert user.primary_email == "a@shop.io"
    assert user.anonymous_ids == ["anon-a"]
    assert session.get(Event, ev.id).unified_user_id == uid
    assert session.query(Identity).filter_by(unified_user_id=uid).count() == 2
    session.rollback()


def test_resolution_is_repeatable(session):
    ev = make_event(session, context={"anonymous_id": "anon-a"})
    first = _resolve(session, ev)
    assert _resolve(session, ev) == first
    assert session.query(UnifiedUser).count() == 1
    session.rollback()


def test_linking_event_merges_into_earliest_user(session):
    browse = make_event(session, event_name="Product Viewed", context={"anonymous_id": "anon-a"},
                        event_time=datetime(2024, 5, 1, 9, 0))
    shop = make_event(session, event_name="Product Viewed", properties={"email": "b@shop.io"},
                      context={"anonymous_id": "anon-b"}, event_time=datetime(2024, 5, 1, 10, 0))
    early = _resolve(session, browse)
    late = _resolve(session, shop)
    assert early != late

    link = make_event(session, event_name="Identify", context={"anonymous_id": "anon-a", "traits": {"email": "b@shop.io"}},
                      event_time=datetime(2024, 5, 1, 11, 0))
    canonical = _resolve(session, link)
    assert canonical == early

    loser = session.get(UnifiedUser, late, populate_existing=True)
    winner = session.get(UnifiedUser, early, populate_existing=True)
    assert loser.merged_into_id == early
    assert loser.emails == []
    assert set(winner.emails) == {"b@shop.io"}
    assert set(winner.anonymous_ids) == {"anon-a", "anon-b"}
    assert winner.primary_email == "b@shop.io"
    assert [m["user_id"] for m in winner.merged_from] == [late]
    assert session.get(Event, shop.id, populate_existing=True).unified_user_id == early

    audit = session.query(IdentityMerge).one()
    assert (audit.canonical_user_id, audit.merged_user_id) == (early, late)
    assert audit.trigger_event_id == link.id
    assert audit.events_repointed == 1
    session.rollback()


def test_merge_skips_pending_profile_jobs_of_loser(session):
    dest = make_destination(session)
    a = make_event(session, context={"anonymous_id": "anon-a"}, event_time=datetime(2024, 5, 1, 9, 0))
    b = make_event(session, properties={"email": "c@shop.io"}, context={"anonymous_id": "anon-b"},
                   event_time=datetime(2024, 5, 1, 10, 0))
    ua = _resolve(session, a)
    ub = _resolve(session, b)
    job = enqueue_profile_upsert(session, session.get(UnifiedUser, ub), dest, {"traits": {}})
    session.commit()

    link = make_event(session, context={"anonymous_id": "anon-a", "traits": {"email": "c@shop.io"}},
                      event_time=datetime(2024, 5, 1, 11, 0))
    assert _resolve(session, link) == ua

    stored = session.get(SyncJob, job.id, populate_existing=True)
    assert stored.status == "completed"
    assert stored.outcome == "skipped"
    assert stored.last_error == f"Skipped: merged into {ua}"
    assert stored.dedupe_slot is None
    session.rollback()


def test_operator_traits_set_and_remove(session):
    ev = make_event(session, context={"anonymous_id": "anon-a"})
    uid = _resolve(session, ev)
    assert set_operator_traits(session, "ws1", uid, {"vip": True, "tier": "gold"}) == {"vip": True, "tier": "gold"}
    assert set_operator_traits(session, "ws1", uid, {"tier": None}) == {"vip": True}


def test_delete_profile_unlinks_events_and_drops_identities(session):
    ev = make_event(session, properties={"email": "gone@shop.io"}, context={"anonymous_id": "anon-z"})
    uid = _resolve(session, ev)
    result = delete_profile(session, "ws1", uid)
    assert result["events_unlinked"] == 1
    assert result["identities_deleted"] == 2

    user = session.get(UnifiedUser, uid, populate_existing=True)
    assert user.deleted_at is not None
    assert user.emails == [] and user.primary_email is None
    assert session.get(Event, ev.id, populate_existing=True).unified_user_id is None
    assert session.query(Identity).count() == 0
    session.rollback()


def test_resolve_rejects_wrong_workspace(session):
    ev = make_event(session, context={"anonymous_id": "anon-a"})
    with pytest.raises(WorkspaceMismatchError):
        resolve_event(session, ev.id, workspace_id="other")


def test_concurrent_overlapping_merges_converge(session):
    users = []
    for i in range(3):
        ev = make_event(session, properties={"email": f"u{i}@shop.io"}, context={"anonymous_id": f"anon-{i}"},
                        event_time=datetime(2024, 5, 1, 9 + i, 0))
        users.append(_resolve(session, ev))
    # each link joins one visitor's device to the next visitor's email, in a cycle
    links = [
        make_event(session, event_name="Identify", context={"anonymous_id": f"anon-{i}", "traits": {"email": f"u{(i + 1) % 3}@shop.io"}},
                   event_time=datetime(2024, 5, 1, 12, 0))
        for i in range(3)
    ]
    session.rollback()
    errors = []
    lock = threading.Lock()

    def worker(event_id):
        s = db.get_session()
        try:
            resolve_event(s, event_id)
        except Exception as e:  # surfaced by the assertion below
            with lock:
                errors.append(e)
        finally:
            s.close()

    threads = [threading.Thread(target=worker, args=(ev.id,)) for ev in links]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not errors
    assert not any(t.is_alive() for t in threads)
    live = session.query(UnifiedUser).filter(UnifiedUser.merged_into_id.is_(None)).all()
    assert [u.id for u in live] == [users[0]]
    assert set(live[0].emails) == {"u0@shop.io", "u1@shop.io", "u2@shop.io"}
    assert {resolve_user_id(session, uid) for uid in users} == {users[0]}
    owners = {e.unified_user_id for e in session.query(Event)}
    assert {resolve_user_id(session, uid) for uid in owners} == {users[0]}
    assert session.query(IdentityMerge).count() == 2
    session.rollback()
