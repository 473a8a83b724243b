"""Ingestion entry points and the per-event processing chain.

    ingest -> validate -> normalize -> dedupe key -> admit
    process_admitted_event -> resolve identity -> recompute traits
        -> classify segments -> enqueue profile upserts / event tracks

Producers only wait for admission. Everything after it runs in a Celery task
(inline when APP_ENV=test) and is safe to repeat: resolution re-attaches the
same identities, recompute replaces traits wholesale, event tracks are unique
per (event, destination) and profile upserts supersede each other.
"""
from __future__ import annotations
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable
from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from identity_sync.config import get_settings, is_test_env
from identity_sync.errors import InvalidEventError, UnknownDestinationTypeError, ensure_same_workspace
from identity_sync.fingerprint import admit_event, compute_dedupe_key
from identity_sync.identity_graph import IDENTIFIER_TRAIT_KEYS, resolve_event, user_identifiers
from identity_sync.infrastructure import db
from identity_sync.locks import UserLockManager
from identity_sync.models.tables import Destination, Event, IngestionDeadLetter, UnifiedUser
from identity_sync.normalization import enrich_properties, map_event_type, normalize_event_name
from identity_sync.scoring import ComputedTraits, ScoringPolicy, recompute_user, users_due_for_sweep
from identity_sync.segments import load_segment_definitions, match_segments, refresh_memberships
from identity_sync.sync_queue import EVENT_TRACK, PROFILE_UPSERT, BlockedEventPolicy, QueuePolicy, enqueue
from identity_sync.utils.clock import as_naive_utc, utcnow
from identity_sync.validation.events import PayloadLimits, parse_event

logger = logging.getLogger(__name__)

INGEST_REJECTED = Counter('ingest_events_rejected_total', 'Events rejected at validation', ['reason'])
EVENTS_PROCESSED = Counter('pipeline_events_processed_total', 'Admitted events run through the processing chain', ['status'])
DISPATCH_FAILURES = Counter('pipeline_dispatch_failures_total', 'Accepted events whose processing task could not be queued')

IDENTIFY_EVENT = "Identify"


@dataclass
class IngestResult:
    accepted: bool
    duplicate: bool
    event_id: int
    dupe_count: int
    dedupe_key: str
    event_name: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _dead_letter(payload: Any, reason: str):
    session = db.get_session()
    try:
        ws = payload.get("workspace_id") if isinstance(payload, dict) else None
        doc = payload if isinstance(payload, dict) else {"raw": repr(payload)[:2000]}
        session.add(IngestionDeadLetter(workspace_id=str(ws)[:64] if ws else None, payload=_jsonable(doc), error=reason[:512]))
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("could not record rejected event (reason=%s)", reason)
    finally:
        session.close()


def _jsonable(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    return obj


def _dispatch(event_id: int):
    from identity_sync.tasks.ingestion import process_event
    if is_test_env():
        process_event(event_id)
        return
    try:
        process_event.delay(event_id)
    except Exception as e:  # broker down: the stale-event sweep picks the event up
        DISPATCH_FAILURES.inc()
        logger.warning("could not queue processing for event %s: %s", event_id, e)


def ingest(payload: dict, dispatch: bool = True) -> IngestResult:
    """Validate and admit one event. Raises InvalidEventError or StoreUnavailableError."""
    settings = get_settings()
    try:
        model = parse_event(payload, PayloadLimits.from_settings(settings))
    except InvalidEventError as e:
        INGEST_REJECTED.labels(e.reason.split(":", 1)[0]).inc()
        _dead_letter(payload, e.reason)
        raise
    event_name = normalize_event_name(model.event_name, model.context)
    event_time = as_naive_utc(model.event_time) if model.event_time else utcnow()
    key = compute_dedupe_key(
        model.workspace_id, model.source, event_name, model.properties, event_time,
        idempotency_token=model.idempotency_key, context=model.context,
        bucket_seconds=settings.dedupe_bucket_seconds,
    )
    session = db.get_session()
    try:
        res = admit_event(session, {
            "workspace_id": model.workspace_id,
            "source": model.source,
            "event_name": event_name,
            "raw_event_name": model.event_name,
            "event_type": map_event_type(event_name),
            "properties": _jsonable(enrich_properties(model.properties, model.context)),
            "context": _jsonable(model.context),
            "idempotency_key": model.idempotency_key,
            "dedupe_key": key,
            "event_time": event_time,
        })
    finally:
        session.close()
    if res.accepted and dispatch:
        _dispatch(res.event_id)
    return IngestResult(res.accepted, not res.accepted, res.event_id, res.dupe_count, res.dedupe_key, event_name)


def ingest_bulk(payloads: list[dict], dispatch: bool = True) -> list[dict[str, Any]]:
    """Per-item results; an invalid item does not reject the batch."""
    settings = get_settings()
    if len(payloads) > settings.max_bulk_events:
        raise InvalidEventError(f"too_many_events:{len(payloads)}>{settings.max_bulk_events}")
    results = []
    for p in payloads:
        try:
            results.append(ingest(p, dispatch=dispatch).to_dict())
        except InvalidEventError as e:
            results.append({"accepted": False, "duplicate": False, "reason": e.reason})
    return results


def identify(workspace_id: str, traits: dict[str, Any], anonymous_id: str | None = None,
             source: str = "api", idempotency_key: str | None = None) -> IngestResult:
    """Link identifiers (and store the remaining traits) for a visitor."""
    context: dict[str, Any] = {"traits": dict(traits or {})}
    if anonymous_id:
        context["anonymous_id"] = anonymous_id
    return ingest({
        "workspace_id": workspace_id,
        "source": source,
        "event_name": IDENTIFY_EVENT,
        "properties": {},
        "context": context,
        "idempotency_key": idempotency_key,
    })


# ---------------------------------------------------------------- processing


def profile_traits(user: UnifiedUser, traits: ComputedTraits, segments: Iterable[str]) -> dict[str, Any]:
    """Destination-neutral profile properties; computed values win over operator traits."""
    out = {k: v for k, v in (user.traits or {}).items()}
    out.update({
        "intent_score": traits.intent_score,
        "frequency_score": traits.frequency_score,
        "depth_score": traits.depth_score,
        "recency_days": traits.recency_days,
        "top_category": traits.top_category,
        "drop_off_stage": traits.drop_off_stage,
        "viewed_products_7d": traits.unique_products_viewed,
        "atc_7d": traits.add_to_cart_7d,
        "session_count_30d": traits.session_count,
        "cart_abandoned_at": traits.cart_abandoned_at,
        "checkout_abandoned_at": traits.checkout_abandoned_at,
        "lifetime_value": traits.lifetime_value,
        "orders_count": traits.orders_count,
        "last_seen_at": traits.last_event_at,
        "computed_at": traits.last_computed_at,
        "segments": ",".join(sorted(segments)),
    })
    return out


def profile_payload(user: UnifiedUser, traits: ComputedTraits, segments: Iterable[str]) -> dict[str, Any]:
    return {"identifiers": user_identifiers(user), "traits": profile_traits(user, traits, segments)}


def event_payload(event: Event, user: UnifiedUser | None) -> dict[str, Any]:
    props = dict(event.properties or {})
    props["sf_event_id"] = event.id
    props["sf_event_source"] = event.source
    return {
        "identifiers": user_identifiers(user) if user is not None else None,
        "event_name": event.event_name,
        "properties": props,
        "time": event.event_time.isoformat(),
        "unique_id": event.dedupe_key,
    }


def _identify_traits(event: Event) -> dict[str, Any]:
    traits = (event.context or {}).get("traits")
    if event.event_name != IDENTIFY_EVENT or not isinstance(traits, dict):
        return {}
    return {k: v for k, v in traits.items() if k not in IDENTIFIER_TRAIT_KEYS}


def _enabled_destinations(session: Session, workspace_id: str) -> list[Destination]:
    return list(session.execute(
        select(Destination).where(Destination.workspace_id == workspace_id, Destination.enabled.is_(True)).order_by(Destination.id)
    ).scalars())


def _sync_hook(session: Session, workspace_id: str, event_id: int | None,
               blocked: BlockedEventPolicy, queue_policy: QueuePolicy):
    """on_computed callback: memberships and outbound jobs, in the recompute transaction."""
    def hook(user: UnifiedUser, traits: ComputedTraits):
        event = session.get(Event, event_id) if event_id is not None else None
        if event is not None:
            extra = _identify_traits(event)
            if extra:
                user.traits = {**(user.traits or {}), **extra}
        definitions = load_segment_definitions(session, workspace_id)
        keys = match_segments(traits, definitions, user.traits)
        refresh_memberships(session, user, keys)
        destinations = _enabled_destinations(session, workspace_id)
        payload = profile_payload(user, traits, keys)
        for dest in destinations:
            enqueue(session, PROFILE_UPSERT, user, dest, payload, policy=queue_policy)
        if event is not None and event.event_name != IDENTIFY_EVENT:
            ev_payload = event_payload(event, user)
            for dest in destinations:
                enqueue(session, EVENT_TRACK, event, dest, ev_payload, user=user, blocked=blocked, policy=queue_policy)
        if event is not None:
            event.status = "processed"
            event.processed_at = utcnow()
            event.last_error = None
            event.processing_attempts = (event.processing_attempts or 0) + 1
    return hook


def process_admitted_event(
    event_id: int,
    locks: UserLockManager | None = None,
    scoring_policy: ScoringPolicy | None = None,
    blocked: BlockedEventPolicy | None = None,
    queue_policy: QueuePolicy | None = None,
) -> dict[str, Any]:
    """Run one admitted event through resolve -> recompute -> classify -> enqueue.

    A failure marks the event failed with last_error; the periodic
    reprocess task retries it.
    """
    scoring_policy = scoring_policy or ScoringPolicy.from_settings()
    blocked = blocked or BlockedEventPolicy.from_settings()
    queue_policy = queue_policy or QueuePolicy.from_settings()
    session = db.get_session()
    try:
        event = session.get(Event, event_id)
        if event is None:
            return {"status": "missing", "event_id": event_id}
        workspace_id, status = event.workspace_id, event.status
        session.rollback()
        if status == "processed":
            return {"status": "already_processed", "event_id": event_id}
        try:
            user_id = resolve_event(session, event_id, locks=locks)
            traits = recompute_user(
                session, workspace_id, user_id, policy=scoring_policy, locks=locks,
                on_computed=_sync_hook(session, workspace_id, event_id, blocked, queue_policy),
            )
        except Exception as e:
            session.rollback()
            _mark_failed(session, event_id, f"{e.__class__.__name__}: {e}")
            EVENTS_PROCESSED.labels("failed").inc()
            logger.exception("processing event %s failed", event_id)
            return {"status": "failed", "event_id": event_id, "error": str(e)}
        EVENTS_PROCESSED.labels("processed").inc()
        return {"status": "ok", "event_id": event_id, "user_id": user_id, "intent_score": traits.intent_score}
    finally:
        session.close()


def _mark_failed(session: Session, event_id: int, error: str):
    try:
        session.execute(
            update(Event).where(Event.id == event_id)
            .values(status="failed", last_error=error[:512], processing_attempts=Event.processing_attempts + 1)
        )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("could not mark event %s failed", event_id)


def stale_event_ids(session: Session, older_than_minutes: int, limit: int = 500, max_attempts: int = 5) -> list[int]:
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    return list(session.execute(
        select(Event.id)
        .where(Event.status.in_(("pending", "failed")), Event.received_at < cutoff, Event.processing_attempts < max_attempts)
        .order_by(Event.received_at, Event.id)
        .limit(limit)
    ).scalars())


# ---------------------------------------------------------------- operator controls


def recompute_one(workspace_id: str, user_id: int, trigger: str = "operator",
                  locks: UserLockManager | None = None) -> ComputedTraits:
    """Recompute a user and refresh segments / profile upserts, without an event."""
    session = db.get_session()
    try:
        return recompute_user(
            session, workspace_id, user_id, locks=locks, trigger=trigger,
            on_computed=_sync_hook(session, workspace_id, None, BlockedEventPolicy.from_settings(), QueuePolicy.from_settings()),
        )
    finally:
        session.close()


def recompute_workspace(workspace_id: str, batch: int = 500) -> dict[str, int]:
    """Recompute every live user of a workspace. Idempotent."""
    session = db.get_session()
    try:
        user_ids = list(session.execute(
            select(UnifiedUser.id).where(
                UnifiedUser.workspace_id == workspace_id,
                UnifiedUser.merged_into_id.is_(None),
                UnifiedUser.deleted_at.is_(None),
            ).order_by(UnifiedUser.id)
        ).scalars())
        session.rollback()
    finally:
        session.close()
    done = failed = 0
    for i in range(0, len(user_ids), max(1, batch)):
        for uid in user_ids[i:i + batch]:
            try:
                recompute_one(workspace_id, uid, trigger="operator")
                done += 1
            except Exception:
                failed += 1
                logger.exception("recompute of user %s workspace=%s failed", uid, workspace_id)
    logger.info("recomputed workspace=%s users=%s failed=%s", workspace_id, done, failed)
    return {"recomputed": done, "failed": failed}


def sweep_recency(older_than_minutes: int | None = None, limit: int | None = None,
                  workspace_id: str | None = None) -> dict[str, int]:
    """Recompute users whose traits are older than the sweep interval; recency and abandonment age with time."""
    s = get_settings()
    older = utcnow() - timedelta(minutes=older_than_minutes or s.recompute_sweep_minutes)
    session = db.get_session()
    try:
        due = users_due_for_sweep(session, older, limit or s.recompute_sweep_batch, workspace_id)
        session.rollback()
    finally:
        session.close()
    done = 0
    for ws, uid in due:
        try:
            recompute_one(ws, uid, trigger="sweep")
            done += 1
        except Exception:
            logger.exception("sweep recompute of user %s workspace=%s failed", uid, ws)
    return {"due": len(due), "recomputed": done}


def force_drain(workspace_id: str | None = None, max_jobs: int | None = None, pool=None) -> dict[str, Any]:
    """Deliver everything claimable now (optionally one workspace only)."""
    from identity_sync.workers import SyncWorkerPool
    pool = pool or SyncWorkerPool()
    return pool.drain(max_jobs=max_jobs, workspace_id=workspace_id)


def set_destination_enabled(workspace_id: str, destination_id: int, enabled: bool) -> dict[str, Any]:
    """Operator pause/resume. Pending jobs stay queued while disabled; in-flight calls finish."""
    session = db.get_session()
    try:
        dest = session.get(Destination, destination_id)
        if dest is None:
            raise LookupError(f"destination {destination_id} not found")
        ensure_same_workspace(workspace_id, dest)
        dest.enabled = enabled
        if enabled:
            dest.backoff_until = None
            dest.consecutive_failures = 0
        session.commit()
        logger.info("destination %s workspace=%s enabled=%s", destination_id, workspace_id, enabled)
        return {"destination_id": dest.id, "enabled": dest.enabled}
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_destination(workspace_id: str, name: str, dest_type: str, config: dict | None = None, **fields) -> Destination:
    from identity_sync.destinations import adapter_types
    if dest_type not in adapter_types():
        raise UnknownDestinationTypeError(f"no adapter registered for destination type '{dest_type}'")
    session = db.get_session()
    try:
        dest = Destination(workspace_id=workspace_id, name=name, type=dest_type, config=dict(config or {}), **fields)
        session.add(dest)
        session.commit()
        return dest
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
