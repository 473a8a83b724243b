"""Durable sync job queue backed by the `sync_jobs` table.

Job lifecycle::

    pending --claim--> running --complete--> completed (success|skipped|blocked)
                          |                  failed    (rejected, or attempts exhausted)
                          +--lease expiry / rate limit / transient--> pending

Every transition is a compare-and-set UPDATE keyed on the expected status
(and, for running jobs, the claim token), so a job is claimed by at most one
worker and reaches a terminal state at most once per claim.
"""
from __future__ import annotations
import fnmatch
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable
from prometheus_client import Counter
from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased
from identity_sync.config import get_settings, parse_pattern_list
from identity_sync.errors import ensure_same_workspace
from identity_sync.models.tables import Destination, Event, SyncJob, UnifiedUser
from identity_sync.outcomes import DeliveryOutcome, OutcomeKind
from identity_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

JOBS_ENQUEUED = Counter('sync_jobs_enqueued_total', 'Sync jobs enqueued', ['job_type', 'status'])
JOBS_SUPERSEDED = Counter('sync_jobs_superseded_total', 'Pending profile upserts replaced by a newer snapshot')
JOBS_CLAIMED = Counter('sync_jobs_claimed_total', 'Sync jobs claimed by workers', ['job_type'])
JOBS_FINISHED = Counter('sync_jobs_finished_total', 'Sync job completions by outcome', ['job_type', 'outcome'])
STALE_COMPLETIONS = Counter('sync_jobs_stale_completions_total', 'Completions ignored because the claim was no longer valid')
LEASES_RECOVERED = Counter('sync_jobs_leases_recovered_total', 'Running jobs reclaimed after lease expiry', ['result'])

PROFILE_UPSERT = "profile_upsert"
EVENT_TRACK = "event_track"
JOB_TYPES = (PROFILE_UPSERT, EVENT_TRACK)

PENDING, RUNNING, COMPLETED, FAILED = "pending", "running", "completed", "failed"

DEFAULT_BLOCKED_EVENTS = (
    "page_view", "Page View", "Session Start", "Scroll Depth", "Time on Page",
    "product_view", "Product Viewed", "View Item", "View Category",
    "Form Viewed", "Form Submitted",
)
DEFAULT_BLOCKED_VERSION = "builtin-1"
MAX_ENQUEUE_RETRIES = 5
CLAIM_BATCH = 20


@dataclass(frozen=True)
class BlockedEventPolicy:
    """Versioned list of glob patterns for low-signal events never forwarded."""
    version: str = DEFAULT_BLOCKED_VERSION
    patterns: tuple[str, ...] = DEFAULT_BLOCKED_EVENTS

    @classmethod
    def from_settings(cls, settings=None) -> "BlockedEventPolicy":
        s = settings or get_settings()
        version, patterns = parse_pattern_list(s.blocked_event_patterns)
        if not patterns:
            return cls()
        return cls(version=version or s.blocked_events_version, patterns=tuple(patterns))

    def match(self, event_name: str, extra_patterns: Iterable[str] = ()) -> str | None:
        name = event_name.lower()
        for pattern in list(extra_patterns or ()) + list(self.patterns):
            if fnmatch.fnmatchcase(name, str(pattern).lower()):
                return pattern
        return None


@dataclass(frozen=True)
class QueuePolicy:
    max_attempts: int = 3
    lease_seconds: int = 120
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3600
    default_retry_after: int = 60
    destination_failure_threshold: int = 3

    @classmethod
    def from_settings(cls, settings=None) -> "QueuePolicy":
        s = settings or get_settings()
        return cls(
            max_attempts=s.sync_max_attempts,
            lease_seconds=s.sync_lease_seconds,
            backoff_base_seconds=s.sync_backoff_base_seconds,
            backoff_max_seconds=s.sync_backoff_max_seconds,
            default_retry_after=s.sync_default_retry_after,
        )

    def backoff_seconds(self, attempts: int) -> int:
        """base * 2^(attempts-1), capped: 1m, 2m, 4m ... for the default base."""
        exp = max(0, attempts - 1)
        return int(min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** min(exp, 20))))


def profile_slot(destination_id: int, user_id: int) -> str:
    return f"{destination_id}:{user_id}"


# ---------------------------------------------------------------- enqueue


def enqueue_profile_upsert(
    session: Session,
    user: UnifiedUser,
    destination: Destination,
    payload: dict[str, Any],
    policy: QueuePolicy | None = None,
) -> SyncJob:
    """Queue the latest profile snapshot for (destination, user).

    A still-pending older job for the same pair is closed as
    completed/skipped ("Skipped: superseded by job N"). Runs inside the
    caller's transaction (savepoints only); the caller commits.
    """
    policy = policy or QueuePolicy.from_settings()
    ensure_same_workspace(destination.workspace_id, user)
    slot = profile_slot(destination.id, user.id)
    last_exc: Exception | None = None
    for _ in range(MAX_ENQUEUE_RETRIES):
        now = utcnow()
        try:
            with session.begin_nested():
                old_id = session.execute(select(SyncJob.id).where(SyncJob.dedupe_slot == slot)).scalar_one_or_none()
                superseded = None
                if old_id is not None:
                    res = session.execute(
                        update(SyncJob)
                        .where(SyncJob.id == old_id, SyncJob.status == PENDING, SyncJob.dedupe_slot == slot)
                        .values(status=COMPLETED, outcome="skipped", dedupe_slot=None, completed_at=now,
                                last_error="Skipped: superseded", updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    superseded = old_id if res.rowcount else None
                job = SyncJob(
                    workspace_id=destination.workspace_id,
                    destination_id=destination.id,
                    job_type=PROFILE_UPSERT,
                    unified_user_id=user.id,
                    payload=payload,
                    status=PENDING,
                    attempts=0,
                    max_attempts=policy.max_attempts,
                    scheduled_at=now,
                    dedupe_slot=slot,
                )
                session.add(job)
                session.flush()
                if superseded is not None:
                    session.execute(
                        update(SyncJob).where(SyncJob.id == superseded)
                        .values(last_error=f"Skipped: superseded by job {job.id}")
                        .execution_options(synchronize_session=False)
                    )
                    JOBS_SUPERSEDED.inc()
                    JOBS_FINISHED.labels(PROFILE_UPSERT, "skipped").inc()
            JOBS_ENQUEUED.labels(PROFILE_UPSERT, PENDING).inc()
            return job
        except IntegrityError as e:
            # another producer took the slot between our read and insert
            last_exc = e
            continue
    raise last_exc  # type: ignore[misc]


def enqueue_event_track(
    session: Session,
    event: Event,
    user: UnifiedUser | None,
    destination: Destination,
    payload: dict[str, Any],
    blocked: BlockedEventPolicy | None = None,
    policy: QueuePolicy | None = None,
) -> SyncJob | None:
    """Queue one event for one destination, or record it as blocked.

    Returns None when the destination does not track events. Idempotent per
    (event, destination): a second call returns the existing job.
    """
    ensure_same_workspace(destination.workspace_id, event, user)
    if not destination.track_events:
        return None
    blocked = blocked or BlockedEventPolicy.from_settings()
    policy = policy or QueuePolicy.from_settings()
    now = utcnow()
    pattern = blocked.match(event.event_name, destination.blocked_events or ())
    job = SyncJob(
        workspace_id=destination.workspace_id,
        destination_id=destination.id,
        job_type=EVENT_TRACK,
        unified_user_id=user.id if user is not None else event.unified_user_id,
        event_id=event.id,
        payload=payload,
        attempts=0,
        max_attempts=policy.max_attempts,
        scheduled_at=now,
    )
    if pattern is not None:
        source = "destination" if pattern in (destination.blocked_events or ()) else f"policy {blocked.version}"
        job.status = COMPLETED
        job.outcome = "blocked"
        job.completed_at = now
        job.last_error = f"Blocked: '{event.event_name}' matches noise pattern '{pattern}' ({source})"
    else:
        job.status = PENDING
    try:
        with session.begin_nested():
            session.add(job)
            session.flush()
    except IntegrityError:
        return session.execute(
            select(SyncJob).where(SyncJob.event_id == event.id, SyncJob.destination_id == destination.id)
        ).scalar_one()
    JOBS_ENQUEUED.labels(EVENT_TRACK, job.status).inc()
    if pattern is not None:
        JOBS_FINISHED.labels(EVENT_TRACK, "blocked").inc()
    return job


def enqueue(session: Session, job_type: str, subject, destination: Destination, payload: dict[str, Any], **kwargs) -> SyncJob | None:
    """Dispatch on job type: subject is a UnifiedUser for profile upserts, an Event for event tracks."""
    if job_type == PROFILE_UPSERT:
        return enqueue_profile_upsert(session, subject, destination, payload, policy=kwargs.get("policy"))
    if job_type == EVENT_TRACK:
        return enqueue_event_track(session, subject, kwargs.get("user"), destination, payload,
                                   blocked=kwargs.get("blocked"), policy=kwargs.get("policy"))
    raise ValueError(f"unknown job type {job_type}")


# ---------------------------------------------------------------- claim / complete


def _claimable(now: datetime, exclude_destinations: Iterable[int] = (), workspace_id: str | None = None):
    running = aliased(SyncJob)
    busy_profile = exists().where(
        running.job_type == PROFILE_UPSERT,
        running.status == RUNNING,
        running.destination_id == SyncJob.destination_id,
        running.unified_user_id == SyncJob.unified_user_id,
    )
    q = (
        select(SyncJob.id)
        .join(Destination, Destination.id == SyncJob.destination_id)
        .where(
            SyncJob.status == PENDING,
            SyncJob.scheduled_at <= now,
            Destination.enabled.is_(True),
            or_(Destination.backoff_until.is_(None), Destination.backoff_until <= now),
            # one in-flight profile delivery per (destination, user) keeps last-write-wins ordering
            or_(SyncJob.job_type != PROFILE_UPSERT, ~busy_profile),
        )
        .order_by(SyncJob.scheduled_at, SyncJob.id)
    )
    excluded = list(exclude_destinations or ())
    if excluded:
        q = q.where(SyncJob.destination_id.not_in(excluded))
    if workspace_id is not None:
        q = q.where(SyncJob.workspace_id == workspace_id)
    return q


def claim_next(
    session: Session,
    worker_id: str,
    now: datetime | None = None,
    policy: QueuePolicy | None = None,
    exclude_destinations: Iterable[int] = (),
    workspace_id: str | None = None,
) -> SyncJob | None:
    """Atomically move the oldest claimable pending job to running for this worker.

    Jobs of disabled or backing-off destinations are never claimed. Commits.
    """
    policy = policy or QueuePolicy.from_settings()
    now = now or utcnow()
    try:
        candidates = session.execute(_claimable(now, exclude_destinations, workspace_id).limit(CLAIM_BATCH)).scalars().all()
        for job_id in candidates:
            token = uuid.uuid4().hex
            res = session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == PENDING)
                .values(
                    status=RUNNING,
                    claim_token=token,
                    claimed_by=worker_id,
                    lease_expires_at=now + timedelta(seconds=policy.lease_seconds),
                    started_at=now,
                    attempts=SyncJob.attempts + 1,
                    dedupe_slot=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                session.commit()
                job = session.get(SyncJob, job_id, populate_existing=True)
                JOBS_CLAIMED.labels(job.job_type).inc()
                return job
        session.commit()
        return None
    except Exception:
        session.rollback()
        raise


def _finish_values(outcome: DeliveryOutcome, attempts: int, max_attempts: int, now: datetime, policy: QueuePolicy) -> tuple[dict, str]:
    """Column values for a completion plus the metric label."""
    base = {"claim_token": None, "lease_expires_at": None, "updated_at": now}
    kind = outcome.kind
    if kind == OutcomeKind.SUCCESS:
        return {**base, "status": COMPLETED, "outcome": "success", "last_error": "", "completed_at": now}, "success"
    if kind == OutcomeKind.SKIPPED:
        return {**base, "status": COMPLETED, "outcome": "skipped", "last_error": f"Skipped: {outcome.detail}", "completed_at": now}, "skipped"
    if kind == OutcomeKind.BLOCKED:
        return {**base, "status": COMPLETED, "outcome": "blocked", "last_error": f"Blocked: {outcome.detail}", "completed_at": now}, "blocked"
    if kind == OutcomeKind.RATE_LIMITED:
        delay = outcome.retry_after if outcome.retry_after is not None else policy.default_retry_after
        # rate limiting is backoff, not failure: the attempt is given back
        return {
            **base, "status": PENDING, "attempts": max(0, attempts - 1),
            "scheduled_at": now + timedelta(seconds=max(0, delay)),
            "last_error": f"Rate limited: retry after {delay}s",
        }, "rate_limited"
    if kind == OutcomeKind.REJECTED:
        return {**base, "status": FAILED, "outcome": "rejected", "last_error": outcome.detail or "rejected", "completed_at": now}, "rejected"
    if attempts >= max_attempts:
        return {
            **base, "status": FAILED, "outcome": "failed",
            "last_error": f"{outcome.detail or 'delivery failed'} (gave up after {attempts} attempts)",
            "completed_at": now,
        }, "failed"
    return {
        **base, "status": PENDING,
        "scheduled_at": now + timedelta(seconds=policy.backoff_seconds(attempts)),
        "last_error": outcome.detail or "delivery failed",
    }, "retry"


def _update_destination_health(session: Session, destination_id: int, outcome: DeliveryOutcome, now: datetime, policy: QueuePolicy):
    kind = outcome.kind
    if kind == OutcomeKind.SUCCESS:
        session.execute(
            update(Destination).where(Destination.id == destination_id)
            .values(last_sync_at=now, last_error=None, consecutive_failures=0, backoff_until=None)
            .execution_options(synchronize_session=False)
        )
    elif kind == OutcomeKind.RATE_LIMITED:
        delay = outcome.retry_after if outcome.retry_after is not None else policy.default_retry_after
        session.execute(
            update(Destination).where(Destination.id == destination_id)
            .values(backoff_until=now + timedelta(seconds=max(0, delay)))
            .execution_options(synchronize_session=False)
        )
    elif kind == OutcomeKind.REJECTED:
        session.execute(
            update(Destination).where(Destination.id == destination_id)
            .values(last_error=(outcome.detail or "rejected")[:1024])
            .execution_options(synchronize_session=False)
        )
    elif kind == OutcomeKind.TRANSIENT:
        session.execute(
            update(Destination).where(Destination.id == destination_id)
            .values(consecutive_failures=Destination.consecutive_failures + 1, last_error=(outcome.detail or "delivery failed")[:1024])
            .execution_options(synchronize_session=False)
        )
        failures = session.execute(select(Destination.consecutive_failures).where(Destination.id == destination_id)).scalar_one()
        if failures >= policy.destination_failure_threshold:
            backoff = policy.backoff_seconds(failures - policy.destination_failure_threshold + 1)
            session.execute(
                update(Destination).where(Destination.id == destination_id)
                .values(backoff_until=now + timedelta(seconds=backoff))
                .execution_options(synchronize_session=False)
            )
            logger.warning("destination %s backing off %ss after %s consecutive failures", destination_id, backoff, failures)


def complete(
    session: Session,
    job_id: int,
    claim_token: str,
    outcome: DeliveryOutcome,
    now: datetime | None = None,
    policy: QueuePolicy | None = None,
) -> bool:
    """Record the outcome of a claimed job exactly once.

    Returns False (and changes nothing) when the claim is stale: the lease
    expired and the job was recovered or reclaimed meanwhile. Commits.
    """
    policy = policy or QueuePolicy.from_settings()
    now = now or utcnow()
    try:
        row = session.execute(
            select(SyncJob.job_type, SyncJob.destination_id, SyncJob.attempts, SyncJob.max_attempts)
            .where(SyncJob.id == job_id, SyncJob.status == RUNNING, SyncJob.claim_token == claim_token)
        ).one_or_none()
        if row is None:
            session.rollback()
            STALE_COMPLETIONS.inc()
            logger.warning("ignoring stale completion for job %s (claim %s)", job_id, claim_token)
            return False
        values, label = _finish_values(outcome, row.attempts, row.max_attempts, now, policy)
        if values["status"] == PENDING and row.job_type == PROFILE_UPSERT:
            values = _requeue_profile_values(session, job_id, values)
        res = session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == RUNNING, SyncJob.claim_token == claim_token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            session.rollback()
            STALE_COMPLETIONS.inc()
            logger.warning("job %s changed under completion; ignoring outcome %s", job_id, outcome.kind.value)
            return False
        _update_destination_health(session, row.destination_id, outcome, now, policy)
        session.commit()
    except Exception:
        session.rollback()
        raise
    JOBS_FINISHED.labels(row.job_type, label).inc()
    if label in ("failed", "rejected"):
        logger.error("sync job %s %s: %s", job_id, label, values.get("last_error"))
    return True


def release_claim(session: Session, job_id: int, claim_token: str, delay_seconds: float = 0, now: datetime | None = None) -> bool:
    """Hand a claimed job back untouched (worker could not get a delivery slot).

    The attempt is given back and destination health is not changed. Commits.
    """
    now = now or utcnow()
    values = {"claim_token": None, "lease_expires_at": None, "updated_at": now, "status": PENDING,
              "attempts": SyncJob.attempts - 1, "scheduled_at": now + timedelta(seconds=max(0.0, delay_seconds))}
    try:
        job_type = session.execute(
            select(SyncJob.job_type).where(SyncJob.id == job_id, SyncJob.status == RUNNING, SyncJob.claim_token == claim_token)
        ).scalar_one_or_none()
        if job_type is None:
            session.rollback()
            return False
        if job_type == PROFILE_UPSERT:
            values = _requeue_profile_values(session, job_id, values)
        res = session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == RUNNING, SyncJob.claim_token == claim_token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return res.rowcount == 1


def _requeue_profile_values(session: Session, job_id: int, values: dict) -> dict:
    """A profile upsert going back to pending retakes its slot unless a newer snapshot holds it."""
    job = session.execute(select(SyncJob.destination_id, SyncJob.unified_user_id).where(SyncJob.id == job_id)).one()
    slot = profile_slot(job.destination_id, job.unified_user_id)
    newer = session.execute(select(SyncJob.id).where(SyncJob.dedupe_slot == slot)).scalar_one_or_none()
    if newer is not None:
        now = values["updated_at"]
        return {
            "claim_token": None, "lease_expires_at": None, "updated_at": now,
            "status": COMPLETED, "outcome": "skipped", "completed_at": now,
            "last_error": f"Skipped: superseded by job {newer}",
        }
    return {**values, "dedupe_slot": slot}


def recover_expired_leases(session: Session, now: datetime | None = None, policy: QueuePolicy | None = None) -> dict[str, int]:
    """Return running jobs whose lease lapsed to pending (or failed once out of attempts).

    The old claim token is cleared, so a late completion from the crashed
    worker is rejected as stale. Commits.
    """
    policy = policy or QueuePolicy.from_settings()
    now = now or utcnow()
    counts = {"requeued": 0, "failed": 0, "superseded": 0}
    try:
        expired = session.execute(
            select(SyncJob.id, SyncJob.claim_token, SyncJob.claimed_by, SyncJob.attempts, SyncJob.max_attempts, SyncJob.job_type)
            .where(SyncJob.status == RUNNING, SyncJob.lease_expires_at < now)
            .order_by(SyncJob.id)
        ).all()
        for job in expired:
            base = {"claim_token": None, "lease_expires_at": None, "updated_at": now}
            if job.attempts >= job.max_attempts:
                values = {**base, "status": FAILED, "outcome": "failed", "completed_at": now,
                          "last_error": f"Lease expired on worker {job.claimed_by} after {job.attempts} attempts"}
                key = "failed"
            else:
                values = {**base, "status": PENDING, "scheduled_at": now,
                          "last_error": f"Lease expired on worker {job.claimed_by}"}
                if job.job_type == PROFILE_UPSERT:
                    values = _requeue_profile_values(session, job.id, values)
                key = "superseded" if values["status"] == COMPLETED else "requeued"
            res = session.execute(
                update(SyncJob)
                .where(SyncJob.id == job.id, SyncJob.status == RUNNING, SyncJob.claim_token == job.claim_token)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                counts[key] += 1
                LEASES_RECOVERED.labels(key).inc()
        session.commit()
    except Exception:
        session.rollback()
        raise
    if any(counts.values()):
        logger.warning("recovered expired leases: %s", counts)
    return counts


def retry_failed(session: Session, workspace_id: str, job_ids: Iterable[int] | None = None, now: datetime | None = None) -> int:
    """Operator requeue of terminally failed jobs with a fresh attempt budget. Commits."""
    now = now or utcnow()
    q = select(SyncJob.id, SyncJob.job_type).where(SyncJob.workspace_id == workspace_id, SyncJob.status == FAILED)
    ids = list(job_ids or [])
    if ids:
        q = q.where(SyncJob.id.in_(ids))
    requeued = 0
    try:
        for job in session.execute(q.order_by(SyncJob.id)).all():
            values = {"status": PENDING, "outcome": None, "attempts": 0, "scheduled_at": now,
                      "completed_at": None, "updated_at": now}
            if job.job_type == PROFILE_UPSERT:
                values = _requeue_profile_values(session, job.id, values)
            res = session.execute(
                update(SyncJob).where(SyncJob.id == job.id, SyncJob.status == FAILED).values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1 and values["status"] == PENDING:
                requeued += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    return requeued


# ---------------------------------------------------------------- identity graph hooks


def skip_user_jobs(session: Session, user_id: int, reason: str, job_type: str | None = None) -> int:
    """Close a user's pending jobs as completed/skipped (merge loser, deleted profile)."""
    now = utcnow()
    q = update(SyncJob).where(SyncJob.unified_user_id == user_id, SyncJob.status == PENDING)
    if job_type is not None:
        q = q.where(SyncJob.job_type == job_type)
    res = session.execute(
        q.values(status=COMPLETED, outcome="skipped", last_error=reason, dedupe_slot=None, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


def reassign_user_jobs(session: Session, from_user_id: int, to_user_id: int) -> int:
    res = session.execute(
        update(SyncJob)
        .where(SyncJob.unified_user_id == from_user_id, SyncJob.status == PENDING, SyncJob.job_type == EVENT_TRACK)
        .values(unified_user_id=to_user_id)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


# ---------------------------------------------------------------- read helpers


@dataclass
class QueueSnapshot:
    by_status: dict[str, int] = field(default_factory=dict)
    by_outcome: dict[str, int] = field(default_factory=dict)
    pending_by_destination: dict[int, int] = field(default_factory=dict)


def queue_snapshot(session: Session, workspace_id: str) -> QueueSnapshot:
    snap = QueueSnapshot()
    for status, n in session.execute(
        select(SyncJob.status, func.count(SyncJob.id)).where(SyncJob.workspace_id == workspace_id).group_by(SyncJob.status)
    ):
        snap.by_status[status] = n
    for outcome, n in session.execute(
        select(SyncJob.outcome, func.count(SyncJob.id))
        .where(SyncJob.workspace_id == workspace_id, SyncJob.outcome.is_not(None))
        .group_by(SyncJob.outcome)
    ):
        snap.by_outcome[outcome] = n
    for dest_id, n in session.execute(
        select(SyncJob.destination_id, func.count(SyncJob.id))
        .where(and_(SyncJob.workspace_id == workspace_id, SyncJob.status == PENDING))
        .group_by(SyncJob.destination_id)
    ):
        snap.pending_by_destination[dest_id] = n
    return snap
