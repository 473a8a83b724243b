"""Thread pool that drains the sync queue into destination adapters.

A worker claims a job (committed), snapshots what it needs, ends its
transaction, calls the adapter outside any transaction, then records the
outcome with the claim token. Destinations at their concurrency cap are
excluded from claims; a claim that cannot get a slot is handed back.
"""
from __future__ import annotations
import logging
import os
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable
from prometheus_client import Gauge
from identity_sync.config import get_settings
from identity_sync.destinations import DestinationAdapter, get_adapter, map_properties
from identity_sync.errors import DestinationUnavailableError, UnknownDestinationTypeError
from identity_sync.identity_graph import resolve_user_id, user_identifiers
from identity_sync.infrastructure import db
from identity_sync.infrastructure.throttle import DestinationThrottle
from identity_sync.models.tables import Destination, SyncJob, UnifiedUser
from identity_sync.outcomes import DeliveryOutcome
from identity_sync.sync_queue import PROFILE_UPSERT, QueuePolicy, claim_next, complete, recover_expired_leases, release_claim

logger = logging.getLogger(__name__)

WORKERS_BUSY = Gauge('sync_workers_busy', 'Sync worker threads currently delivering a job')

AdapterFactory = Callable[[str, dict, float], DestinationAdapter]


@dataclass
class _Delivery:
    job_id: int
    claim_token: str
    job_type: str
    destination_id: int
    destination_type: str
    destination_config: dict
    event_mapping: dict
    property_mapping: dict
    max_concurrency: int | None
    payload: dict
    identifiers: dict | None
    user_deleted: bool


def _snapshot(session, job: SyncJob) -> _Delivery:
    dest = session.get(Destination, job.destination_id)
    identifiers = job.payload.get("identifiers") if isinstance(job.payload, dict) else None
    user_deleted = False
    if job.unified_user_id is not None:
        user = session.get(UnifiedUser, resolve_user_id(session, job.unified_user_id))
        if user is not None and user.deleted_at is not None:
            user_deleted = True
        elif user is not None:
            # identifiers are read at delivery time so merges that landed after enqueue are reflected
            identifiers = user_identifiers(user)
    return _Delivery(
        job_id=job.id,
        claim_token=job.claim_token,
        job_type=job.job_type,
        destination_id=dest.id,
        destination_type=dest.type,
        destination_config=dict(dest.config or {}),
        event_mapping=dict(dest.event_mapping or {}),
        property_mapping=dict(dest.property_mapping or {}),
        max_concurrency=dest.max_concurrency,
        payload=dict(job.payload or {}),
        identifiers=identifiers,
        user_deleted=user_deleted,
    )


def deliver(adapter: DestinationAdapter, d: _Delivery) -> DeliveryOutcome:
    """Map the payload for the destination and make the adapter call."""
    if d.user_deleted:
        return DeliveryOutcome.skipped("profile deleted")
    identifiers = d.identifiers or {}
    if adapter.requires_email and not identifiers.get("email"):
        return DeliveryOutcome.skipped("no email")
    if d.job_type == PROFILE_UPSERT:
        traits = map_properties(d.payload.get("traits") or {}, d.property_mapping)
        return adapter.upsert_profile(identifiers, adapter.prefix_traits(traits))
    name = adapter.event_name(d.payload.get("event_name") or "", d.event_mapping)
    properties = map_properties(d.payload.get("properties") or {}, d.property_mapping)
    if d.payload.get("time"):
        properties["$time"] = d.payload["time"]
    if d.payload.get("unique_id"):
        properties["$unique_id"] = d.payload["unique_id"]
    return adapter.track_event(identifiers, name, properties)


class SyncWorkerPool:
    def __init__(
        self,
        threads: int | None = None,
        throttle: DestinationThrottle | None = None,
        policy: QueuePolicy | None = None,
        adapter_factory: AdapterFactory | None = None,
        slot_timeout: float = 5.0,
    ):
        s = get_settings()
        self.threads = max(1, threads or s.sync_worker_threads)
        self.throttle = throttle or DestinationThrottle()
        self.policy = policy or QueuePolicy.from_settings(s)
        self.adapter_factory = adapter_factory or (lambda t, cfg, timeout: get_adapter(t, cfg, timeout))
        self.timeout = s.destination_timeout_seconds
        self.poll_interval = s.sync_poll_interval_seconds
        self.slot_timeout = slot_timeout
        self._prefix = f"{socket.gethostname()}:{os.getpid()}"
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._last_recovery = 0.0
        self._recovery_lock = threading.Lock()

    def worker_id(self, index: int) -> str:
        return f"{self._prefix}:{index}"

    def process_one(self, worker_id: str, workspace_id: str | None = None) -> str | None:
        """Claim and deliver one job. Returns the outcome kind, or None when nothing was claimable."""
        session = db.get_session()
        try:
            job = claim_next(session, worker_id, policy=self.policy,
                             exclude_destinations=self.throttle.saturated(), workspace_id=workspace_id)
            if job is None:
                return None
            try:
                delivery = _snapshot(session, job)
            finally:
                session.rollback()
            with self.throttle.slot(delivery.destination_id, delivery.max_concurrency, self.slot_timeout) as acquired:
                if not acquired:
                    release_claim(session, delivery.job_id, delivery.claim_token, delay_seconds=1)
                    return "released"
                WORKERS_BUSY.inc()
                try:
                    outcome = self._call(delivery)
                finally:
                    WORKERS_BUSY.dec()
            complete(session, delivery.job_id, delivery.claim_token, outcome, policy=self.policy)
            return outcome.kind.value
        finally:
            session.close()

    def _call(self, delivery: _Delivery) -> DeliveryOutcome:
        try:
            adapter = self.adapter_factory(delivery.destination_type, delivery.destination_config, self.timeout)
        except UnknownDestinationTypeError as e:
            return DeliveryOutcome.rejected(str(e))
        try:
            return deliver(adapter, delivery)
        except DestinationUnavailableError as e:
            logger.warning("job %s transient failure: %s", delivery.job_id, e)
            return DeliveryOutcome.transient(str(e))
        except Exception as e:  # adapter bug: retried then failed through the queue, never lost
            logger.exception("job %s adapter %s raised", delivery.job_id, delivery.destination_type)
            return DeliveryOutcome.transient(f"{e.__class__.__name__}: {e}")

    def recover_leases(self, force: bool = False) -> dict[str, int] | None:
        with self._recovery_lock:
            now = time.monotonic()
            if not force and now - self._last_recovery < max(1.0, self.policy.lease_seconds / 4):
                return None
            self._last_recovery = now
        session = db.get_session()
        try:
            return recover_expired_leases(session, policy=self.policy)
        finally:
            session.close()

    def drain(self, max_jobs: int | None = None, workspace_id: str | None = None) -> dict[str, Any]:
        """Process until nothing is claimable (or max_jobs delivered). Blocks."""
        self.recover_leases(force=True)
        counts: dict[str, int] = {}
        lock = threading.Lock()
        budget = [max_jobs]

        def take() -> bool:
            with lock:
                if budget[0] is None:
                    return True
                if budget[0] <= 0:
                    return False
                budget[0] -= 1
                return True

        def give_back():
            with lock:
                if budget[0] is not None:
                    budget[0] += 1

        def loop(index: int):
            wid = self.worker_id(index)
            while take():
                kind = self.process_one(wid, workspace_id)
                if kind is None:
                    give_back()
                    return
                if kind == "released":
                    give_back()
                with lock:
                    counts[kind] = counts.get(kind, 0) + 1

        with ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix="sync-drain") as pool:
            for f in [pool.submit(loop, i) for i in range(self.threads)]:
                f.result()
        processed = sum(n for k, n in counts.items() if k != "released")
        logger.info("drain finished workspace=%s processed=%s outcomes=%s", workspace_id, processed, counts)
        return {"processed": processed, "outcomes": counts}

    def _run(self, index: int):
        wid = self.worker_id(index)
        while not self._stop.is_set():
            try:
                if index == 0:
                    self.recover_leases()
                kind = self.process_one(wid)
            except Exception:
                logger.exception("sync worker %s iteration failed", wid)
                kind = None
            if kind is None or kind == "released":
                self._stop.wait(self.poll_interval)

    def start(self):
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.threads):
            t = threading.Thread(target=self._run, args=(i,), name=f"sync-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("started %s sync workers", self.threads)

    def stop(self, timeout: float | None = 30.0):
        """Signal workers to stop; in-flight calls finish and record their outcome."""
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
