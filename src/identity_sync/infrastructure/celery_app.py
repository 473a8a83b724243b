import time
from celery import Celery
from celery import signals
from prometheus_client import Counter, Histogram
from identity_sync.config import get_settings

settings = get_settings()

celery_app = Celery(
    "identity_sync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "identity_sync.tasks.ingestion",
        "identity_sync.tasks.sync",
        "identity_sync.tasks.scoring",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # event processing must not wait behind a long destination drain
    task_routes={
        "identity_sync.tasks.ingestion.*": {"queue": "ingest"},
        "identity_sync.tasks.scoring.*": {"queue": "ingest"},
        "identity_sync.tasks.sync.*": {"queue": "sync"},
    },
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

TASK_RUNS = Counter('identity_sync_task_runs_total', 'Celery task runs by final state', ['task', 'state'])
TASK_SECONDS = Histogram('identity_sync_task_seconds', 'Celery task runtime', ['task'], buckets=(0.05, 0.25, 1, 5, 15, 60, 300))

_started: dict[str, float] = {}


@signals.task_prerun.connect
def _on_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _started[task_id] = time.perf_counter()


@signals.task_postrun.connect
def _on_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = getattr(sender, "name", "unknown")
    began = _started.pop(task_id, None)
    if began is not None:
        TASK_SECONDS.labels(task=name).observe(time.perf_counter() - began)
    TASK_RUNS.labels(task=name, state=state or "UNKNOWN").inc()


# beat: `celery -A identity_sync.infrastructure.celery_app beat`
celery_app.conf.beat_schedule = {
    "drain-sync-queue": {
        "task": "identity_sync.tasks.sync.drain_sync_queue",
        "schedule": 10.0,
        "options": {"expires": 9},
    },
    "recover-sync-leases": {
        "task": "identity_sync.tasks.sync.recover_sync_leases",
        "schedule": 60.0,
    },
    "reprocess-stale-events": {
        "task": "identity_sync.tasks.ingestion.reprocess_stale_events",
        "schedule": float(settings.stale_event_minutes * 30),
    },
    "recency-sweep": {
        "task": "identity_sync.tasks.scoring.sweep_recency",
        "schedule": float(max(60, settings.recompute_sweep_minutes * 60) // 4),
    },
}
