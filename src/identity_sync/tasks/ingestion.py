from celery import shared_task
from prometheus_client import Gauge
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from identity_sync.config import get_settings
from identity_sync.infrastructure import db
from identity_sync.models.tables import IngestionDeadLetter
from identity_sync.pipeline import process_admitted_event, stale_event_ids

DLQ_SIZE = Gauge('ingest_dead_letter_queue_size', 'Current size of ingestion dead letter queue')
STALE_EVENTS = Gauge('ingest_stale_events', 'Admitted events still pending or failed past the stale threshold')


@shared_task
def process_event(event_id: int):
    return process_admitted_event(event_id)


@shared_task
def reprocess_stale_events(limit: int = 500, max_attempts: int = 5):
    """Retry events whose processing never ran (lost dispatch) or failed."""
    settings = get_settings()
    session: Session = db.get_session()
    try:
        ids = stale_event_ids(session, settings.stale_event_minutes, limit=limit, max_attempts=max_attempts)
        STALE_EVENTS.set(len(ids))
        dlq = session.execute(select(func.count(IngestionDeadLetter.id))).scalar() or 0
        DLQ_SIZE.set(dlq)
        session.rollback()
    finally:
        session.close()
    results: dict[str, int] = {}
    for event_id in ids:
        status = process_admitted_event(event_id)["status"]
        results[status] = results.get(status, 0) + 1
    return {"status": "ok", "candidates": len(ids), "results": results}

