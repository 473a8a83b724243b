from celery import shared_task
from identity_sync import pipeline


@shared_task
def sweep_recency(older_than_minutes: int | None = None, limit: int | None = None):
    """Periodic: recency, decay and abandonment windows move with the clock, not with events."""
    return {"status": "ok", **pipeline.sweep_recency(older_than_minutes, limit)}


@shared_task
def recompute_workspace_task(workspace_id: str):
    return {"status": "ok", **pipeline.recompute_workspace(workspace_id)}
