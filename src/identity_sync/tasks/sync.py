from celery import shared_task
from sqlalchemy.orm import Session
from identity_sync.infrastructure import db
from identity_sync.sync_queue import recover_expired_leases, retry_failed


@shared_task
def drain_sync_queue(max_jobs: int = 1000, workspace_id: str | None = None):
    from identity_sync.workers import SyncWorkerPool
    result = SyncWorkerPool().drain(max_jobs=max_jobs, workspace_id=workspace_id)
    return {"status": "ok", **result}


@shared_task
def recover_sync_leases():
    session: Session = db.get_session()
    try:
        counts = recover_expired_leases(session)
        return {"status": "ok", **counts}
    finally:
        session.close()


@shared_task
def retry_failed_jobs(workspace_id: str, job_ids: list[int] | None = None):
    session: Session = db.get_session()
    try:
        return {"status": "ok", "requeued": retry_failed(session, workspace_id, job_ids)}
    finally:
        session.close()
