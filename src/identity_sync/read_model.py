"""Read-only aggregates for the operator dashboard."""
from __future__ import annotations
from typing import Any
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from identity_sync.models.tables import Destination, Event, Identity, IdentityMerge, UnifiedUser, UserSegmentMembership
from identity_sync.sync_queue import queue_snapshot


def _iso(value):
    return value.isoformat() if value is not None else None


def workspace_stats(session: Session, workspace_id: str) -> dict[str, Any]:
    events_total, duplicates = session.execute(
        select(func.count(Event.id), func.coalesce(func.sum(Event.dupe_count), 0)).where(Event.workspace_id == workspace_id)
    ).one()
    events_by_status = dict(session.execute(
        select(Event.status, func.count(Event.id)).where(Event.workspace_id == workspace_id).group_by(Event.status)
    ).all())
    identities_by_type = dict(session.execute(
        select(Identity.identity_type, func.count(Identity.id)).where(Identity.workspace_id == workspace_id).group_by(Identity.identity_type)
    ).all())
    invalid_identities = session.execute(
        select(func.count(Identity.id)).where(Identity.workspace_id == workspace_id, Identity.is_valid.is_(False))
    ).scalar() or 0
    live_users = session.execute(
        select(func.count(UnifiedUser.id)).where(
            UnifiedUser.workspace_id == workspace_id, UnifiedUser.merged_into_id.is_(None), UnifiedUser.deleted_at.is_(None)
        )
    ).scalar() or 0
    merged_users = session.execute(
        select(func.count(UnifiedUser.id)).where(UnifiedUser.workspace_id == workspace_id, UnifiedUser.merged_into_id.is_not(None))
    ).scalar() or 0
    merges = session.execute(
        select(func.count(IdentityMerge.id)).where(IdentityMerge.workspace_id == workspace_id)
    ).scalar() or 0
    segments = dict(session.execute(
        select(UserSegmentMembership.segment_key, func.count(UserSegmentMembership.id))
        .where(UserSegmentMembership.workspace_id == workspace_id)
        .group_by(UserSegmentMembership.segment_key)
    ).all())
    snap = queue_snapshot(session, workspace_id)
    destinations = [
        {
            "id": d.id,
            "name": d.name,
            "type": d.type,
            "enabled": d.enabled,
            "last_sync_at": _iso(d.last_sync_at),
            "last_error": d.last_error,
            "consecutive_failures": d.consecutive_failures,
            "backoff_until": _iso(d.backoff_until),
            "pending_jobs": snap.pending_by_destination.get(d.id, 0),
        }
        for d in session.execute(
            select(Destination).where(Destination.workspace_id == workspace_id).order_by(Destination.id)
        ).scalars()
    ]
    return {
        "workspace_id": workspace_id,
        "events": {"admitted": events_total, "duplicates": int(duplicates), "by_status": events_by_status},
        "identities": {"by_type": identities_by_type, "invalid": invalid_identities},
        "users": {"live": live_users, "merged": merged_users, "merges": merges},
        "jobs": {"by_status": snap.by_status, "by_outcome": snap.by_outcome,
                 "pending_by_destination": {str(k): v for k, v in snap.pending_by_destination.items()}},
        "destinations": destinations,
        "segments": segments,
    }
