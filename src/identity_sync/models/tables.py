from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Float, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column
from identity_sync.infrastructure.db import Base
from identity_sync.utils.clock import utcnow


class Event(Base):
    """Admitted event. One row per (workspace_id, dedupe_key); repeats bump dupe_count."""
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    source: Mapped[str] = mapped_column(String(32), index=True)
    event_name: Mapped[str] = mapped_column(String(256), index=True)
    raw_event_name: Mapped[str | None] = mapped_column(String(256), default=None)
    event_type: Mapped[str] = mapped_column(String(32), index=True, default="custom")
    properties: Mapped[dict] = mapped_column(JSON, default=dict)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), default=None)
    dedupe_key: Mapped[str] = mapped_column(String(64))
    dupe_count: Mapped[int] = mapped_column(Integer, default=0)
    unified_user_id: Mapped[int | None] = mapped_column(ForeignKey("users_unified.id"), index=True, default=None)
    status: Mapped[str] = mapped_column(String(16), index=True, default="pending")  # pending|processed|failed
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(String(512), default=None)
    event_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    last_duplicate_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    __table_args__ = (
        Index("ux_events_workspace_dedupe", "workspace_id", "dedupe_key", unique=True),
        Index("ix_events_user_time", "unified_user_id", "event_time", "id"),
        Index("ix_events_status_received", "status", "received_at"),
    )


class UnifiedUser(Base):
    """Identity-graph node. Dead once merged_into_id is set."""
    __tablename__ = "users_unified"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    primary_email: Mapped[str | None] = mapped_column(String(320), index=True, default=None)
    emails: Mapped[list] = mapped_column(JSON, default=list)
    phones: Mapped[list] = mapped_column(JSON, default=list)
    customer_ids: Mapped[list] = mapped_column(JSON, default=list)
    anonymous_ids: Mapped[list] = mapped_column(JSON, default=list)
    external_ids: Mapped[dict] = mapped_column(JSON, default=dict)
    traits: Mapped[dict] = mapped_column(JSON, default=dict)
    computed: Mapped[dict] = mapped_column(JSON, default=dict)
    merged_from: Mapped[list] = mapped_column(JSON, default=list)
    merged_into_id: Mapped[int | None] = mapped_column(Integer, index=True, default=None)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    last_computed_at: Mapped[datetime | None] = mapped_column(DateTime, index=True, default=None)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_users_workspace_live", "workspace_id", "merged_into_id", "deleted_at"),
    )

    @property
    def is_live(self) -> bool:
        return self.merged_into_id is None and self.deleted_at is None


class Identity(Base):
    __tablename__ = "identities"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    identity_type: Mapped[str] = mapped_column(String(32), index=True)  # email|phone|customer_id|anonymous_id
    identity_value: Mapped[str] = mapped_column(String(320))
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True)
    source: Mapped[str | None] = mapped_column(String(32), default=None)
    unified_user_id: Mapped[int] = mapped_column(ForeignKey("users_unified.id"), index=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ux_identity_workspace_type_value", "workspace_id", "identity_type", "identity_value", unique=True),
    )


class IdentityMerge(Base):
    """Audit trail of merges (canonical absorbed merged)."""
    __tablename__ = "identity_merges"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    canonical_user_id: Mapped[int] = mapped_column(Integer, index=True)
    merged_user_id: Mapped[int] = mapped_column(Integer, index=True)
    identities_repointed: Mapped[int] = mapped_column(Integer, default=0)
    events_repointed: Mapped[int] = mapped_column(Integer, default=0)
    jobs_skipped: Mapped[int] = mapped_column(Integer, default=0)
    trigger_event_id: Mapped[int | None] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class Destination(Base):
    __tablename__ = "destinations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(128))
    type: Mapped[str] = mapped_column(String(32), index=True)  # klaviyo|webhook|...
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    event_mapping: Mapped[dict] = mapped_column(JSON, default=dict)
    property_mapping: Mapped[dict] = mapped_column(JSON, default=dict)
    blocked_events: Mapped[list] = mapped_column(JSON, default=list)
    track_events: Mapped[bool] = mapped_column(Boolean, default=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    max_concurrency: Mapped[int | None] = mapped_column(Integer, default=None)
    # health fields, written only by the sync queue
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    last_error: Mapped[str | None] = mapped_column(String(1024), default=None)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    backoff_until: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class SyncJob(Base):
    """Outbound unit of work.

    status: pending -> running -> completed|failed (failed -> pending only on retry scheduling)
    outcome: success|skipped|blocked|rejected|failed once terminal
    dedupe_slot: "<destination>:<user>" while a profile_upsert is pending/running, NULL otherwise;
    the unique index makes the latest pending snapshot the only one.
    """
    __tablename__ = "sync_jobs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    destination_id: Mapped[int] = mapped_column(ForeignKey("destinations.id"), index=True)
    job_type: Mapped[str] = mapped_column(String(32), index=True)  # profile_upsert|event_track
    unified_user_id: Mapped[int | None] = mapped_column(Integer, index=True, default=None)
    event_id: Mapped[int | None] = mapped_column(Integer, index=True, default=None)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), index=True, default="pending")
    outcome: Mapped[str | None] = mapped_column(String(16), index=True, default=None)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[str | None] = mapped_column(String(1024), default=None)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    claimed_by: Mapped[str | None] = mapped_column(String(128), default=None)
    claim_token: Mapped[str | None] = mapped_column(String(64), default=None)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, index=True, default=None)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    dedupe_slot: Mapped[str | None] = mapped_column(String(160), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ux_sync_jobs_dedupe_slot", "dedupe_slot", unique=True),
        Index("ux_sync_jobs_event_destination", "event_id", "destination_id", unique=True),
        Index("ix_sync_jobs_claim", "status", "scheduled_at", "id"),
    )


class SegmentDefinition(Base):
    """Declarative segment predicate. workspace_id NULL applies to every workspace."""
    __tablename__ = "segment_definitions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    key: Mapped[str] = mapped_column(String(128), index=True)
    name: Mapped[str | None] = mapped_column(String(256), default=None)
    description: Mapped[str | None] = mapped_column(String(512), default=None)
    expression: Mapped[dict] = mapped_column(JSON)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ux_segment_workspace_key", "workspace_id", "key", unique=True),
    )


class UserSegmentMembership(Base):
    __tablename__ = "user_segment_memberships"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    segment_key: Mapped[str] = mapped_column(String(128), index=True)
    unified_user_id: Mapped[int] = mapped_column(Integer, index=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    __table_args__ = (
        Index("ux_segment_user", "unified_user_id", "segment_key", unique=True),
    )


class IngestionDeadLetter(Base):
    __tablename__ = "ingestion_dead_letter"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    payload: Mapped[dict] = mapped_column(JSON)
    error: Mapped[str] = mapped_column(String(512))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
