from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users_unified',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(64), index=True),
        sa.Column('primary_email', sa.String(320), index=True, nullable=True),
        sa.Column('emails', sa.JSON),
        sa.Column('phones', sa.JSON),
        sa.Column('customer_ids', sa.JSON),
        sa.Column('anonymous_ids', sa.JSON),
        sa.Column('external_ids', sa.JSON),
        sa.Column('traits', sa.JSON),
        sa.Column('computed', sa.JSON),
        sa.Column('merged_from', sa.JSON),
        sa.Column('merged_into_id', sa.Integer, index=True, nullable=True),
        sa.Column('deleted_at', sa.DateTime, nullable=True),
        sa.Column('first_seen_at', sa.DateTime, index=True),
        sa.Column('last_seen_at', sa.DateTime, index=True),
        sa.Column('last_computed_at', sa.DateTime, index=True, nullable=True),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_users_workspace_live', 'users_unified', ['workspace_id', 'merged_into_id', 'deleted_at'])

    op.create_table(
        'events',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(64), index=True),
        sa.Column('source', sa.String(32), index=True),
        sa.Column('event_name', sa.String(256), index=True),
        sa.Column('raw_event_name', sa.String(256), nullable=True),
        sa.Column('event_type', sa.String(32), index=True),
        sa.Column('properties', sa.JSON),
        sa.Column('context', sa.JSON),
        sa.Column('idempotency_key', sa.String(256), nullable=True),
        sa.Column('dedupe_key', sa.String(64)),
        sa.Column('dupe_count', sa.Integer, server_default='0'),
        sa.Column('unified_user_id', sa.Integer, sa.ForeignKey('users_unified.id'), index=True, nullable=True),
        sa.Column('status', sa.String(16), index=True, server_default='pending'),
        sa.Column('processing_attempts', sa.Integer, server_default='0'),
        sa.Column('last_error', sa.String(512), nullable=True),
        sa.Column('event_time', sa.DateTime, index=True),
        sa.Column('received_at', sa.DateTime, index=True),
        sa.Column('processed_at', sa.DateTime, nullable=True),
        sa.Column('last_duplicate_at', sa.DateTime, nullable=True),
    )
    op.create_index('ux_events_workspace_dedupe', 'events', ['workspace_id', 'dedupe_key'], unique=True)
    op.create_index('ix_events_user_time', 'events', ['unified_user_id', 'event_time', 'id'])
    op.create_index('ix_events_status_received', 'events', ['status', 'received_at'])

    op.create_table(
        'identities',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(64), index=True),
        sa.Column('identity_type', sa.String(32), index=True),
        sa.Column('identity_value', sa.String(320)),
        sa.Column('confidence', sa.Float),
        sa.Column('is_valid', sa.Boolean, server_default=sa.true()),
        sa.Column('source', sa.String(32), nullable=True),
        sa.Column('unified_user_id', sa.Integer, sa.ForeignKey('users_unified.id'), index=True),
        sa.Column('first_seen_at', sa.DateTime),
        sa.Column('last_seen_at', sa.DateTime),
    )
    op.create_index('ux_identity_workspace_type_value', 'identities', ['workspace_id', 'identity_type', 'identity_value'], unique=True)

    op.create_table(
        'identity_merges',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(64), index=True),
        sa.Column('canonical_user_id', sa.Integer, index=True),
        sa.Column('merged_user_id', sa.Integer, index=True),
        sa.Column('identities_repointed', sa.Integer, server_default='0'),
        sa.Column('events_repointed', sa.Integer, server_default='0'),
        sa.Column('jobs_skipped', sa.Integer, server_default='0'),
        sa.Column('trigger_event_id', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime, index=True),
    )

    op.create_table(
        'destinations',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(64), index=True),
        sa.Column('name', sa.String(128)),
        sa.Column('type', sa.String(32), index=True),
        sa.Column('config', sa.JSON),
        sa.Column('event_mapping', sa.JSON),
        sa.Column('property_mapping', sa.JSON),
        sa.Column('blocked_events', sa.JSON),
        sa.Column('track_events', sa.Boolean, server_default=sa.true()),
        sa.Column('enabled', sa.Boolean, index=True, server_default=sa.true()),
        sa.Column('max_concurrency', sa.Integer, nullable=True),
        sa.Column('last_sync_at', sa.DateTime, nullable=True),
        sa.Column('last_error', sa.String(1024), nullable=True),
        sa.Column('consecutive_failures', sa.Integer, server_default='0'),
        sa.Column('backoff_until', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )

    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(64), index=True),
        sa.Column('destination_id', sa.Integer, sa.ForeignKey('destinations.id'), index=True),
        sa.Column('job_type', sa.String(32), index=True),
        sa.Column('unified_user_id', sa.Integer, index=True, nullable=True),
        sa.Column('event_id', sa.Integer, index=True, nullable=True),
        sa.Column('payload', sa.JSON),
        sa.Column('status', sa.String(16), index=True, server_default='pending'),
        sa.Column('outcome', sa.String(16), index=True, nullable=True),
        sa.Column('attempts', sa.Integer, server_default='0'),
        sa.Column('max_attempts', sa.Integer, server_default='3'),
        sa.Column('last_error', sa.String(1024), nullable=True),
        sa.Column('scheduled_at', sa.DateTime, index=True),
        sa.Column('claimed_by', sa.String(128), nullable=True),
        sa.Column('claim_token', sa.String(64), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime, index=True, nullable=True),
        sa.Column('started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('dedupe_slot', sa.String(160), nullable=True),
        sa.Column('created_at', sa.DateTime, index=True),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ux_sync_jobs_dedupe_slot', 'sync_jobs', ['dedupe_slot'], unique=True)
    op.create_index('ux_sync_jobs_event_destination', 'sync_jobs', ['event_id', 'destination_id'], unique=True)
    op.create_index('ix_sync_jobs_claim', 'sync_jobs', ['status', 'scheduled_at', 'id'])

    op.create_table(
        'segment_definitions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(64), index=True, nullable=True),
        sa.Column('key', sa.String(128), index=True),
        sa.Column('name', sa.String(256), nullable=True),
        sa.Column('description', sa.String(512), nullable=True),
        sa.Column('expression', sa.JSON),
        sa.Column('active', sa.Boolean, index=True, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ux_segment_workspace_key', 'segment_definitions', ['workspace_id', 'key'], unique=True)

    op.create_table(
        'user_segment_memberships',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(64), index=True),
        sa.Column('segment_key', sa.String(128), index=True),
        sa.Column('unified_user_id', sa.Integer, index=True),
        sa.Column('computed_at', sa.DateTime),
    )
    op.create_index('ux_segment_user', 'user_segment_memberships', ['unified_user_id', 'segment_key'], unique=True)

    op.create_table(
        'ingestion_dead_letter',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(64), index=True, nullable=True),
        sa.Column('payload', sa.JSON),
        sa.Column('error', sa.String(512)),
        sa.Column('created_at', sa.DateTime, index=True),
    )


def downgrade():
    op.drop_table('ingestion_dead_letter')
    op.drop_index('ux_segment_user', table_name='user_segment_memberships')
    op.drop_table('user_segment_memberships')
    op.drop_index('ux_segment_workspace_key', table_name='segment_definitions')
    op.drop_table('segment_definitions')
    op.drop_index('ix_sync_jobs_claim', table_name='sync_jobs')
    op.drop_index('ux_sync_jobs_event_destination', table_name='sync_jobs')
    op.drop_index('ux_sync_jobs_dedupe_slot', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_table('destinations')
    op.drop_table('identity_merges')
    op.drop_index('ux_identity_workspace_type_value', table_name='identities')
    op.drop_table('identities')
    op.drop_index('ix_events_status_received', table_name='events')
    op.drop_index('ix_events_user_time', table_name='events')
    op.drop_index('ux_events_workspace_dedupe', table_name='events')
    op.drop_table('events')
    op.drop_index('ix_users_workspace_live', table_name='users_unified')
    op.drop_table('users_unified')
