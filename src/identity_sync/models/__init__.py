"""Declarative tables."""
from identity_sync.models.tables import (  # noqa: F401
    Destination,
    Event,
    Identity,
    IdentityMerge,
    IngestionDeadLetter,
    SegmentDefinition,
    SyncJob,
    UnifiedUser,
    UserSegmentMembership,
)
