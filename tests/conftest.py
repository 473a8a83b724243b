import os

os.environ.setdefault("APP_ENV", "test")
os.environ.pop("INGEST_SECRET", None)
os.environ.pop("DATABASE_URL", None)

from datetime import datetime

import pytest

from identity_sync.config import reset_settings
from identity_sync.destinations import DestinationAdapter, register_adapter, unregister_adapter
from identity_sync.infrastructure import db
from identity_sync.infrastructure.db import Base, build_engine
from identity_sync.models.tables import Destination, Event, UnifiedUser
from identity_sync.outcomes import DeliveryOutcome
import identity_sync.models  # noqa: F401


class RecordingAdapter(DestinationAdapter):
    """Test adapter: records calls and replays scripted outcomes (or raises scripted errors)."""
    type = "recording"
    calls: list = []
    script: list = []

    def _next(self, op, **kw):
        RecordingAdapter.calls.append({"op": op, **kw})
        if RecordingAdapter.script:
            nxt = RecordingAdapter.script.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        return DeliveryOutcome.success()

    def upsert_profile(self, identifiers, traits):
        return self._next("upsert_profile", identifiers=identifiers, traits=traits)

    def track_event(self, identifiers, name, properties):
        return self._next("track_event", identifiers=identifiers, name=name, properties=properties)


class EmailOnlyRecordingAdapter(RecordingAdapter):
    type = "recording_email"
    requires_email = True


@pytest.fixture
def engine(tmp_path):
    reset_settings()
    eng = build_engine(f"sqlite:///{tmp_path / 'identity_sync.sqlite'}")
    Base.metadata.create_all(eng)
    previous = db.engine
    db.override_engine(eng)
    try:
        yield eng
    finally:
        db.override_engine(previous)
        eng.dispose()
        reset_settings()


@pytest.fixture
def session(engine):
    s = db.get_session()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def recording():
    RecordingAdapter.calls = []
    RecordingAdapter.script = []
    register_adapter(RecordingAdapter.type, RecordingAdapter)
    register_adapter(EmailOnlyRecordingAdapter.type, EmailOnlyRecordingAdapter)
    try:
        yield RecordingAdapter
    finally:
        unregister_adapter(RecordingAdapter.type)
        unregister_adapter(EmailOnlyRecordingAdapter.type)


def make_user(session, workspace_id="ws1", **fields):
    values = dict(
        emails=[], phones=[], customer_ids=[], anonymous_ids=[],
        external_ids={}, traits={}, computed={}, merged_from=[],
    )
    values.update(fields)
    user = UnifiedUser(workspace_id=workspace_id, **values)
    session.add(user)
    session.commit()
    return user


def make_destination(session, workspace_id="ws1", dest_type="recording", **fields):
    values = dict(
        name=f"{dest_type}-dest",
        config={},
        event_mapping={},
        property_mapping={},
        blocked_events=[],
        track_events=True,
        enabled=True,
    )
    values.update(fields)
    dest = Destination(workspace_id=workspace_id, type=dest_type, **values)
    session.add(dest)
    session.commit()
    return dest


def make_event(session, workspace_id="ws1", event_name="Product Added", dedupe_key=None, event_time=None, **fields):
    event = Event(
        workspace_id=workspace_id,
        source=fields.pop("source", "js"),
        event_name=event_name,
        event_type=fields.pop("event_type", "custom"),
        properties=fields.pop("properties", {}),
        context=fields.pop("context", {}),
        dedupe_key=dedupe_key or os.urandom(16).hex(),
        event_time=event_time or datetime(2024, 5, 1, 12, 0, 0),
        **fields,
    )
    session.add(event)
    session.commit()
    return event
