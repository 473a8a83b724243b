"""Fingerprint store: deterministic dedupe keys and atomic admission.

Key priority:
  1. caller idempotency token
  2. a transaction identifier carried in properties (checkout/cart/order ids)
  3. sha256 over canonical properties, context traits, anonymous/session id
     and the event_time bucket

Admission is one `INSERT .. ON CONFLICT (workspace_id, dedupe_key) DO UPDATE SET
dupe_count = dupe_count + 1 RETURNING id, dupe_count` statement, so concurrent
producers for the same key can neither insert twice nor lose a counter update.
A returned dupe_count of 0 means this call inserted the row.
"""
from __future__ import annotations
import calendar
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from prometheus_client import Counter, Histogram
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from identity_sync.errors import StoreUnavailableError
from identity_sync.infrastructure.db import dialect_name
from identity_sync.models.tables import Event
from identity_sync.utils.clock import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

EVENTS_ADMITTED = Counter('fingerprint_events_admitted_total', 'Events admitted as new rows', ['source'])
EVENTS_DUPLICATE = Counter('fingerprint_events_duplicate_total', 'Duplicate submissions counted', ['source'])
ADMIT_LATENCY = Histogram('fingerprint_admit_latency_seconds', 'Admission round-trip latency', buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5))
STORE_FAILURES = Counter('fingerprint_store_failures_total', 'Admissions rejected because the store was unavailable')

TRANSACTION_ID_FIELDS = ("checkout_id", "checkout_token", "cart_token", "order_id", "order_number", "token")
DEFAULT_BUCKET_SECONDS = 300


def _canonical(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def bucket_time(event_time: datetime, bucket_seconds: int = DEFAULT_BUCKET_SECONDS) -> str:
    ts = calendar.timegm(as_naive_utc(event_time).timetuple())
    bucket_seconds = max(1, bucket_seconds)
    return str(ts - (ts % bucket_seconds))


def transaction_id(properties: dict[str, Any]) -> str | None:
    for field in TRANSACTION_ID_FIELDS:
        val = properties.get(field)
        if val not in (None, ""):
            return f"{field}={val}"
    return None


def compute_dedupe_key(
    workspace_id: str,
    source: str,
    event_name: str,
    properties: dict[str, Any],
    event_time: datetime,
    idempotency_token: str | None = None,
    context: dict[str, Any] | None = None,
    bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
) -> str:
    """Pure: the same input always yields the same 64 char hex key."""
    if idempotency_token:
        basis = f"token:{idempotency_token}"
    else:
        txn = transaction_id(properties or {})
        if txn:
            basis = f"txn:{txn}"
        else:
            ctx = context or {}
            basis = "hash:" + _canonical({
                "p": properties or {},
                "a": ctx.get("anonymous_id"),
                "s": ctx.get("session_id"),
                # identify calls carry their identifiers only here
                "i": ctx.get("traits") or None,
                "t": bucket_time(event_time, bucket_seconds),
            })
    raw = f"{workspace_id}\x1f{source}\x1f{event_name}\x1f{basis}"
    return hashlib.sha256(raw.encode()).hexdigest()


@dataclass
class AdmitResult:
    accepted: bool
    event_id: int
    dupe_count: int
    dedupe_key: str


def _insert_stmt(session: Session, values: dict):
    name = dialect_name(session)
    if name == "postgresql":
        ins = postgresql.insert(Event).values(**values)
    elif name == "sqlite":
        ins = sqlite.insert(Event).values(**values)
    else:  # pragma: no cover - only pg / sqlite are deployed
        raise StoreUnavailableError(f"unsupported dialect {name}")
    return ins.on_conflict_do_update(
        index_elements=[Event.workspace_id, Event.dedupe_key],
        set_={"dupe_count": Event.dupe_count + 1, "last_duplicate_at": values["received_at"]},
    ).returning(Event.id, Event.dupe_count)


@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
)
def _execute_admit(session: Session, values: dict):
    try:
        row = session.execute(_insert_stmt(session, values)).one()
        session.commit()
        return row
    except DBAPIError:
        session.rollback()
        raise


def admit_event(session: Session, values: dict[str, Any]) -> AdmitResult:
    """Insert the event if its key is new, else bump dupe_count on the stored row.

    `values` are Event column values and must include workspace_id and dedupe_key.
    Commits. Raises StoreUnavailableError when the store cannot be reached.
    """
    values = dict(values)
    values.setdefault("dupe_count", 0)
    values.setdefault("status", "pending")
    values.setdefault("received_at", utcnow())
    with ADMIT_LATENCY.time():
        try:
            row = _execute_admit(session, values)
        except DBAPIError as e:
            STORE_FAILURES.inc()
            logger.error("event admission failed workspace=%s key=%s: %s", values.get("workspace_id"), values.get("dedupe_key"), e)
            raise StoreUnavailableError("event store unavailable") from e
    event_id, dupe_count = row[0], row[1]
    accepted = dupe_count == 0
    source = values.get("source", "unknown")
    if accepted:
        EVENTS_ADMITTED.labels(source).inc()
    else:
        EVENTS_DUPLICATE.labels(source).inc()
        logger.debug("duplicate event workspace=%s event_id=%s dupe_count=%s", values["workspace_id"], event_id, dupe_count)
    return AdmitResult(accepted=accepted, event_id=event_id, dupe_count=dupe_count, dedupe_key=values["dedupe_key"])


def lookup_event(session: Session, workspace_id: str, dedupe_key: str) -> Event | None:
    return session.execute(
        select(Event).where(Event.workspace_id == workspace_id, Event.dedupe_key == dedupe_key)
    ).scalar_one_or_none()
