"""Segment classifier: ComputedTraits -> set of segment keys.

Definitions are configuration. Built-in defaults apply to every workspace;
rows in `segment_definitions` (global when workspace_id is NULL) add to or
override them by key, and an inactive row switches a default off.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Iterable
from prometheus_client import Counter
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session
from identity_sync.expression import evaluate_condition, validate_condition_expr
from identity_sync.models.tables import SegmentDefinition, UnifiedUser, UserSegmentMembership
from identity_sync.scoring import ComputedTraits
from identity_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

SEGMENT_ENTRIES = Counter('segment_membership_entries_total', 'Users entering a segment', ['segment'])
SEGMENT_EXITS = Counter('segment_membership_exits_total', 'Users leaving a segment', ['segment'])


@dataclass(frozen=True)
class Segment:
    key: str
    expression: dict
    name: str | None = None
    description: str | None = None


DEFAULT_SEGMENTS: tuple[Segment, ...] = (
    Segment(
        "high_intent_no_purchase",
        {"and": [{"field": "intent_score", "op": "gt", "value": 60},
                 {"field": "orders_count", "op": "eq", "value": 0}]},
        "High Intent - No Purchase",
        "Intent score above 60 and no orders",
    ),
    Segment(
        "atc_no_checkout_24h",
        {"and": [{"field": "drop_off_stage", "op": "eq", "value": "cart"},
                 {"field": "cart_abandoned_at", "op": "exists", "value": True},
                 {"field": "cart_abandoned_hours", "op": "between", "value": [0.5, 24]}]},
        "Added to Cart - No Checkout (24h)",
        "Cart abandoned between 30 minutes and 24 hours ago",
    ),
    Segment(
        "checkout_abandoned",
        {"and": [{"field": "drop_off_stage", "op": "stage_gte", "value": "checkout"},
                 {"field": "checkout_abandoned_at", "op": "exists", "value": True}]},
        "Checkout Abandoned",
        "Started checkout without completing an order afterwards",
    ),
    Segment(
        "category_lover",
        {"and": [{"field": "top_category", "op": "exists", "value": True},
                 {"field": "unique_products_viewed", "op": "gte", "value": 5}]},
        "Category Lover",
        "Clear category preference with 5+ products viewed this week",
    ),
    Segment(
        "returning_visitor",
        {"field": "session_count", "op": "gte", "value": 3},
        "Returning Visitor",
        "3+ sessions in the last 30 days",
    ),
    Segment(
        "at_risk",
        {"and": [{"field": "orders_count", "op": "gt", "value": 0},
                 {"field": "recency_days", "op": "gte", "value": 14}]},
        "At Risk",
        "Previous purchasers not seen in 14+ days",
    ),
)


def match_segments(traits: ComputedTraits | dict[str, Any], definitions: Iterable[Segment] = DEFAULT_SEGMENTS,
                   operator_traits: dict[str, Any] | None = None) -> set[str]:
    """Keys of every segment whose predicate holds. Pure; never raises."""
    data = traits.to_dict() if isinstance(traits, ComputedTraits) else dict(traits or {})
    return {d.key for d in definitions if evaluate_condition(d.expression, data, operator_traits)}


def load_segment_definitions(session: Session, workspace_id: str) -> list[Segment]:
    by_key: dict[str, Segment | None] = {s.key: s for s in DEFAULT_SEGMENTS}
    rows = session.execute(
        select(SegmentDefinition)
        .where(or_(SegmentDefinition.workspace_id.is_(None), SegmentDefinition.workspace_id == workspace_id))
        # workspace rows sort after global ones and win
        .order_by(SegmentDefinition.workspace_id.is_not(None), SegmentDefinition.id)
    ).scalars().all()
    for row in rows:
        if not row.active:
            by_key[row.key] = None
            continue
        ok, reason = validate_condition_expr(row.expression)
        if not ok:
            logger.warning("skipping invalid segment %s workspace=%s: %s", row.key, row.workspace_id, reason)
            continue
        by_key[row.key] = Segment(row.key, row.expression, row.name, row.description)
    return [s for s in by_key.values() if s is not None]


def upsert_segment_definition(session: Session, key: str, expression: dict, workspace_id: str | None = None,
                              name: str | None = None, description: str | None = None, active: bool = True) -> SegmentDefinition:
    ok, reason = validate_condition_expr(expression)
    if not ok:
        raise ValueError(f"invalid segment expression: {reason}")
    row = session.execute(
        select(SegmentDefinition).where(SegmentDefinition.key == key, SegmentDefinition.workspace_id.is_(None) if workspace_id is None else SegmentDefinition.workspace_id == workspace_id)
    ).scalar_one_or_none()
    if row is None:
        row = SegmentDefinition(key=key, workspace_id=workspace_id)
        session.add(row)
    row.expression = expression
    row.name = name
    row.description = description
    row.active = active
    session.flush()
    return row


def refresh_memberships(session: Session, user: UnifiedUser, keys: set[str]) -> tuple[set[str], set[str]]:
    """Make the stored memberships of `user` equal `keys`. Returns (entered, exited)."""
    current = set(
        session.execute(
            select(UserSegmentMembership.segment_key).where(UserSegmentMembership.unified_user_id == user.id)
        ).scalars()
    )
    entered, exited = keys - current, current - keys
    if exited:
        session.execute(
            delete(UserSegmentMembership).where(
                UserSegmentMembership.unified_user_id == user.id,
                UserSegmentMembership.segment_key.in_(sorted(exited)),
            )
        )
    now = utcnow()
    for key in sorted(entered):
        session.add(UserSegmentMembership(workspace_id=user.workspace_id, segment_key=key, unified_user_id=user.id, computed_at=now))
    session.flush()
    for key in entered:
        SEGMENT_ENTRIES.labels(key).inc()
    for key in exited:
        SEGMENT_EXITS.labels(key).inc()
    return entered, exited
