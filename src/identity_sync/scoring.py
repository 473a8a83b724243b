"""Behavioral scoring: event history -> ComputedTraits.

compute_traits is pure. Events are ordered by (event_time, id) before use,
so the result does not depend on load order, and `as_of` is the only clock.

Intent score:

    activity = min(cap, sum(activity_weight[kind]) over the long window)
    raw      = w_depth * stage_points[deepest stage] + w_freq * activity
    intent   = round(min(100, raw * decay_per_day ** recency_days))

Weights are non-negative, so moving an event closer to `as_of` can only keep
or raise every term: recency_days shrinks and window membership only grows.

Frequency maps distinct sessions in the long window to 10/25/40/70/100,
depth is min(100, 5 * products + 10 * categories) over the short window.
"""
from __future__ import annotations
import logging
import math
from collections import Counter as TallyCounter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Callable, Iterable, Sequence
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session
from identity_sync.config import get_settings, parse_json_object
from identity_sync.errors import InvalidPolicyError
from identity_sync.identity_graph import with_user_lock
from identity_sync.locks import UserLockManager
from identity_sync.models.tables import Event, UnifiedUser
from identity_sync.normalization import activity_kind
from identity_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

RECOMPUTES = Counter('scoring_recomputes_total', 'Computed trait recomputations', ['trigger'])
RECOMPUTE_LATENCY = Histogram('scoring_recompute_latency_seconds', 'Recompute latency per user', buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5))


class FunnelStage(IntEnum):
    VISITOR = 0
    BROWSING = 1
    ENGAGED = 2
    CART = 3
    CHECKOUT = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "FunnelStage":
        if isinstance(value, FunnelStage):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                return cls.VISITOR
        if isinstance(value, str):
            return cls.__members__.get(value.strip().upper(), cls.VISITOR)
        return cls.VISITOR


STAGE_FOR_ACTIVITY = {
    "page_view": FunnelStage.BROWSING,
    "search": FunnelStage.ENGAGED,
    "product_view": FunnelStage.ENGAGED,
    "collection_view": FunnelStage.ENGAGED,
    "cart_view": FunnelStage.CART,
    "add_to_cart": FunnelStage.CART,
    "remove_from_cart": FunnelStage.CART,
    "checkout_started": FunnelStage.CHECKOUT,
    "checkout_step": FunnelStage.CHECKOUT,
    "purchase": FunnelStage.CHECKOUT,
}

PRODUCT_KEYS = ("product_id", "item_id", "sku", "variant_id")
CATEGORY_KEYS = ("collection_handle", "category", "product_type")
ORDER_VALUE_KEYS = ("total", "value", "revenue", "total_price", "order_total")


class ScoringPolicy(BaseModel):
    """Tunable, versioned scoring weights (SCORING_POLICY env JSON overrides fields)."""
    version: str = "2024-01"
    activity_weights: dict[str, float] = Field(default_factory=lambda: {
        "page_view": 1, "search": 3, "collection_view": 3, "product_view": 5, "cart_view": 5,
        "add_to_cart": 15, "remove_from_cart": 0, "checkout_started": 25, "checkout_step": 30,
        "purchase": 35, "custom": 0,
    })
    stage_points: dict[str, float] = Field(default_factory=lambda: {
        "visitor": 0, "browsing": 10, "engaged": 25, "cart": 55, "checkout": 80,
    })
    depth_weight: float = Field(0.6, ge=0)
    frequency_weight: float = Field(0.4, ge=0)
    activity_cap: float = Field(100, ge=0)
    decay_per_day: float = Field(0.95, gt=0, le=1)
    short_window_days: int = Field(7, ge=1)
    long_window_days: int = Field(30, ge=1)
    lookback_days: int = Field(90, ge=1)

    @field_validator("activity_weights", "stage_points")
    @classmethod
    def _non_negative(cls, v: dict[str, float]) -> dict[str, float]:
        bad = [k for k, w in v.items() if w < 0]
        if bad:
            raise ValueError(f"negative weights not allowed: {', '.join(sorted(bad))}")
        return v

    @classmethod
    def from_settings(cls, settings=None) -> "ScoringPolicy":
        s = settings or get_settings()
        overrides = parse_json_object(s.scoring_policy)
        try:
            return cls(**overrides)
        except ValidationError as e:
            raise InvalidPolicyError(f"invalid SCORING_POLICY: {e.errors()[0].get('msg')}") from e

    def stage_score(self, stage: FunnelStage) -> float:
        return self.stage_points.get(stage.label, 0.0)


@dataclass(frozen=True)
class ScoringEvent:
    id: int
    event_name: str
    event_type: str
    event_time: datetime
    properties: dict
    context: dict

    @classmethod
    def from_row(cls, e: Event) -> "ScoringEvent":
        return cls(e.id, e.event_name, e.event_type or "custom", e.event_time, dict(e.properties or {}), dict(e.context or {}))

    @property
    def kind(self) -> str:
        return activity_kind(self.event_name, self.event_type)


@dataclass
class ComputedTraits:
    intent_score: int = 0
    frequency_score: int = 0
    depth_score: int = 0
    recency_days: int | None = None
    drop_off_stage: str = FunnelStage.VISITOR.label
    top_category: str | None = None
    session_count: int = 0
    lifetime_value: float = 0.0
    orders_count: int = 0
    unique_products_viewed: int = 0
    unique_categories_viewed: int = 0
    add_to_cart_7d: int = 0
    cart_abandoned_at: str | None = None
    checkout_abandoned_at: str | None = None
    cart_abandoned_hours: float | None = None
    last_event_at: str | None = None
    policy_version: str | None = None
    last_computed_at: str | None = None
    merged_from: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ComputedTraits":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @property
    def stage(self) -> FunnelStage:
        return FunnelStage.parse(self.drop_off_stage)


def _first_prop(props: dict, keys: Sequence[str]) -> Any:
    for k in keys:
        v = props.get(k)
        if v not in (None, ""):
            return v
    return None


def _order_value(props: dict) -> float:
    raw = _first_prop(props, ORDER_VALUE_KEYS)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) and value > 0 else 0.0


def _session_key(ev: ScoringEvent) -> str:
    sid = ev.context.get("session_id") or ev.properties.get("session_id")
    return str(sid) if sid else f"day:{ev.event_time.date().isoformat()}"


def frequency_from_sessions(sessions: int) -> int:
    if sessions <= 0:
        return 0
    if sessions >= 10:
        return 100
    if sessions >= 5:
        return 70
    if sessions >= 3:
        return 40
    if sessions >= 2:
        return 25
    return 10


def order_events(events: Iterable[ScoringEvent]) -> list[ScoringEvent]:
    return sorted(events, key=lambda e: (e.event_time, e.id))


def compute_traits(events: Iterable[ScoringEvent], as_of: datetime, policy: ScoringPolicy | None = None) -> ComputedTraits:
    policy = policy or ScoringPolicy()
    ordered = order_events(events)
    traits = ComputedTraits(policy_version=policy.version, last_computed_at=as_of.isoformat())
    if not ordered:
        return traits

    short_start = as_of - timedelta(days=policy.short_window_days)
    long_start = as_of - timedelta(days=policy.long_window_days)
    lookback_start = as_of - timedelta(days=policy.lookback_days)

    stage = FunnelStage.VISITOR
    activity = 0.0
    sessions: set[str] = set()
    products: set[str] = set()
    categories: set[str] = set()
    category_hits: TallyCounter[str] = TallyCounter()
    last_cart: datetime | None = None
    last_checkout: datetime | None = None
    last_order: datetime | None = None
    atc_7d = 0

    for ev in ordered:
        kind = ev.kind
        t = ev.event_time
        if kind == "purchase":
            traits.orders_count += 1
            traits.lifetime_value += _order_value(ev.properties)
            last_order = t
        elif kind == "add_to_cart":
            last_cart = t
        elif kind == "checkout_started":
            last_checkout = t

        if t >= lookback_start:
            stage = max(stage, STAGE_FOR_ACTIVITY.get(kind, FunnelStage.VISITOR))
        if t >= long_start:
            activity += policy.activity_weights.get(kind, policy.activity_weights.get("custom", 0.0))
            sessions.add(_session_key(ev))
            category = _first_prop(ev.properties, CATEGORY_KEYS)
            if category is not None:
                category_hits[str(category)] += 1
        if t >= short_start:
            if kind == "add_to_cart":
                atc_7d += 1
            if kind in ("product_view", "add_to_cart"):
                product = _first_prop(ev.properties, PRODUCT_KEYS)
                if product is not None:
                    products.add(str(product))
            if kind in ("product_view", "collection_view", "add_to_cart"):
                category = _first_prop(ev.properties, CATEGORY_KEYS)
                if category is not None:
                    categories.add(str(category))

    last_event = ordered[-1].event_time
    recency = max(0, (as_of - last_event).days)
    activity = min(policy.activity_cap, activity)
    raw = policy.depth_weight * policy.stage_score(stage) + policy.frequency_weight * activity
    intent = min(100.0, raw * (policy.decay_per_day ** recency))

    traits.intent_score = int(round(intent))
    traits.session_count = len(sessions)
    traits.frequency_score = frequency_from_sessions(len(sessions))
    traits.unique_products_viewed = len(products)
    traits.unique_categories_viewed = len(categories)
    traits.depth_score = min(100, len(products) * 5 + len(categories) * 10)
    traits.add_to_cart_7d = atc_7d
    traits.recency_days = recency
    traits.drop_off_stage = stage.label
    traits.last_event_at = last_event.isoformat()
    traits.lifetime_value = round(traits.lifetime_value, 2)
    if category_hits:
        traits.top_category = min(category_hits.items(), key=lambda kv: (-kv[1], kv[0]))[0]
    if last_cart and not any(x and x >= last_cart for x in (last_checkout, last_order)):
        traits.cart_abandoned_at = last_cart.isoformat()
        traits.cart_abandoned_hours = round(max(0.0, (as_of - last_cart).total_seconds() / 3600), 2)
    if last_checkout and not (last_order and last_order >= last_checkout):
        traits.checkout_abandoned_at = last_checkout.isoformat()
    return traits


def load_history(session: Session, user_id: int) -> list[ScoringEvent]:
    rows = session.execute(
        select(Event).where(Event.unified_user_id == user_id).order_by(Event.event_time, Event.id)
    ).scalars().all()
    return [ScoringEvent.from_row(r) for r in rows]


def recompute_user(
    session: Session,
    workspace_id: str,
    user_id: int,
    as_of: datetime | None = None,
    policy: ScoringPolicy | None = None,
    locks: UserLockManager | None = None,
    on_computed: Callable[[UnifiedUser, ComputedTraits], Any] | None = None,
    trigger: str = "event",
) -> ComputedTraits:
    """Recompute and store a user's traits under the user's lock.

    `computed` is replaced wholesale together with whatever `on_computed`
    writes (segment memberships, sync jobs) in one transaction. Merged users
    are followed to their canonical user. Commits.
    """
    policy = policy or ScoringPolicy.from_settings()

    def apply(user: UnifiedUser) -> ComputedTraits:
        when = as_of or utcnow()
        with RECOMPUTE_LATENCY.time():
            traits = compute_traits(load_history(session, user.id), when, policy)
        traits.merged_from = [m.get("user_id") for m in (user.merged_from or []) if isinstance(m, dict)]
        user.computed = traits.to_dict()
        user.last_computed_at = when
        if on_computed is not None:
            on_computed(user, traits)
        return traits

    traits = with_user_lock(session, workspace_id, user_id, apply, locks)
    RECOMPUTES.labels(trigger).inc()
    return traits


def users_due_for_sweep(session: Session, older_than: datetime, limit: int, workspace_id: str | None = None) -> list[tuple[str, int]]:
    q = (
        select(UnifiedUser.workspace_id, UnifiedUser.id)
        .where(
            UnifiedUser.merged_into_id.is_(None),
            UnifiedUser.deleted_at.is_(None),
            (UnifiedUser.last_computed_at.is_(None)) | (UnifiedUser.last_computed_at < older_than),
        )
        .order_by(UnifiedUser.last_computed_at, UnifiedUser.id)
        .limit(limit)
    )
    if workspace_id is not None:
        q = q.where(UnifiedUser.workspace_id == workspace_id)
    return [(ws, uid) for ws, uid in session.execute(q).all()]
