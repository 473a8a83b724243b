"""Identity graph: identifiers -> unified users, with deterministic merges.

Resolution runs in two phases so that no thread ever waits for a user lock
while it holds an open store transaction:

  1. read the current owners of the event's identifiers, end the transaction
  2. take the owners' user locks (ascending), open a new transaction, lock
     the user rows (`FOR UPDATE` ordered by id), re-check ownership, then
     attach / create / merge and commit as one unit

If ownership moved between the phases the attempt raises
ResolutionConflictError and is retried, as is a unique violation from two
resolutions creating the same (type, value) identity at once.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable
from prometheus_client import Counter
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random
from identity_sync.errors import ResolutionConflictError, UnknownUserError, WorkspaceMismatchError, ensure_same_workspace
from identity_sync.locks import UserLockManager, get_lock_manager
from identity_sync.models.tables import Event, Identity, IdentityMerge, UnifiedUser, UserSegmentMembership
from identity_sync.sync_queue import reassign_user_jobs, skip_user_jobs
from identity_sync.utils.clock import utcnow

logger = logging.getLogger(__name__)

IDENTITY_MERGES = Counter('identity_merges_total', 'Unified users merged into a canonical user')
IDENTITY_EVENTS_REPOINTED = Counter('identity_events_repointed_total', 'Events re-pointed to a canonical user during merges')
IDENTITIES_CREATED = Counter('identity_identities_created_total', 'Identities created', ['type', 'valid'])
USERS_CREATED = Counter('identity_users_created_total', 'Unified users created')
RESOLUTION_CONFLICTS = Counter('identity_resolution_conflicts_total', 'Resolution attempts retried after a concurrent change', ['reason'])

IDENTITY_TYPES = ("email", "phone", "customer_id", "anonymous_id")
IDENTITY_CONFIDENCE = {"email": 1.0, "customer_id": 0.9, "phone": 0.85, "anonymous_id": 0.5}
MALFORMED_CONFIDENCE = 0.2
SET_FIELD = {"email": "emails", "phone": "phones", "customer_id": "customer_ids", "anonymous_id": "anonymous_ids"}
MAX_MERGE_CHAIN = 32

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s.]{2,}$")

_EMAIL_KEYS = ("email", "customer_email", "$email")
_PHONE_KEYS = ("phone", "phone_number", "$phone_number")
_CUSTOMER_KEYS = ("customer_id", "shopify_customer_id")
# identify traits under these keys feed the graph, not the operator trait map
IDENTIFIER_TRAIT_KEYS = frozenset(_EMAIL_KEYS + _PHONE_KEYS + _CUSTOMER_KEYS + ("anonymous_id", "user_id"))


@dataclass(frozen=True)
class ObservedIdentifier:
    type: str
    value: str
    confidence: float
    is_valid: bool = True


def normalize_email(raw: Any) -> tuple[str, bool]:
    value = str(raw).strip().lower()
    return value, bool(_EMAIL_RE.match(value))


def normalize_phone(raw: Any) -> tuple[str, bool]:
    text = str(raw).strip()
    digits = re.sub(r"\D", "", text)
    if 7 <= len(digits) <= 15:
        return "+" + digits, True
    return text.lower(), False


def _observe(id_type: str, raw: Any) -> ObservedIdentifier | None:
    if raw is None or isinstance(raw, (dict, list)) or str(raw).strip() == "":
        return None
    if id_type == "email":
        value, ok = normalize_email(raw)
    elif id_type == "phone":
        value, ok = normalize_phone(raw)
    else:
        value, ok = str(raw).strip(), True
    value = value[:320]
    confidence = IDENTITY_CONFIDENCE[id_type] if ok else MALFORMED_CONFIDENCE
    return ObservedIdentifier(id_type, value, confidence, ok)


def extract_identifiers(
    properties: dict[str, Any] | None,
    context: dict[str, Any] | None,
    fallback_anonymous_id: str,
) -> list[ObservedIdentifier]:
    """Identifiers carried by an event. anonymous_id is always present."""
    props = properties or {}
    ctx = context or {}
    traits = ctx.get("traits") if isinstance(ctx.get("traits"), dict) else {}
    customer = props.get("customer") if isinstance(props.get("customer"), dict) else {}
    sources = (traits, props, customer)

    found: dict[tuple[str, str], ObservedIdentifier] = {}

    def add(obs: ObservedIdentifier | None):
        if obs is None:
            return
        key = (obs.type, obs.value)
        prev = found.get(key)
        if prev is None or obs.confidence > prev.confidence:
            found[key] = obs

    for id_type, keys in (("email", _EMAIL_KEYS), ("phone", _PHONE_KEYS), ("customer_id", _CUSTOMER_KEYS)):
        for src in sources:
            for k in keys:
                add(_observe(id_type, src.get(k)))
    if customer.get("id") is not None:
        add(_observe("customer_id", customer.get("id")))

    anon = ctx.get("anonymous_id") or props.get("anonymous_id")
    add(_observe("anonymous_id", anon) or _observe("anonymous_id", fallback_anonymous_id))
    return sorted(found.values(), key=lambda o: (IDENTITY_TYPES.index(o.type), o.value))


def identifiers_for_event(event: Event) -> list[ObservedIdentifier]:
    return extract_identifiers(event.properties, event.context, f"anon-{event.dedupe_key[:32]}")


def resolve_user_id(session: Session, user_id: int) -> int:
    """Follow merged_into_id to the live canonical user."""
    current = user_id
    for _ in range(MAX_MERGE_CHAIN):
        nxt = session.execute(select(UnifiedUser.merged_into_id).where(UnifiedUser.id == current)).scalar_one_or_none()
        if nxt is None:
            return current
        current = nxt
    raise ResolutionConflictError(f"merge chain too long from user {user_id}")


def _owners(session: Session, workspace_id: str, observed: Iterable[ObservedIdentifier]) -> dict[tuple[str, str], int]:
    out: dict[tuple[str, str], int] = {}
    for obs in observed:
        owner = session.execute(
            select(Identity.unified_user_id).where(
                Identity.workspace_id == workspace_id,
                Identity.identity_type == obs.type,
                Identity.identity_value == obs.value,
            )
        ).scalar_one_or_none()
        if owner is not None:
            out[(obs.type, obs.value)] = resolve_user_id(session, owner)
    return out


def _lock_users(session: Session, user_ids: Iterable[int]) -> list[UnifiedUser]:
    ids = sorted(set(user_ids))
    if not ids:
        return []
    return list(
        session.execute(
            select(UnifiedUser).where(UnifiedUser.id.in_(ids)).order_by(UnifiedUser.id).with_for_update()
        ).scalars().all()
    )


def _append_unique(values: list | None, extra: Iterable[Any]) -> list:
    out = list(values or [])
    for v in extra:
        if v not in out:
            out.append(v)
    return out


def merge_users(session: Session, canonical: UnifiedUser, loser: UnifiedUser, trigger_event_id: int | None = None) -> IdentityMerge:
    """Fold `loser` into `canonical` inside the caller's transaction.

    Both rows must already be locked. The loser stays as a dead record with
    merged_into_id set; its identifiers, events and queued jobs move over.
    """
    ensure_same_workspace(canonical.workspace_id, loser)
    now = utcnow()
    identities_moved = session.execute(
        update(Identity).where(Identity.unified_user_id == loser.id).values(unified_user_id=canonical.id)
    ).rowcount or 0
    events_moved = session.execute(
        update(Event).where(Event.unified_user_id == loser.id).values(unified_user_id=canonical.id)
    ).rowcount or 0
    # users previously absorbed by the loser now point straight at the canonical
    session.execute(
        update(UnifiedUser).where(UnifiedUser.merged_into_id == loser.id).values(merged_into_id=canonical.id)
    )
    session.execute(delete(UserSegmentMembership).where(UserSegmentMembership.unified_user_id == loser.id))

    for field in SET_FIELD.values():
        setattr(canonical, field, _append_unique(getattr(canonical, field), getattr(loser, field) or []))
        setattr(loser, field, [])
    canonical.external_ids = {**(loser.external_ids or {}), **(canonical.external_ids or {})}
    canonical.traits = {**(loser.traits or {}), **(canonical.traits or {})}
    if not canonical.primary_email and loser.primary_email:
        canonical.primary_email = loser.primary_email
    canonical.first_seen_at = min(canonical.first_seen_at, loser.first_seen_at)
    canonical.last_seen_at = max(canonical.last_seen_at, loser.last_seen_at)
    canonical.merged_from = list(canonical.merged_from or []) + [{
        "user_id": loser.id,
        "merged_at": now.isoformat(),
        "computed": dict(loser.computed or {}),
    }] + list(loser.merged_from or [])

    loser.merged_into_id = canonical.id
    loser.primary_email = None
    loser.merged_from = []

    jobs_skipped = skip_user_jobs(session, loser.id, f"Skipped: merged into {canonical.id}", job_type="profile_upsert")
    reassign_user_jobs(session, loser.id, canonical.id)

    audit = IdentityMerge(
        workspace_id=canonical.workspace_id,
        canonical_user_id=canonical.id,
        merged_user_id=loser.id,
        identities_repointed=identities_moved,
        events_repointed=events_moved,
        jobs_skipped=jobs_skipped,
        trigger_event_id=trigger_event_id,
    )
    session.add(audit)
    IDENTITY_MERGES.inc()
    IDENTITY_EVENTS_REPOINTED.inc(events_moved)
    logger.info(
        "merged user %s into %s workspace=%s identities=%s events=%s",
        loser.id, canonical.id, canonical.workspace_id, identities_moved, events_moved,
    )
    return audit


def canonical_of(users: list[UnifiedUser]) -> UnifiedUser:
    return min(users, key=lambda u: (u.first_seen_at, u.id))


def _attach(session: Session, user: UnifiedUser, event: Event, observed: list[ObservedIdentifier], existing: dict[tuple[str, str], Identity]):
    now = utcnow()
    for obs in observed:
        ident = existing.get((obs.type, obs.value))
        if ident is None:
            ident = Identity(
                workspace_id=user.workspace_id,
                identity_type=obs.type,
                identity_value=obs.value,
                confidence=obs.confidence,
                is_valid=obs.is_valid,
                source=event.source,
                unified_user_id=user.id,
                first_seen_at=event.event_time,
                last_seen_at=event.event_time,
            )
            session.add(ident)
            IDENTITIES_CREATED.labels(obs.type, str(obs.is_valid).lower()).inc()
        else:
            ident.unified_user_id = user.id
            ident.confidence = max(ident.confidence or 0.0, obs.confidence)
            ident.is_valid = bool(ident.is_valid) or obs.is_valid
            ident.source = event.source
            ident.last_seen_at = max(ident.last_seen_at or event.event_time, event.event_time)
        field = SET_FIELD[obs.type]
        setattr(user, field, _append_unique(getattr(user, field), [obs.value]))
        if obs.type == "email" and obs.is_valid and not user.primary_email:
            user.primary_email = obs.value
    user.first_seen_at = min(user.first_seen_at, event.event_time)
    user.last_seen_at = max(user.last_seen_at, event.event_time)
    user.updated_at = now
    event.unified_user_id = user.id
    session.flush()


def _resolve_locked(session: Session, event_id: int, observed: list[ObservedIdentifier], expected: dict[tuple[str, str], int]) -> int:
    event = session.get(Event, event_id, populate_existing=True)
    workspace_id = event.workspace_id
    users = _lock_users(session, set(expected.values()))
    current = _owners(session, workspace_id, observed)
    if current != expected or any(not u.is_live for u in users):
        RESOLUTION_CONFLICTS.labels("ownership_changed").inc()
        raise ResolutionConflictError(f"identifier owners changed while resolving event {event_id}")
    existing = {
        (i.identity_type, i.identity_value): i
        for i in session.execute(
            select(Identity).where(
                Identity.workspace_id == workspace_id,
                Identity.unified_user_id.in_(list(expected.values()) or [-1]),
            )
        ).scalars()
        if (i.identity_type, i.identity_value) in {(o.type, o.value) for o in observed}
    }

    if not users:
        user = UnifiedUser(
            workspace_id=workspace_id,
            first_seen_at=event.event_time,
            last_seen_at=event.event_time,
            emails=[], phones=[], customer_ids=[], anonymous_ids=[],
            external_ids={}, traits={}, computed={}, merged_from=[],
        )
        session.add(user)
        session.flush()
        USERS_CREATED.inc()
    else:
        user = canonical_of(users)
        for loser in sorted((u for u in users if u.id != user.id), key=lambda u: u.id):
            merge_users(session, user, loser, trigger_event_id=event.id)
        session.flush()
    _attach(session, user, event, observed, existing)
    return user.id


@retry(
    retry=retry_if_exception_type((IntegrityError, ResolutionConflictError)),
    stop=stop_after_attempt(8),
    wait=wait_random(0.005, 0.05),
    reraise=True,
)
def resolve_event(session: Session, event_id: int, workspace_id: str | None = None, locks: UserLockManager | None = None) -> int:
    """Attach an admitted event to its unified user, merging users it links.

    Runs in its own transactions; the session must not carry uncommitted work.
    Returns the canonical unified user id.
    """
    locks = locks or get_lock_manager()
    try:
        event = session.get(Event, event_id)
        if event is None:
            raise LookupError(f"event {event_id} not found")
        if workspace_id is not None and event.workspace_id != workspace_id:
            raise WorkspaceMismatchError(f"event {event_id} is not in workspace {workspace_id}")
        observed = identifiers_for_event(event)
        expected = _owners(session, event.workspace_id, observed)
    finally:
        session.rollback()

    with locks.hold(expected.values()):
        try:
            user_id = _resolve_locked(session, event_id, observed, expected)
            session.commit()
        except IntegrityError:
            session.rollback()
            RESOLUTION_CONFLICTS.labels("identity_exists").inc()
            raise
        except Exception:
            session.rollback()
            raise
    return user_id


def get_live_user(session: Session, workspace_id: str, user_id: int) -> UnifiedUser:
    user = session.get(UnifiedUser, resolve_user_id(session, user_id))
    if user is None:
        raise UnknownUserError(f"unified user {user_id} not found")
    ensure_same_workspace(workspace_id, user)
    if user.deleted_at is not None:
        raise UnknownUserError(f"unified user {user_id} was deleted")
    return user


def with_user_lock(session: Session, workspace_id: str, user_id: int, fn, locks: UserLockManager | None = None):
    """Run fn(user) under the live user's lock, chasing merges that land meanwhile."""
    locks = locks or get_lock_manager()
    target = user_id
    for _ in range(MAX_MERGE_CHAIN):
        try:
            target = resolve_user_id(session, target)
        finally:
            session.rollback()
        with locks.hold([target]):
            try:
                users = _lock_users(session, [target])
                if users and users[0].merged_into_id is not None:
                    target = users[0].merged_into_id
                    session.rollback()
                    continue
                user = get_live_user(session, workspace_id, target)
                result = fn(user)
                session.commit()
                return result
            except Exception:
                session.rollback()
                raise
    raise ResolutionConflictError(f"could not settle on a live user for {user_id}")


def set_operator_traits(session: Session, workspace_id: str, user_id: int, traits: dict[str, Any], locks: UserLockManager | None = None) -> dict[str, Any]:
    """Merge operator traits into the user's open trait map. A None value removes the key."""
    def apply(user: UnifiedUser):
        merged = dict(user.traits or {})
        for k, v in traits.items():
            if v is None:
                merged.pop(k, None)
            else:
                merged[k] = v
        user.traits = merged
        user.updated_at = utcnow()
        return dict(merged)

    return with_user_lock(session, workspace_id, user_id, apply, locks)


def delete_profile(session: Session, workspace_id: str, user_id: int, locks: UserLockManager | None = None) -> dict[str, int]:
    """Forget a customer: identities removed, events kept but unlinked, pending jobs skipped."""
    def apply(user: UnifiedUser):
        events = session.execute(
            update(Event).where(Event.unified_user_id == user.id).values(unified_user_id=None)
        ).rowcount or 0
        identities = session.execute(delete(Identity).where(Identity.unified_user_id == user.id)).rowcount or 0
        session.execute(delete(UserSegmentMembership).where(UserSegmentMembership.unified_user_id == user.id))
        jobs = skip_user_jobs(session, user.id, "Skipped: profile deleted")
        absorbed = [m.get("user_id") for m in (user.merged_from or [])]
        for field in SET_FIELD.values():
            setattr(user, field, [])
        user.primary_email = None
        user.external_ids = {}
        user.traits = {}
        user.computed = {}
        user.merged_from = []
        user.deleted_at = utcnow()
        logger.info("deleted profile %s workspace=%s absorbed=%s", user.id, workspace_id, absorbed)
        return {"user_id": user.id, "events_unlinked": events, "identities_deleted": identities, "jobs_skipped": jobs}

    return with_user_lock(session, workspace_id, user_id, apply, locks)


def user_identifiers(user: UnifiedUser) -> dict[str, Any]:
    """Identifier snapshot used in outbound payloads."""
    return {
        "unified_user_id": user.id,
        "email": user.primary_email,
        "emails": list(user.emails or []),
        "phone": (user.phones or [None])[0],
        "phones": list(user.phones or []),
        "customer_ids": list(user.customer_ids or []),
        "anonymous_ids": list(user.anonymous_ids or []),
        "external_ids": dict(user.external_ids or {}),
    }