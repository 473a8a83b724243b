from __future__ import annotations
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict
import logging
import time
import requests
from prometheus_client import Counter, Histogram
from identity_sync.errors import DestinationUnavailableError
from identity_sync.outcomes import DeliveryOutcome
from identity_sync.utils.clock import as_naive_utc, utcnow

DESTINATION_CALLS = Counter('destination_calls_total', 'Adapter calls by destination type and operation', ['destination', 'operation'])
DESTINATION_OUTCOMES = Counter('destination_outcomes_total', 'Adapter call outcomes', ['destination', 'outcome'])
DESTINATION_ERRORS = Counter('destination_errors_total', 'Transient adapter errors', ['destination'])
DESTINATION_RATE_LIMITS = Counter('destination_rate_limits_total', 'Rate limit responses per destination type', ['destination'])
DESTINATION_LATENCY = Histogram('destination_call_latency_seconds', 'Latency of adapter calls', ['destination'], buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30))

logger = logging.getLogger(__name__)

Identifiers = Dict[str, Any]


class DestinationAdapter(ABC):
    """One implementation per destination type. Calls must be idempotent for the
    destination (upsert semantics); the queue delivers at least once.

    Adapters return a DeliveryOutcome for success / rate limiting / permanent
    rejection and raise DestinationUnavailableError for transient failures.
    """
    type: str
    requires_email: bool = False
    trait_prefix: str = ""
    default_event_names: dict[str, str] = {}
    default_event_prefix: str | None = None

    def __init__(self, config: dict[str, Any] | None = None, timeout: float = 15.0):
        self.config = dict(config or {})
        self.timeout = timeout

    def event_name(self, canonical: str, mapping: dict[str, str] | None = None) -> str:
        """Destination mapping wins, then the adapter's built-in names, then the default prefix."""
        if mapping and mapping.get(canonical):
            return str(mapping[canonical])
        return map_event_name(canonical, self.default_event_names, self.default_event_prefix)

    def prefix_traits(self, traits: dict[str, Any]) -> dict[str, Any]:
        if not self.trait_prefix:
            return dict(traits)
        return {k if k.startswith(self.trait_prefix) else f"{self.trait_prefix}{k}": v for k, v in traits.items()}

    @abstractmethod
    def upsert_profile(self, identifiers: Identifiers, traits: dict[str, Any]) -> DeliveryOutcome:
        ...

    @abstractmethod
    def track_event(self, identifiers: Identifiers, name: str, properties: dict[str, Any]) -> DeliveryOutcome:
        ...

    def instrumented(self, operation: str, fn: Callable[[], DeliveryOutcome]) -> DeliveryOutcome:
        """Wrap an adapter call with metrics; network errors become DestinationUnavailableError."""
        DESTINATION_CALLS.labels(self.type, operation).inc()
        start = time.time()
        try:
            outcome = fn()
        except requests.RequestException as e:
            DESTINATION_ERRORS.labels(self.type).inc()
            raise DestinationUnavailableError(f"{self.type} {operation} failed: {e.__class__.__name__}: {e}") from e
        except DestinationUnavailableError:
            DESTINATION_ERRORS.labels(self.type).inc()
            raise
        finally:
            DESTINATION_LATENCY.labels(self.type).observe(time.time() - start)
        DESTINATION_OUTCOMES.labels(self.type, outcome.kind.value).inc()
        if outcome.kind.value == "rate_limited":
            DESTINATION_RATE_LIMITS.labels(self.type).inc()
        return outcome


def parse_retry_after(value: str | None, default: int = 60) -> int:
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = as_naive_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return default
    return max(0, int((when - utcnow()).total_seconds()))


def classify_response(resp: requests.Response, destination: str, default_retry_after: int = 60) -> DeliveryOutcome:
    """2xx success, 429 rate limited, other 4xx permanent rejection, 5xx transient (raises)."""
    status = resp.status_code
    if 200 <= status < 300:
        return DeliveryOutcome.success()
    if status == 429:
        return DeliveryOutcome.rate_limited(parse_retry_after(resp.headers.get("Retry-After"), default_retry_after), f"{destination} HTTP 429")
    if status == 408 or status >= 500:
        raise DestinationUnavailableError(f"{destination} HTTP {status}: {resp.text[:300]}")
    return DeliveryOutcome.rejected(f"{destination} HTTP {status}: {resp.text[:500]}")


def map_event_name(name: str, mapping: dict[str, str] | None, default_prefix: str | None = None) -> str:
    if mapping and name in mapping and mapping[name]:
        return str(mapping[name])
    if default_prefix:
        return f"{default_prefix}{name}"
    return name


def map_properties(properties: dict[str, Any], mapping: dict[str, Any] | None) -> dict[str, Any]:
    """Rename keys per mapping; a mapping value of None drops the key."""
    if not mapping:
        return dict(properties)
    out: dict[str, Any] = {}
    for k, v in properties.items():
        if k in mapping:
            target = mapping[k]
            if target is None:
                continue
            out[str(target)] = v
        else:
            out[k] = v
    return out
