from __future__ import annotations
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from identity_sync.errors import InvalidEventError


class EventPayload(BaseModel):
    """Ingestion input. `event`/`timestamp` are accepted as aliases used by the JS pixel."""
    workspace_id: str = Field(min_length=1, max_length=64)
    source: str = Field("js", min_length=1, max_length=32)
    event_name: str = Field(min_length=1, max_length=256, validation_alias=AliasChoices("event_name", "event"))
    properties: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(None, max_length=256)
    event_time: datetime | None = Field(None, validation_alias=AliasChoices("event_time", "timestamp"))

    @field_validator("event_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event_name is blank")
        return v

    @field_validator("properties", "context", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return {} if v is None else v


@dataclass(frozen=True)
class PayloadLimits:
    max_properties_bytes: int = 50_000
    max_context_bytes: int = 20_000
    max_nesting_depth: int = 10

    @classmethod
    def from_settings(cls, settings) -> "PayloadLimits":
        return cls(
            max_properties_bytes=settings.max_properties_bytes,
            max_context_bytes=settings.max_context_bytes,
            max_nesting_depth=settings.max_nesting_depth,
        )


def nesting_depth(obj: Any, depth: int = 0) -> int:
    if isinstance(obj, dict):
        return max([nesting_depth(v, depth + 1) for v in obj.values()] or [depth + 1])
    if isinstance(obj, list):
        return max([nesting_depth(v, depth + 1) for v in obj] or [depth + 1])
    return depth


def _size(obj: Any) -> int:
    return len(json.dumps(obj, default=str, separators=(",", ":")).encode())


def parse_event(evt: dict, limits: PayloadLimits | None = None) -> EventPayload:
    """Validate a raw payload; raises InvalidEventError with a short machine-readable reason."""
    limits = limits or PayloadLimits()
    if not isinstance(evt, dict):
        raise InvalidEventError("payload_not_object")
    try:
        model = EventPayload.model_validate(evt)
    except ValidationError as ve:
        err = ve.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        raise InvalidEventError(f"validation_error:{loc}:{err.get('msg', 'invalid')}")
    if _size(model.properties) > limits.max_properties_bytes:
        raise InvalidEventError("properties_too_large")
    if _size(model.context) > limits.max_context_bytes:
        raise InvalidEventError("context_too_large")
    if nesting_depth(model.properties) > limits.max_nesting_depth:
        raise InvalidEventError("properties_too_deep")
    if nesting_depth(model.context) > limits.max_nesting_depth:
        raise InvalidEventError("context_too_deep")
    return model
