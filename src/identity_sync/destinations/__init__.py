"""Destination adapter registry, keyed by Destination.type."""
from __future__ import annotations
from typing import Any, Type
from identity_sync.errors import UnknownDestinationTypeError
from .base import DestinationAdapter, map_event_name, map_properties
from .klaviyo import KlaviyoAdapter
from .webhook import WebhookAdapter

_REGISTRY: dict[str, Type[DestinationAdapter]] = {
    KlaviyoAdapter.type: KlaviyoAdapter,
    WebhookAdapter.type: WebhookAdapter,
}


def register_adapter(dest_type: str, adapter_cls: Type[DestinationAdapter]) -> None:
    _REGISTRY[dest_type] = adapter_cls


def unregister_adapter(dest_type: str) -> None:
    _REGISTRY.pop(dest_type, None)


def adapter_types() -> list[str]:
    return sorted(_REGISTRY)


def get_adapter(dest_type: str, config: dict[str, Any] | None = None, timeout: float = 15.0) -> DestinationAdapter:
    cls = _REGISTRY.get(dest_type)
    if cls is None:
        raise UnknownDestinationTypeError(f"no adapter registered for destination type '{dest_type}'")
    return cls(config, timeout=timeout)


__all__ = [
    "DestinationAdapter",
    "KlaviyoAdapter",
    "WebhookAdapter",
    "adapter_types",
    "get_adapter",
    "map_event_name",
    "map_properties",
    "register_adapter",
    "unregister_adapter",
]
