from __future__ import annotations
import json
from typing import Any
import requests
from identity_sync.outcomes import DeliveryOutcome
from identity_sync.security.hmac import sign_payload
from .base import DestinationAdapter, Identifiers, classify_response


class WebhookAdapter(DestinationAdapter):
    """POSTs signed JSON to an operator endpoint.

    config: url (required), secret (optional, adds X-Signature), headers (optional dict).
    The body carries an idempotency key so receivers can drop redeliveries.
    """
    type = "webhook"

    def __init__(self, config: dict[str, Any] | None = None, timeout: float = 15.0):
        super().__init__(config, timeout)
        self.url = self.config.get("url") or ""
        self.secret = self.config.get("secret")
        self.extra_headers = dict(self.config.get("headers") or {})

    def _post(self, operation: str, document: dict[str, Any]) -> DeliveryOutcome:
        if not self.url:
            return DeliveryOutcome.rejected("webhook destination has no url configured")
        body = json.dumps(document, separators=(",", ":"), sort_keys=True, default=str).encode()
        headers = {"Content-Type": "application/json", **self.extra_headers}
        if self.secret:
            headers["X-Signature"] = sign_payload(body, self.secret)

        def call() -> DeliveryOutcome:
            resp = requests.post(self.url, data=body, headers=headers, timeout=self.timeout)
            return classify_response(resp, self.type)

        return self.instrumented(operation, call)

    def upsert_profile(self, identifiers: Identifiers, traits: dict[str, Any]) -> DeliveryOutcome:
        return self._post("upsert_profile", {
            "type": "profile_upsert",
            "idempotency_key": f"profile:{identifiers.get('unified_user_id')}:{traits.get('computed_at', '')}",
            "identifiers": identifiers,
            "traits": traits,
        })

    def track_event(self, identifiers: Identifiers, name: str, properties: dict[str, Any]) -> DeliveryOutcome:
        props = dict(properties)
        unique_id = props.pop("$unique_id", None)
        event_time = props.pop("$time", None)
        return self._post("track_event", {
            "type": "event_track",
            "idempotency_key": f"event:{unique_id}" if unique_id else None,
            "identifiers": identifiers,
            "event": name,
            "time": event_time,
            "properties": props,
        })
