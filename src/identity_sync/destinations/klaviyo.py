from __future__ import annotations
from typing import Any
import requests
from identity_sync.outcomes import DeliveryOutcome
from .base import DestinationAdapter, Identifiers, classify_response, logger

DEFAULT_API_BASE = "https://a.klaviyo.com/api"
DEFAULT_REVISION = "2024-02-15"

# canonical event name -> Klaviyo metric name; unmapped names get the "SF " prefix
KLAVIYO_EVENT_NAMES = {
    "Page View": "SF Page View",
    "Session Start": "SF Session Start",
    "Product Viewed": "SF Viewed Product",
    "View Item": "SF Viewed Product",
    "Collection Viewed": "SF Viewed Category",
    "View Category": "SF Viewed Category",
    "Search": "SF Search",
    "Product Added": "SF Added to Cart",
    "Add to Cart": "SF Added to Cart",
    "Product Removed": "SF Removed from Cart",
    "Cart Viewed": "SF Viewed Cart",
    "Started Checkout": "SF Started Checkout",
    "Begin Checkout": "SF Started Checkout",
    "Order Completed": "SF Placed Order",
    "Purchase": "SF Placed Order",
}


class KlaviyoAdapter(DestinationAdapter):
    """Profiles and events through the Klaviyo JSON:API.

    Profiles are created with POST and, on 409 duplicate, patched by the
    duplicate_profile_id Klaviyo returns, so repeated delivery is an upsert.
    """
    type = "klaviyo"
    requires_email = True
    trait_prefix = "sf_"
    default_event_names = KLAVIYO_EVENT_NAMES
    default_event_prefix = "SF "

    def __init__(self, config: dict[str, Any] | None = None, timeout: float = 15.0):
        super().__init__(config, timeout)
        self.api_key = self.config.get("api_key") or ""
        self.api_base = (self.config.get("api_base") or DEFAULT_API_BASE).rstrip("/")
        self.revision = self.config.get("revision") or DEFAULT_REVISION

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Klaviyo-API-Key {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "revision": self.revision,
        }

    @staticmethod
    def _profile_attributes(identifiers: Identifiers) -> dict[str, Any]:
        attrs = {
            "email": identifiers.get("email"),
            "phone_number": identifiers.get("phone"),
            "external_id": str(identifiers["unified_user_id"]) if identifiers.get("unified_user_id") is not None else None,
        }
        return {k: v for k, v in attrs.items() if v}

    def upsert_profile(self, identifiers: Identifiers, traits: dict[str, Any]) -> DeliveryOutcome:
        if not self.api_key:
            return DeliveryOutcome.rejected("klaviyo destination has no api_key configured")
        if self.requires_email and not identifiers.get("email"):
            return DeliveryOutcome.skipped("no email")
        profile = {"type": "profile", "attributes": {**self._profile_attributes(identifiers), "properties": traits}}

        def call() -> DeliveryOutcome:
            resp = requests.post(f"{self.api_base}/profiles/", json={"data": profile}, headers=self._headers(), timeout=self.timeout)
            if resp.status_code != 409:
                return classify_response(resp, self.type)
            try:
                profile_id = resp.json()["errors"][0]["meta"]["duplicate_profile_id"]
            except (ValueError, KeyError, IndexError, TypeError):
                profile_id = None
            if not profile_id:
                logger.info("klaviyo reported duplicate profile without id for user %s", identifiers.get("unified_user_id"))
                return DeliveryOutcome.success("duplicate profile")
            patch = requests.patch(
                f"{self.api_base}/profiles/{profile_id}/",
                json={"data": {**profile, "id": profile_id}},
                headers=self._headers(),
                timeout=self.timeout,
            )
            return classify_response(patch, self.type)

        return self.instrumented("upsert_profile", call)

    def track_event(self, identifiers: Identifiers, name: str, properties: dict[str, Any]) -> DeliveryOutcome:
        if not self.api_key:
            return DeliveryOutcome.rejected("klaviyo destination has no api_key configured")
        if self.requires_email and not identifiers.get("email"):
            return DeliveryOutcome.skipped("no email")
        props = dict(properties)
        event_time = props.pop("$time", None)
        unique_id = props.pop("$unique_id", None)
        attributes: dict[str, Any] = {
            "metric": {"data": {"type": "metric", "attributes": {"name": name}}},
            "profile": {"data": {"type": "profile", "attributes": self._profile_attributes(identifiers)}},
            "properties": props,
        }
        if event_time:
            attributes["time"] = event_time
        if unique_id:
            attributes["unique_id"] = str(unique_id)

        def call() -> DeliveryOutcome:
            resp = requests.post(
                f"{self.api_base}/events/",
                json={"data": {"type": "event", "attributes": attributes}},
                headers=self._headers(),
                timeout=self.timeout,
            )
            return classify_response(resp, self.type)

        return self.instrumented("track_event", call)
