"""Event name / type normalization applied before admission.

Client pixels and webhooks report the same commerce action under many names
(`add_to_cart`, `Product Added`, `added_to_cart`...). Everything downstream
(scoring, blocked-event policy, destination mapping) works on the canonical
name and the coarse event_type derived here.
"""
from __future__ import annotations
import re
from typing import Any

EVENT_NAME_ALIASES: dict[str, str] = {
    "page_view": "Page View",
    "pageview": "Page View",
    "page": "Page View",
    "view_item": "Product Viewed",
    "product_viewed": "Product Viewed",
    "product_view": "Product Viewed",
    "view_product": "Product Viewed",
    "view_category": "Collection Viewed",
    "collection_viewed": "Collection Viewed",
    "collection_view": "Collection Viewed",
    "add_to_cart": "Product Added",
    "product_added": "Product Added",
    "added_to_cart": "Product Added",
    "remove_from_cart": "Product Removed",
    "product_removed": "Product Removed",
    "cart_viewed": "Cart Viewed",
    "view_cart": "Cart Viewed",
    "begin_checkout": "Started Checkout",
    "checkout_started": "Started Checkout",
    "started_checkout": "Started Checkout",
    "initiate_checkout": "Started Checkout",
    "purchase": "Order Completed",
    "order_completed": "Order Completed",
    "placed_order": "Order Completed",
    "complete_purchase": "Order Completed",
    "search": "Search",
    "products_searched": "Search",
}

EVENT_TYPE_MAP: dict[str, str] = {
    "Page View": "page",
    "Session Start": "page",
    "Product Viewed": "product",
    "View Item": "product",
    "Product Click": "product",
    "Search": "product",
    "Collection Viewed": "product",
    "Product Added": "cart",
    "Add to Cart": "cart",
    "Cart Viewed": "cart",
    "Product Removed": "cart",
    "Started Checkout": "checkout",
    "Begin Checkout": "checkout",
    "Checkout Started": "checkout",
    "Checkout Step Completed": "checkout",
    "Payment Info Entered": "checkout",
    "Order Completed": "order",
    "Purchase": "order",
    "Placed Order": "order",
}

# Fine-grained activity used by the scoring engine
ACTIVITY_MAP: dict[str, str] = {
    "Page View": "page_view",
    "Session Start": "page_view",
    "Product Viewed": "product_view",
    "View Item": "product_view",
    "Product Click": "product_view",
    "Search": "search",
    "Collection Viewed": "collection_view",
    "Product Added": "add_to_cart",
    "Add to Cart": "add_to_cart",
    "Cart Viewed": "cart_view",
    "Product Removed": "remove_from_cart",
    "Started Checkout": "checkout_started",
    "Begin Checkout": "checkout_started",
    "Checkout Started": "checkout_started",
    "Checkout Step Completed": "checkout_step",
    "Payment Info Entered": "checkout_step",
    "Order Completed": "purchase",
    "Purchase": "purchase",
    "Placed Order": "purchase",
}

_SEP = re.compile(r"[\s_-]+")


def _page_path(context: dict | None) -> str:
    page = (context or {}).get("page") or {}
    if not isinstance(page, dict):
        return ""
    return str(page.get("path") or page.get("url") or "")


def normalize_event_name(raw_name: str, context: dict | None = None) -> str:
    key = _SEP.sub("_", raw_name.strip().lower())
    canonical = EVENT_NAME_ALIASES.get(key)
    if canonical == "Page View" or raw_name == "Page View":
        # page views on product pages are product views
        path = _page_path(context)
        if "/products/" in path or "/product" in path:
            return "Product Viewed"
        return "Page View"
    return canonical or raw_name.strip()


def map_event_type(event_name: str) -> str:
    if event_name in EVENT_TYPE_MAP:
        return EVENT_TYPE_MAP[event_name]
    lower = event_name.lower()
    if "checkout" in lower:
        return "checkout"
    if "cart" in lower:
        return "cart"
    if "product" in lower or "item" in lower:
        return "product"
    if "order" in lower or "purchase" in lower:
        return "order"
    if "page" in lower or "view" in lower:
        return "page"
    return "custom"


def activity_kind(event_name: str, event_type: str | None = None) -> str:
    kind = ACTIVITY_MAP.get(event_name)
    if kind:
        return kind
    return {
        "page": "page_view",
        "product": "product_view",
        "cart": "add_to_cart",
        "checkout": "checkout_started",
        "order": "purchase",
    }.get(event_type or map_event_type(event_name), "custom")


def enrich_properties(properties: dict[str, Any], context: dict[str, Any] | None) -> dict[str, Any]:
    """Copy page / utm context into properties without overwriting caller values."""
    out = dict(properties)
    ctx = context or {}
    page = ctx.get("page") if isinstance(ctx.get("page"), dict) else {}
    for src, dst in (("url", "url"), ("path", "page_path"), ("referrer", "referrer")):
        if page.get(src) and not out.get(dst):
            out[dst] = page[src]
    utm = ctx.get("utm") if isinstance(ctx.get("utm"), dict) else {}
    for k, v in utm.items():
        if v and not out.get(f"utm_{k}"):
            out[f"utm_{k}"] = v
    return out
