import json

import pytest
import requests

from identity_sync.destinations import KlaviyoAdapter, WebhookAdapter, adapter_types, get_adapter
from identity_sync.destinations.base import map_properties, parse_retry_after
from identity_sync.errors import DestinationUnavailableError, UnknownDestinationTypeError
from identity_sync.outcomes import OutcomeKind
from identity_sync.security.hmac import sign_payload, verify_hmac


class FakeResponse:
    def __init__(self, status_code, body=None, headers=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self.text = json.dumps(body) if body is not None else ""

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method):
        def send(url, **kwargs):
            self.calls.append((method, url, kwargs))
            nxt = self.responses.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        return send


@pytest.fixture
def http(monkeypatch):
    def install(*responses):
        fake = FakeHttp(*responses)
        monkeypatch.setattr(requests, "post", fake("POST"))
        monkeypatch.setattr(requests, "patch", fake("PATCH"))
        return fake
    return install


IDS = {"unified_user_id": 7, "email": "ann@shop.io", "phone": "+15550100"}


def klaviyo():
    return KlaviyoAdapter({"api_key": "pk_test", "api_base": "https://klaviyo.test/api"})


def test_registry():
    assert {"klaviyo", "webhook"} <= set(adapter_types())
    assert isinstance(get_adapter("webhook", {"url": "https://x"}), WebhookAdapter)
    with pytest.raises(UnknownDestinationTypeError):
        get_adapter("carrier-pigeon")


def test_klaviyo_creates_profile(http):
    fake = http(FakeResponse(201, {"data": {"id": "01H"}}))
    outcome = klaviyo().upsert_profile(IDS, {"sf_intent_score": 41})
    assert outcome.kind is OutcomeKind.SUCCESS
    method, url, kwargs = fake.calls[0]
    assert (method, url) == ("POST", "https://klaviyo.test/api/profiles/")
    assert kwargs["headers"]["Authorization"] == "Klaviyo-API-Key pk_test"
    attrs = kwargs["json"]["data"]["attributes"]
    assert attrs["email"] == "ann@shop.io"
    assert attrs["external_id"] == "7"
    assert attrs["properties"] == {"sf_intent_score": 41}


def test_klaviyo_duplicate_profile_is_patched(http):
    conflict = FakeResponse(409, {"errors": [{"meta": {"duplicate_profile_id": "01DUP"}}]})
    fake = http(conflict, FakeResponse(200, {}))
    outcome = klaviyo().upsert_profile(IDS, {"sf_intent_score": 41})
    assert outcome.kind is OutcomeKind.SUCCESS
    method, url, kwargs = fake.calls[1]
    assert (method, url) == ("PATCH", "https://klaviyo.test/api/profiles/01DUP/")
    assert kwargs["json"]["data"]["id"] == "01DUP"


def test_klaviyo_rate_limit(http):
    http(FakeResponse(429, {}, headers={"Retry-After": "17"}))
    outcome = klaviyo().track_event(IDS, "SF Added to Cart", {"value": 3})
    assert outcome.kind is OutcomeKind.RATE_LIMITED
    assert outcome.retry_after == 17


def test_klaviyo_server_error_and_network_error_are_transient(http):
    http(FakeResponse(503, {"errors": []}), requests.ConnectionError("reset"))
    with pytest.raises(DestinationUnavailableError):
        klaviyo().track_event(IDS, "SF Search", {})
    with pytest.raises(DestinationUnavailableError):
        klaviyo().track_event(IDS, "SF Search", {})


def test_klaviyo_bad_request_is_rejected(http):
    http(FakeResponse(400, {"errors": [{"detail": "invalid email"}]}))
    outcome = klaviyo().upsert_profile(IDS, {})
    assert outcome.kind is OutcomeKind.REJECTED
    assert "400" in outcome.detail


def test_klaviyo_needs_email_and_key(http):
    fake = http()
    assert klaviyo().upsert_profile({"unified_user_id": 1}, {}).kind is OutcomeKind.SKIPPED
    assert KlaviyoAdapter({}).upsert_profile(IDS, {}).kind is OutcomeKind.REJECTED
    assert fake.calls == []


def test_klaviyo_event_body(http):
    fake = http(FakeResponse(202, {}))
    props = {"value": 3, "$time": "2024-05-01T12:00:00", "$unique_id": "abc"}
    klaviyo().track_event(IDS, "SF Added to Cart", props)
    attrs = fake.calls[0][2]["json"]["data"]["attributes"]
    assert attrs["metric"]["data"]["attributes"]["name"] == "SF Added to Cart"
    assert attrs["properties"] == {"value": 3}
    assert attrs["time"] == "2024-05-01T12:00:00"
    assert attrs["unique_id"] == "abc"


def test_klaviyo_naming():
    adapter = klaviyo()
    assert adapter.event_name("Product Added") == "SF Added to Cart"
    assert adapter.event_name("Wishlist Added") == "SF Wishlist Added"
    assert adapter.event_name("Product Added", {"Product Added": "Cart Add"}) == "Cart Add"
    assert adapter.prefix_traits({"intent_score": 1, "sf_x": 2}) == {"sf_intent_score": 1, "sf_x": 2}


def test_webhook_signs_body(http):
    fake = http(FakeResponse(204))
    adapter = WebhookAdapter({"url": "https://hooks.test/in", "secret": "s3cret", "headers": {"X-Tenant": "t1"}})
    outcome = adapter.track_event(IDS, "Product Added", {"sku": "A", "$unique_id": "k1", "$time": "t"})
    assert outcome.kind is OutcomeKind.SUCCESS

    _, url, kwargs = fake.calls[0]
    assert url == "https://hooks.test/in"
    doc = json.loads(kwargs["data"])
    assert doc["idempotency_key"] == "event:k1"
    assert doc["event"] == "Product Added"
    assert doc["properties"] == {"sku": "A"}
    assert kwargs["headers"]["X-Tenant"] == "t1"
    # the receiver can verify with the shared secret
    verify_hmac(kwargs["headers"]["X-Signature"], kwargs["data"], "s3cret")


def test_webhook_without_url_is_rejected():
    assert WebhookAdapter({}).upsert_profile(IDS, {}).kind is OutcomeKind.REJECTED


def test_signature_format():
    assert sign_payload(b"{}", "k", ts=1700000000).startswith("1700000000,")


def test_map_properties_renames_and_drops():
    assert map_properties({"a": 1, "b": 2, "c": 3}, {"a": "alpha", "b": None}) == {"alpha": 1, "c": 3}


def test_parse_retry_after():
    assert parse_retry_after("12") == 12
    assert parse_retry_after(None, default=9) == 9
    assert parse_retry_after("not a date", default=5) == 5
