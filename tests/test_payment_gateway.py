import json
import time
from datetime import datetime, timezone

import pytest
import stripe

from app.core.config import Settings
from app.core.exceptions import GatewayError, GatewayUnavailable, SignatureInvalid, SubscriptionNotFound
from app.services.payment_gateway import StripeGateway, invoice_subscription_id, snapshot_from_subscription
from conftest import WEBHOOK_SECRET, sign_payload


def _payload(event_type: str = "checkout.session.completed") -> bytes:
    return json.dumps({
        "id": "evt_sig_1",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": {"id": "cs_1", "client_reference_id": "user_1", "payment_status": "paid"}},
    }).encode("utf-8")


@pytest.fixture()
def stripe_gateway() -> StripeGateway:
    gateway = StripeGateway(Settings(STRIPE_SECRET_KEY="sk_test_123", STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET))
    gateway._client_configured = True
    return gateway


def test_genuine_signature_is_accepted(stripe_gateway):
    body = _payload()
    event = stripe_gateway.verify_and_parse_webhook(body, sign_payload(body))

    assert event.id == "evt_sig_1"
    assert event.type == "checkout.session.completed"
    assert event.data_object["client_reference_id"] == "user_1"


def test_tampered_payload_is_rejected(stripe_gateway):
    body = _payload()
    header = sign_payload(body)
    tampered = body.replace(b'"user_1"', b'"user_2"')

    with pytest.raises(SignatureInvalid):
        stripe_gateway.verify_and_parse_webhook(tampered, header)


def test_signature_with_wrong_secret_is_rejected(stripe_gateway):
    body = _payload()
    with pytest.raises(SignatureInvalid):
        stripe_gateway.verify_and_parse_webhook(body, sign_payload(body, secret="whsec_other"))


def test_expired_signature_is_rejected(stripe_gateway):
    body = _payload()
    old_header = sign_payload(body, timestamp=int(time.time()) - 3600)
    with pytest.raises(SignatureInvalid):
        stripe_gateway.verify_and_parse_webhook(body, old_header)


def test_missing_signature_header_is_rejected(stripe_gateway):
    with pytest.raises(SignatureInvalid):
        stripe_gateway.verify_and_parse_webhook(_payload(), None)


@pytest.mark.parametrize("body", [
    b'{"hello": "world"}',
    b'{"id": 123, "type": "product.created", "data": {"object": {}}}',
    b'{"id": "evt_1", "type": "invoice.paid", "data": {"object": [1]}}',
    b'["evt_1"]',
])
def test_signed_payload_that_is_not_an_event_is_rejected(stripe_gateway, body):
    with pytest.raises(SignatureInvalid) as exc_info:
        stripe_gateway.verify_and_parse_webhook(body, sign_payload(body))
    assert exc_info.value.detail == "Webhook Error: Invalid payload"


def test_missing_webhook_secret_means_unavailable():
    gateway = StripeGateway(Settings(STRIPE_WEBHOOK_SECRET=None))
    body = _payload()
    with pytest.raises(GatewayUnavailable):
        gateway.verify_and_parse_webhook(body, sign_payload(body))


@pytest.mark.asyncio
async def test_missing_secret_key_means_unavailable():
    gateway = StripeGateway(Settings(STRIPE_SECRET_KEY=None))
    with pytest.raises(GatewayUnavailable):
        await gateway.create_customer("a@example.com", "A", "user_1")


@pytest.mark.asyncio
async def test_missing_redirect_urls_means_unavailable(stripe_gateway):
    stripe_gateway.success_url = None
    with pytest.raises(GatewayUnavailable):
        await stripe_gateway.create_subscription_checkout_session("cus_1", "price_pro_m", "user_1")


@pytest.mark.asyncio
async def test_create_customer_uses_user_scoped_idempotency_key(stripe_gateway, monkeypatch):
    calls = []

    def _fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "cus_123", "object": "customer"}

    monkeypatch.setattr(stripe.Customer, "create", _fake_create)

    customer_id = await stripe_gateway.create_customer("a@example.com", "Ada", "user_1")

    assert customer_id == "cus_123"
    assert calls[0]["idempotency_key"] == "customer-user_1"
    assert calls[0]["metadata"] == {"app_user_id": "user_1"}
    assert calls[0]["api_key"] == "sk_test_123"


@pytest.mark.asyncio
async def test_checkout_session_carries_client_reference(stripe_gateway, monkeypatch):
    calls = []

    def _fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "cs_123", "url": "https://checkout.stripe.com/c/pay/cs_123"}

    monkeypatch.setattr(stripe.checkout.Session, "create", _fake_create)

    session = await stripe_gateway.create_subscription_checkout_session("cus_1", "price_pro_m", "user_1")

    assert session.session_id == "cs_123"
    assert session.redirect_url.endswith("cs_123")
    assert calls[0]["client_reference_id"] == "user_1"
    assert calls[0]["mode"] == "subscription"
    assert calls[0]["line_items"] == [{"price": "price_pro_m", "quantity": 1}]


@pytest.mark.asyncio
async def test_missing_subscription_is_distinct_from_failure(stripe_gateway, monkeypatch):
    def _missing(*args, **kwargs):
        raise stripe.InvalidRequestError("No such subscription", "id", code="resource_missing", http_status=404)

    monkeypatch.setattr(stripe.Subscription, "retrieve", _missing)
    with pytest.raises(SubscriptionNotFound):
        await stripe_gateway.retrieve_subscription("sub_gone")


@pytest.mark.asyncio
async def test_connection_failure_is_unavailable(stripe_gateway, monkeypatch):
    def _down(*args, **kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Subscription, "retrieve", _down)
    with pytest.raises(GatewayUnavailable):
        await stripe_gateway.retrieve_subscription("sub_1")


def test_call_deadline_covers_sdk_retries():
    gateway = StripeGateway(Settings(STRIPE_TIMEOUT_SECONDS=10.0, STRIPE_MAX_NETWORK_RETRIES=2))
    assert gateway.call_timeout == 34.0

    no_retries = StripeGateway(Settings(STRIPE_TIMEOUT_SECONDS=10.0, STRIPE_MAX_NETWORK_RETRIES=0))
    assert no_retries.call_timeout == 10.0


@pytest.mark.asyncio
async def test_call_past_deadline_is_unavailable(monkeypatch):
    gateway = StripeGateway(Settings(
        STRIPE_SECRET_KEY="sk_test_123", STRIPE_TIMEOUT_SECONDS=0.05, STRIPE_MAX_NETWORK_RETRIES=0
    ))
    gateway._client_configured = True

    def _hang(*args, **kwargs):
        time.sleep(0.5)
        return {"id": "sub_1", "status": "active"}

    monkeypatch.setattr(stripe.Subscription, "retrieve", _hang)
    with pytest.raises(GatewayUnavailable):
        await gateway.retrieve_subscription("sub_1")


@pytest.mark.asyncio
async def test_processor_rejection_is_gateway_error(stripe_gateway, monkeypatch):
    def _card_error(*args, **kwargs):
        raise stripe.InvalidRequestError("Invalid price", "price", http_status=400)

    monkeypatch.setattr(stripe.checkout.Session, "create", _card_error)
    with pytest.raises(GatewayError):
        await stripe_gateway.create_subscription_checkout_session("cus_1", "price_bad", "user_1")


@pytest.mark.asyncio
async def test_cancel_at_period_end_modifies_subscription(stripe_gateway, monkeypatch):
    calls = []

    def _modify(subscription_id, **kwargs):
        calls.append((subscription_id, kwargs))
        return {
            "id": subscription_id,
            "status": "active",
            "cancel_at_period_end": True,
            "items": {"data": [{"price": {"id": "price_pro_m"}}]},
        }

    monkeypatch.setattr(stripe.Subscription, "modify", _modify)

    snapshot = await stripe_gateway.cancel_subscription("sub_1", at_period_end=True)

    assert calls[0][0] == "sub_1"
    assert calls[0][1]["cancel_at_period_end"] is True
    assert snapshot.status == "active"
    assert snapshot.cancel_at_period_end is True


def test_snapshot_reads_legacy_period_fields():
    snapshot = snapshot_from_subscription({
        "id": "sub_1",
        "status": "active",
        "customer": "cus_1",
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_pro_m"}}]},
    })
    assert snapshot.price_id == "price_pro_m"
    assert snapshot.customer_id == "cus_1"
    assert snapshot.current_period_start == datetime.fromtimestamp(1700000000, tz=timezone.utc)


def test_snapshot_reads_period_from_item_on_newer_api():
    snapshot = snapshot_from_subscription({
        "id": "sub_1",
        "status": "trialing",
        "customer": {"id": "cus_9", "object": "customer"},
        "items": {"data": [{
            "price": {"id": "price_pro_a"},
            "current_period_start": 1700000000,
            "current_period_end": 1731536000,
        }]},
    })
    assert snapshot.customer_id == "cus_9"
    assert snapshot.current_period_end == datetime.fromtimestamp(1731536000, tz=timezone.utc)
    assert snapshot.cancel_at_period_end is False


def test_invoice_subscription_id_across_api_versions():
    assert invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"
    assert invoice_subscription_id(
        {"parent": {"subscription_details": {"subscription": "sub_2"}}}
    ) == "sub_2"
    assert invoice_subscription_id({"subscription": None}) is None
