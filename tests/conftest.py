import hashlib
import hmac
import itertools
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

WEBHOOK_SECRET = "whsec_test_secret"

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("SUBSCRIPTION_STORE_BACKEND", "memory")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
os.environ.setdefault("STRIPE_PRICE_BASIC_MONTHLY", "price_basic_m")
os.environ.setdefault("STRIPE_PRICE_PRO_MONTHLY", "price_pro_m")
os.environ.setdefault("STRIPE_PRICE_PRO_ANNUALLY", "price_pro_a")

from fastapi.testclient import TestClient  # noqa: E402

from app.core.config import Settings, settings  # noqa: E402
from app.core.exceptions import SubscriptionNotFound  # noqa: E402
from app.schemas.billing import CheckoutSession, SubscriptionSnapshot, WebhookEvent  # noqa: E402
from app.schemas.user import UserSubscription  # noqa: E402
from app.services.event_ledger import InMemoryEventLedger  # noqa: E402
from app.services.payment_gateway import PaymentGateway, StripeGateway  # noqa: E402
from app.services.plan_catalog import PlanCatalog  # noqa: E402
from app.services.reconciliation import SubscriptionReconciliationEngine  # noqa: E402
from app.services.subscription_store import InMemorySubscriptionStore  # noqa: E402

USER_ID = "user_1"


class FakeGateway(PaymentGateway):
    """In-process stand-in for Stripe that records every call."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self.customers_created: List[Dict[str, Any]] = []
        self.sessions_created: List[Dict[str, Any]] = []
        self.retrieve_calls: List[str] = []
        self.cancel_calls: List[Dict[str, Any]] = []
        self.subscriptions: Dict[str, SubscriptionSnapshot] = {}
        self.retrieve_error: Optional[Exception] = None
        self._verifier = StripeGateway(Settings(STRIPE_WEBHOOK_SECRET=webhook_secret))

    def add_subscription(self, subscription_id: str, status: str = "active", price_id: str = "price_pro_m",
                         customer_id: str = "cus_1", cancel_at_period_end: bool = False) -> SubscriptionSnapshot:
        snapshot = SubscriptionSnapshot(
            id=subscription_id,
            status=status,
            customer_id=customer_id,
            current_period_start=None,
            current_period_end=None,
            cancel_at_period_end=cancel_at_period_end,
            price_id=price_id,
        )
        self.subscriptions[subscription_id] = snapshot
        return snapshot

    @property
    def call_count(self) -> int:
        return (len(self.customers_created) + len(self.sessions_created)
                + len(self.retrieve_calls) + len(self.cancel_calls))

    async def create_customer(self, email, display_name, user_id):
        customer_id = f"cus_{len(self.customers_created) + 1}"
        self.customers_created.append({"id": customer_id, "email": email, "user_id": user_id})
        return customer_id

    async def create_subscription_checkout_session(self, customer_id, price_id, client_reference_id):
        session_id = f"cs_test_{len(self.sessions_created) + 1}"
        self.sessions_created.append({
            "id": session_id,
            "customer_id": customer_id,
            "price_id": price_id,
            "client_reference_id": client_reference_id,
        })
        return CheckoutSession(session_id=session_id, redirect_url=f"https://checkout.stripe.com/c/pay/{session_id}")

    async def retrieve_subscription(self, subscription_id):
        self.retrieve_calls.append(subscription_id)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if subscription_id not in self.subscriptions:
            raise SubscriptionNotFound(subscription_id)
        return self.subscriptions[subscription_id].model_copy()

    async def cancel_subscription(self, subscription_id, at_period_end=True):
        self.cancel_calls.append({"id": subscription_id, "at_period_end": at_period_end})
        snapshot = self.subscriptions[subscription_id]
        if at_period_end:
            snapshot = snapshot.model_copy(update={"cancel_at_period_end": True})
        else:
            snapshot = snapshot.model_copy(update={"status": "canceled"})
        self.subscriptions[subscription_id] = snapshot
        return snapshot.model_copy()

    def verify_and_parse_webhook(self, raw_payload, signature_header) -> WebhookEvent:
        return self._verifier.verify_and_parse_webhook(raw_payload, signature_header)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture()
def event_factory() -> Callable[..., Dict[str, Any]]:
    """Stripe event payloads with unique ids and increasing `created` times.

    Events are dated an hour back so that writes stamped by the refresh and
    cancel paths are always newer.
    """
    counter = itertools.count(1)
    base = int(time.time()) - 3600

    def _make(event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None,
              created: Optional[int] = None) -> Dict[str, Any]:
        n = next(counter)
        return {
            "id": event_id or f"evt_{n}",
            "object": "event",
            "type": event_type,
            "created": created if created is not None else base + n,
            "data": {"object": data_object},
        }

    return _make


@pytest.fixture()
def to_event() -> Callable[[Dict[str, Any]], WebhookEvent]:
    def _convert(payload: Dict[str, Any]) -> WebhookEvent:
        return WebhookEvent(
            id=payload["id"],
            type=payload["type"],
            created=payload["created"],
            data_object=payload["data"]["object"],
        )

    return _convert


@pytest.fixture()
def catalog() -> PlanCatalog:
    return PlanCatalog.from_settings(settings)


@pytest.fixture()
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore(records=[
        UserSubscription(user_id=USER_ID, email="owner@example.com", display_name="Ada Owner"),
    ])


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def ledger() -> InMemoryEventLedger:
    return InMemoryEventLedger(max_size=100)


@pytest.fixture()
def engine(store, gateway, catalog, ledger) -> SubscriptionReconciliationEngine:
    return SubscriptionReconciliationEngine(store=store, gateway=gateway, catalog=catalog, ledger=ledger)


@pytest.fixture()
def client(engine) -> Iterator[TestClient]:
    from main import app
    from app.api.deps import get_reconciliation_engine

    app.dependency_overrides[get_reconciliation_engine] = lambda: engine
    test_client = TestClient(app)
    try:
        yield test_client
    finally:
        test_client.close()
        app.dependency_overrides.clear()


@pytest.fixture()
def post_webhook(client) -> Callable[..., Any]:
    """POST a signed event to the webhook route."""

    def _post(event: Dict[str, Any], secret: str = WEBHOOK_SECRET):
        body = json.dumps(event).encode("utf-8")
        return client.post(
            f"{settings.API_V1_PREFIX}/stripe/webhooks",
            content=body,
            headers={"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"},
        )

    return _post
