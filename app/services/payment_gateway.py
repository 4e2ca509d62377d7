from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError
from app.core.config import settings, Settings
from app.core.exceptions import (
    GatewayError,
    GatewayUnavailable,
    SignatureInvalid,
    SubscriptionNotFound,
)
from app.schemas.billing import CheckoutSession, SubscriptionSnapshot, WebhookEvent
import asyncio
import json
import logging
import stripe

logger = logging.getLogger(__name__)

# Upper bound of the SDK's sleep between network retries.
MAX_RETRY_BACKOFF_SECONDS = 2.0


class PaymentGateway(ABC):
    """Contract the reconciliation engine needs from the payment processor."""

    @abstractmethod
    async def create_customer(self, email: Optional[str], display_name: Optional[str], user_id: str) -> str:
        ...

    @abstractmethod
    async def create_subscription_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        client_reference_id: str
    ) -> CheckoutSession:
        ...

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionSnapshot:
        ...

    @abstractmethod
    def verify_and_parse_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        ...


def dig(obj: Any, *path: Any, default: Any = None) -> Any:
    """Walk nested keys/indexes on dicts, lists or Stripe objects."""
    current = obj
    for key in path:
        if current is None:
            return default
        try:
            current = current[key]
        except (KeyError, IndexError, TypeError, AttributeError):
            return default
    return default if current is None else current


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def snapshot_from_subscription(subscription: Any) -> SubscriptionSnapshot:
    """
    Build a snapshot from a subscription object or payload.

    Newer API versions report the billing period on the subscription item
    instead of the subscription, so both places are checked.
    """
    first_item = dig(subscription, "items", "data", 0)
    customer = dig(subscription, "customer")
    if not isinstance(customer, str):
        customer = dig(customer, "id")
    price = dig(first_item, "price")
    price_id = price if isinstance(price, str) else dig(price, "id")
    return SubscriptionSnapshot(
        id=dig(subscription, "id"),
        status=dig(subscription, "status", default="incomplete"),
        customer_id=customer,
        current_period_start=_timestamp(
            dig(subscription, "current_period_start", default=dig(first_item, "current_period_start"))
        ),
        current_period_end=_timestamp(
            dig(subscription, "current_period_end", default=dig(first_item, "current_period_end"))
        ),
        cancel_at_period_end=bool(dig(subscription, "cancel_at_period_end", default=False)),
        price_id=price_id,
    )


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id of an invoice, across API versions."""
    subscription = dig(invoice, "subscription")
    if subscription is None:
        subscription = dig(invoice, "parent", "subscription_details", "subscription")
    if subscription is not None and not isinstance(subscription, str):
        subscription = dig(subscription, "id")
    return subscription


class StripeGateway(PaymentGateway):
    """Stripe-backed gateway. Blocking SDK calls run in the threadpool under a timeout."""

    def __init__(self, config: Settings = settings):
        self.api_key = config.STRIPE_SECRET_KEY
        self.webhook_secret = config.STRIPE_WEBHOOK_SECRET
        self.success_url = config.checkout_success_url
        self.cancel_url = config.checkout_cancel_url
        self.api_version = config.STRIPE_API_VERSION
        self.timeout = config.STRIPE_TIMEOUT_SECONDS
        self.max_network_retries = config.STRIPE_MAX_NETWORK_RETRIES
        self.webhook_tolerance = config.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        # Every attempt the SDK makes, plus its backoff between retries.
        self.call_timeout = (
            self.timeout * (self.max_network_retries + 1)
            + MAX_RETRY_BACKOFF_SECONDS * self.max_network_retries
        )
        self._client_configured = False

    def _ensure_configured(self):
        """Lazy configuration of the Stripe HTTP client."""
        if not self.api_key:
            logger.error("STRIPE_SECRET_KEY is not set; Stripe calls are disabled")
            raise GatewayUnavailable("Stripe API key not configured")
        if not self._client_configured:
            stripe.max_network_retries = self.max_network_retries
            stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
            self._client_configured = True

    def _request_options(self) -> Dict[str, Any]:
        return {"api_key": self.api_key, "stripe_version": self.api_version}

    async def _call(self, operation: str, func, *args, **kwargs):
        self._ensure_configured()
        try:
            return await asyncio.wait_for(
                run_in_threadpool(func, *args, **kwargs),
                timeout=self.call_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {self.call_timeout}s")
            raise GatewayUnavailable(f"Stripe {operation} timed out")
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe {operation} unavailable: {e}")
            raise GatewayUnavailable(f"Stripe {operation} unavailable")
        except stripe.AuthenticationError as e:
            logger.error(f"Stripe rejected credentials during {operation}: {e}")
            raise GatewayUnavailable("Stripe credentials rejected")

    async def create_customer(self, email: Optional[str], display_name: Optional[str], user_id: str) -> str:
        try:
            customer = await self._call(
                "customer creation",
                stripe.Customer.create,
                email=email,
                name=display_name or None,
                metadata={"app_user_id": user_id},
                idempotency_key=f"customer-{user_id}",
                **self._request_options()
            )
        except stripe.StripeError as e:
            logger.error(f"Error creating Stripe customer for user {user_id}: {e}")
            raise GatewayError(getattr(e, "user_message", None) or str(e))
        customer_id = dig(customer, "id")
        logger.info(f"Stripe customer created: {customer_id} for user {user_id}")
        return customer_id

    async def create_subscription_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        client_reference_id: str
    ) -> CheckoutSession:
        if not self.success_url or not self.cancel_url:
            raise GatewayUnavailable("Stripe checkout redirect URLs are not configured")
        try:
            session = await self._call(
                "checkout session creation",
                stripe.checkout.Session.create,
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                client_reference_id=str(client_reference_id),
                metadata={"app_user_id": str(client_reference_id)},
                subscription_data={"metadata": {"app_user_id": str(client_reference_id)}},
                **self._request_options()
            )
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe rejected checkout session for price {price_id}: {e}")
            raise GatewayError(str(e))
        except stripe.StripeError as e:
            logger.error(f"Error creating Stripe Checkout session: {e}")
            raise GatewayError(str(e))
        return CheckoutSession(session_id=dig(session, "id"), redirect_url=dig(session, "url"))

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            subscription = await self._call(
                "subscription retrieval",
                stripe.Subscription.retrieve,
                subscription_id,
                **self._request_options()
            )
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404 or getattr(e, "code", None) == "resource_missing":
                raise SubscriptionNotFound(subscription_id)
            logger.error(f"Error retrieving Stripe subscription {subscription_id}: {e}")
            raise GatewayError(str(e))
        except stripe.StripeError as e:
            logger.error(f"Error retrieving Stripe subscription {subscription_id}: {e}")
            raise GatewayError(str(e))
        return snapshot_from_subscription(subscription)

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> SubscriptionSnapshot:
        try:
            if at_period_end:
                subscription = await self._call(
                    "subscription cancellation",
                    stripe.Subscription.modify,
                    subscription_id,
                    cancel_at_period_end=True,
                    **self._request_options()
                )
            else:
                subscription = await self._call(
                    "subscription cancellation",
                    stripe.Subscription.cancel,
                    subscription_id,
                    **self._request_options()
                )
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404:
                raise SubscriptionNotFound(subscription_id)
            logger.error(f"Error canceling Stripe subscription {subscription_id}: {e}")
            raise GatewayError(str(e))
        except stripe.StripeError as e:
            logger.error(f"Error canceling Stripe subscription {subscription_id}: {e}")
            raise GatewayError(str(e))
        snapshot = snapshot_from_subscription(subscription)
        logger.info(
            f"Stripe subscription {subscription_id} cancellation requested "
            f"(at_period_end: {at_period_end}): {snapshot.status}"
        )
        return snapshot

    def verify_and_parse_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """
        Verify the Stripe-Signature header against the untouched request body.

        Must receive the raw bytes; any re-serialization breaks the HMAC.
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
            raise GatewayUnavailable("Webhook processing is not configured.")
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"),
                signature_header,
                self.webhook_secret,
                self.webhook_tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise SignatureInvalid(str(e))
        except UnicodeDecodeError:
            raise SignatureInvalid("Payload is not valid UTF-8")

        try:
            payload = json.loads(raw_payload)
        except ValueError:
            raise SignatureInvalid("Invalid payload")
        if not isinstance(payload, dict) or "type" not in payload or "id" not in payload:
            raise SignatureInvalid("Invalid payload")

        try:
            return WebhookEvent(
                id=payload["id"],
                type=payload["type"],
                created=payload.get("created"),
                data_object=dig(payload, "data", "object", default={}),
            )
        except PydanticValidationError as e:
            logger.warning(f"Signed webhook payload has an unexpected shape: {e}")
            raise SignatureInvalid("Invalid payload")
