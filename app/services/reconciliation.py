"""
Subscription reconciliation.

Keeps each user's subscription record in line with the payment processor.
The processor is the system of record: checkout only provisions the
customer and the hosted session, and subscription state changes arrive
later as signed webhook events (or are pulled on demand by the read and
cancel paths).
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from weakref import WeakValueDictionary
from app.core.config import settings, Settings
from app.core.exceptions import (
    NoActiveSubscription,
    PlanMisconfigured,
    PlanNotFound,
    SubscriptionNotFound,
    UserNotFound,
    ValidationError,
)
from app.schemas.billing import (
    CancelSubscriptionResponse,
    CheckoutSession,
    PlanSummary,
    SubscriptionDetails,
    WebhookEvent,
    WebhookOutcome,
)
from app.schemas.user import KNOWN_SUBSCRIPTION_STATUSES, UserSubscription
from app.services.event_ledger import EventLedger, InMemoryEventLedger, MongoEventLedger
from app.services.payment_gateway import (
    PaymentGateway,
    StripeGateway,
    dig,
    invoice_subscription_id,
    snapshot_from_subscription,
)
from app.services.plan_catalog import PLACEHOLDER_PRICE_PREFIX, PlanCatalog, PlanCatalogEntry
from app.services.subscription_store import (
    InMemorySubscriptionStore,
    MongoSubscriptionStore,
    SubscriptionStore,
)
import asyncio
import logging
import time

logger = logging.getLogger(__name__)

# Handler result: (outcome, detail)
HandlerResult = Tuple[str, Optional[str]]

APPLIED = "applied"
SKIPPED = "skipped"
DUPLICATE = "duplicate"
IGNORED = "ignored"
FAILED = "failed"


def _ref_id(value: Any) -> Optional[str]:
    """Id of a reference that may be a bare id or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return dig(value, "id")


class SubscriptionReconciliationEngine:
    """Drives checkout, applies processor events and refreshes subscription state."""

    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        catalog: PlanCatalog,
        ledger: Optional[EventLedger] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.ledger = ledger
        self.clock = clock
        self._customer_locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()
        self._handlers: Dict[str, Callable[[WebhookEvent], Awaitable[HandlerResult]]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "customer.subscription.created": self._on_subscription_created,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
        }

    def _now(self) -> int:
        return int(self.clock())

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def ensure_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None
    ) -> UserSubscription:
        """Record for an authenticated user, created inactive on first use."""
        user = await self.store.get(user_id)
        if user is not None:
            return user
        user = await self.store.get_or_create(
            UserSubscription(user_id=user_id, email=email, display_name=display_name)
        )
        logger.info(f"Created subscription record for user {user_id}")
        return user

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------
    def list_plans(self) -> List[PlanCatalogEntry]:
        return self.catalog.active_plans()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    async def create_checkout_session(self, user_id: str, plan_id: Optional[str]) -> CheckoutSession:
        """
        Start a hosted checkout for a plan.

        Ensures the user has a processor customer (creating exactly one), then
        opens a subscription checkout whose client reference is the user id.
        No subscription state is written here; the webhook does that once the
        payment clears.
        """
        if not plan_id:
            raise ValidationError("Plan ID is required.")

        plan = self.catalog.get_active(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)

        price_id = plan.external_price_id
        if not price_id:
            logger.error(f"No Stripe Price ID found for plan {plan_id} (period: {plan.billing_period})")
            raise PlanMisconfigured(plan_id)
        if price_id.startswith(PLACEHOLDER_PRICE_PREFIX):
            logger.warning(f"Using placeholder Stripe Price ID: {price_id}. Replace with actual ID.")

        user = await self.store.get(user_id)
        if user is None:
            raise UserNotFound(user_id)

        customer_id = user.processor_customer_id or await self._provision_customer(user)

        session = await self.gateway.create_subscription_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            client_reference_id=user_id
        )
        logger.info(f"Checkout session {session.session_id} created for user {user_id}, plan {plan_id}")
        return session

    async def _provision_customer(self, user: UserSubscription) -> str:
        lock = self._customer_locks.get(user.user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._customer_locks[user.user_id] = lock

        async with lock:
            current = await self.store.get(user.user_id)
            if current is None:
                raise UserNotFound(user.user_id)
            if current.processor_customer_id:
                return current.processor_customer_id

            customer_id = await self.gateway.create_customer(
                email=current.email,
                display_name=current.display_name,
                user_id=current.user_id
            )
            record = await self.store.set_customer_id_if_absent(current.user_id, customer_id)
            if record is None:
                raise UserNotFound(user.user_id)
            if record.processor_customer_id != customer_id:
                logger.warning(
                    f"User {user.user_id} already had customer {record.processor_customer_id}; "
                    f"discarding {customer_id}"
                )
            return record.processor_customer_id

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    async def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        """Verify a raw webhook delivery and apply it."""
        if not raw_payload:
            logger.error("Webhook Error: raw body is empty")
            raise ValidationError("Webhook Error: Raw body missing.")
        event = self.gateway.verify_and_parse_webhook(raw_payload, signature_header)
        logger.info(f"Received Stripe event: {event.type} {event.id}")
        return await self.apply_event(event)

    async def apply_event(self, event: WebhookEvent) -> WebhookOutcome:
        """
        Apply one verified event.

        Never raises for processing problems: unknown types are ignored and
        failures in known handlers are logged for manual reconciliation, so
        the processor's delivery queue is not blocked by retries.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event.type}")
            return WebhookOutcome(event_id=event.id, event_type=event.type, result=IGNORED)

        if self.ledger is not None and not await self.ledger.claim(event.id):
            if await self.ledger.is_complete(event.id):
                logger.info(f"Event {event.id} ({event.type}) already processed; skipping")
                return WebhookOutcome(event_id=event.id, event_type=event.type, result=DUPLICATE)
            # Claimed but not completed: an earlier attempt is still running.
            logger.warning(
                f"Event {event.id} ({event.type}) redelivered while an earlier attempt is unfinished; "
                f"needs manual reconciliation if that attempt fails"
            )
            return WebhookOutcome(event_id=event.id, event_type=event.type, result=FAILED, detail="in progress")

        try:
            result, detail = await handler(event)
        except Exception as e:
            logger.exception(f"Failed to process {event.type} event {event.id}; needs manual reconciliation")
            if self.ledger is not None:
                await self.ledger.release(event.id)
            return WebhookOutcome(event_id=event.id, event_type=event.type, result=FAILED, detail=str(e))

        if self.ledger is not None:
            await self.ledger.complete(event.id)
        return WebhookOutcome(event_id=event.id, event_type=event.type, result=result, detail=detail)

    async def _write(self, user_id: str, changes: Dict[str, Any], source_ts: Optional[int]) -> HandlerResult:
        status = changes.get("subscription_status")
        if status is not None and status not in KNOWN_SUBSCRIPTION_STATUSES:
            logger.warning(f"Unrecognized subscription status '{status}' for user {user_id}; storing as-is")

        record = await self.store.apply(user_id, changes, source_ts=source_ts)
        if record is None:
            logger.warning(f"Skipped stale update for user {user_id} (source time {source_ts}): {changes}")
            return SKIPPED, "stale"
        logger.info(f"User {user_id} subscription updated: {changes}")
        return APPLIED, None

    async def _on_checkout_completed(self, event: WebhookEvent) -> HandlerResult:
        session = event.data_object
        user_id = session.get("client_reference_id") or dig(session, "metadata", "app_user_id")
        subscription_id = _ref_id(session.get("subscription"))
        customer_id = _ref_id(session.get("customer"))
        payment_status = session.get("payment_status")

        if payment_status != "paid" or not subscription_id or not user_id:
            logger.info(
                f"Checkout session completed but payment_status is '{payment_status}' "
                f"or subscription/user ID missing"
            )
            return SKIPPED, "not paid"

        user = await self.store.get(user_id)
        if user is None:
            logger.error(f"User not found for client_reference_id: {user_id} in checkout.session.completed")
            return SKIPPED, "unknown user"

        # Failures propagate so the event is reported for later reconciliation.
        snapshot = await self.gateway.retrieve_subscription(subscription_id)
        plan = self.catalog.find_by_price_id(snapshot.price_id)
        if plan is None:
            logger.warning(f"No catalog plan for Stripe price {snapshot.price_id} (subscription {subscription_id})")

        changes: Dict[str, Any] = {
            "processor_subscription_id": subscription_id,
            "subscription_status": snapshot.status,
            "active_plan_id": plan.id if plan else None,
        }
        customer_id = customer_id or snapshot.customer_id
        if customer_id and not user.processor_customer_id:
            changes["processor_customer_id"] = customer_id
        elif customer_id and customer_id != user.processor_customer_id:
            logger.warning(
                f"Checkout for user {user_id} used customer {customer_id}, "
                f"stored customer is {user.processor_customer_id}"
            )
        return await self._write(user_id, changes, event.created)

    async def _on_invoice_paid(self, event: WebhookEvent) -> HandlerResult:
        subscription_id = invoice_subscription_id(event.data_object)
        if not subscription_id:
            return SKIPPED, "no subscription"

        user = await self.store.find_by_subscription_id(subscription_id)
        if user is None:
            logger.info(f"Invoice payment succeeded for unknown subscription {subscription_id}")
            return SKIPPED, "unknown subscription"
        if user.subscription_status == "active":
            return SKIPPED, "already active"
        return await self._write(user.user_id, {"subscription_status": "active"}, event.created)

    async def _on_invoice_payment_failed(self, event: WebhookEvent) -> HandlerResult:
        invoice = event.data_object
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return SKIPPED, "no subscription"

        user = await self.store.find_by_subscription_id(subscription_id)
        if user is None:
            logger.info(f"Invoice payment failed for unknown subscription {subscription_id}")
            return SKIPPED, "unknown subscription"

        logger.info(
            f"Invoice payment failed for subscription {subscription_id}. "
            f"Billing reason: {invoice.get('billing_reason')}"
        )
        snapshot = await self.gateway.retrieve_subscription(subscription_id)
        return await self._write(user.user_id, {"subscription_status": snapshot.status}, event.created)

    async def _on_subscription_created(self, event: WebhookEvent) -> HandlerResult:
        subscription_id = event.data_object.get("id")
        if not await self.store.find_by_subscription_id(subscription_id):
            # Checkout completion links new subscriptions to users.
            logger.info(f"Subscription {subscription_id} created; waiting for checkout completion")
            return SKIPPED, "not linked"
        return await self._on_subscription_updated(event)

    async def _on_subscription_updated(self, event: WebhookEvent) -> HandlerResult:
        snapshot = snapshot_from_subscription(event.data_object)
        user = await self.store.find_by_subscription_id(snapshot.id)
        if user is None:
            logger.warning(f"Received {event.type} for unknown subscription ID: {snapshot.id}")
            return SKIPPED, "unknown subscription"

        changes: Dict[str, Any] = {"subscription_status": snapshot.status}
        if snapshot.status == "canceled":
            changes["active_plan_id"] = None
        else:
            plan = self.catalog.find_by_price_id(snapshot.price_id)
            if plan and plan.id != user.active_plan_id:
                changes["active_plan_id"] = plan.id
        if snapshot.cancel_at_period_end:
            logger.info(f"Subscription {snapshot.id} will cancel at period end")
        return await self._write(user.user_id, changes, event.created)

    async def _on_subscription_deleted(self, event: WebhookEvent) -> HandlerResult:
        subscription_id = event.data_object.get("id")
        user = await self.store.find_by_subscription_id(subscription_id)
        if user is None:
            logger.info(f"Received subscription deletion for unknown subscription {subscription_id}")
            return SKIPPED, "unknown subscription"
        return await self._write(
            user.user_id,
            {"subscription_status": "canceled", "active_plan_id": None},
            event.created
        )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------
    async def get_subscription(self, user_id: str) -> Optional[SubscriptionDetails]:
        """
        Current subscription for a user, refreshed from the processor.

        The local record is a cache; differences with the live snapshot are
        written back.
        """
        user = await self.store.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        if not user.processor_subscription_id or user.subscription_status == "inactive":
            return None

        try:
            snapshot = await self.gateway.retrieve_subscription(user.processor_subscription_id)
        except SubscriptionNotFound:
            logger.warning(
                f"Subscription {user.processor_subscription_id} missing at Stripe; "
                f"marking user {user_id} inactive"
            )
            await self.store.apply(
                user_id,
                {"subscription_status": "inactive", "active_plan_id": None},
                source_ts=self._now()
            )
            return None

        plan = None if snapshot.status == "canceled" else self.catalog.find_by_price_id(snapshot.price_id)

        changes: Dict[str, Any] = {}
        if user.subscription_status != snapshot.status:
            changes["subscription_status"] = snapshot.status
        if snapshot.status == "canceled":
            if user.active_plan_id is not None:
                changes["active_plan_id"] = None
        elif plan and user.active_plan_id != plan.id:
            changes["active_plan_id"] = plan.id
        if changes:
            await self._write(user_id, changes, self._now())

        if plan is not None:
            plan_summary = PlanSummary(id=plan.id, name=plan.display_name, billing_period=plan.billing_period)
        elif snapshot.status == "canceled":
            plan_summary = None
        else:
            plan_summary = PlanSummary(id=None, name="Unknown Plan")

        return SubscriptionDetails(
            processor_subscription_id=user.processor_subscription_id,
            status=snapshot.status,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            plan=plan_summary,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    async def cancel_subscription(self, user_id: str, at_period_end: bool = True) -> CancelSubscriptionResponse:
        user = await self.store.get(user_id)
        if user is None or not user.has_live_subscription:
            raise NoActiveSubscription()

        snapshot = await self.gateway.cancel_subscription(user.processor_subscription_id, at_period_end=at_period_end)

        changes: Dict[str, Any] = {"subscription_status": snapshot.status}
        if snapshot.status == "canceled":
            changes["active_plan_id"] = None
        await self._write(user_id, changes, self._now())

        if at_period_end:
            message = "Subscription cancellation initiated. It will be fully canceled at the end of the current billing period."
        else:
            message = "Subscription canceled."
        return CancelSubscriptionResponse(
            status=snapshot.status,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            message=message,
        )


def build_reconciliation_engine(config: Settings = settings) -> SubscriptionReconciliationEngine:
    """Wire the engine from settings."""
    backend = config.SUBSCRIPTION_STORE_BACKEND.lower()
    if backend == "memory":
        store: SubscriptionStore = InMemorySubscriptionStore(config.BILLING_ENFORCE_EVENT_ORDERING)
        ledger: EventLedger = InMemoryEventLedger(config.WEBHOOK_EVENT_LEDGER_SIZE)
    elif backend == "mongo":
        store = MongoSubscriptionStore(config.BILLING_ENFORCE_EVENT_ORDERING)
        ledger = MongoEventLedger(config.WEBHOOK_EVENT_TTL_SECONDS)
    else:
        raise ValueError(f"Unknown SUBSCRIPTION_STORE_BACKEND: {config.SUBSCRIPTION_STORE_BACKEND}")

    logger.info(f"Reconciliation engine using '{backend}' subscription store")
    return SubscriptionReconciliationEngine(
        store=store,
        gateway=StripeGateway(config),
        catalog=PlanCatalog.from_settings(config),
        ledger=ledger,
    )
