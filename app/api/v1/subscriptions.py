from fastapi import APIRouter, Depends
from typing import Any, Dict, List, Optional
from app.api.deps import get_reconciliation_engine
from app.api.v1.auth import get_current_user
from app.schemas.billing import (
    CancelSubscriptionResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    NoSubscriptionResponse,
    PlanOut,
)
from app.services.reconciliation import SubscriptionReconciliationEngine
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


async def get_subscriber_id(
    user: Dict[str, Any] = Depends(get_current_user),
    engine: SubscriptionReconciliationEngine = Depends(get_reconciliation_engine)
) -> str:
    """Authenticated user id, with a subscription record created on first use."""
    record = await engine.ensure_user(user["uid"], email=user.get("email"), display_name=user.get("name"))
    return record.user_id


@router.get("/plans", response_model=List[PlanOut], response_model_by_alias=True)
async def list_plans(engine: SubscriptionReconciliationEngine = Depends(get_reconciliation_engine)):
    """List active subscription plans (public)."""
    return [
        PlanOut(
            id=plan.id,
            name=plan.display_name,
            description=plan.description,
            billing_period=plan.billing_period,
            amount=plan.amount,
            currency=plan.currency,
            features=list(plan.features),
        )
        for plan in engine.list_plans()
    ]


@router.post("/checkout-session", response_model=CheckoutSessionResponse, response_model_by_alias=True)
@router.post("/create-checkout-session", response_model=CheckoutSessionResponse,
             response_model_by_alias=True, include_in_schema=False)
async def create_checkout_session(
    request: Optional[CheckoutSessionRequest] = None,
    user_id: str = Depends(get_subscriber_id),
    engine: SubscriptionReconciliationEngine = Depends(get_reconciliation_engine)
):
    """
    Create a hosted checkout session for a plan.

    The subscription becomes active only once the processor confirms
    payment through the webhook.
    """
    plan_id = request.plan_id if request else None
    session = await engine.create_checkout_session(user_id, plan_id)
    return CheckoutSessionResponse(session_id=session.session_id, checkout_url=session.redirect_url)


@router.get("/my-subscription", response_model=None)
async def get_my_subscription(
    user_id: str = Depends(get_subscriber_id),
    engine: SubscriptionReconciliationEngine = Depends(get_reconciliation_engine)
):
    """Get the current user's subscription, refreshed from Stripe."""
    details = await engine.get_subscription(user_id)
    if details is None:
        return NoSubscriptionResponse().model_dump()
    return details.model_dump(by_alias=True, mode="json")


@router.post("/cancel", response_model=CancelSubscriptionResponse, response_model_by_alias=True)
async def cancel_subscription(
    user_id: str = Depends(get_subscriber_id),
    engine: SubscriptionReconciliationEngine = Depends(get_reconciliation_engine)
):
    """Cancel the current user's subscription at the end of the billing period."""
    result = await engine.cancel_subscription(user_id, at_period_end=True)
    logger.info(f"User {user_id} requested cancellation; status now {result.status}")
    return result
