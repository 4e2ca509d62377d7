from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime


class SubscriptionSnapshot(BaseModel):
    """Live subscription state as reported by the processor."""
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    price_id: Optional[str] = None


class CheckoutSession(BaseModel):
    """Processor-hosted checkout session."""
    session_id: str
    redirect_url: Optional[str] = None


class WebhookEvent(BaseModel):
    """Verified processor event."""
    id: str
    type: str
    created: Optional[int] = None
    data_object: Dict[str, Any] = Field(default_factory=dict)


class WebhookOutcome(BaseModel):
    """What the engine did with a delivered event."""
    event_id: str
    event_type: str
    result: str  # applied, skipped, duplicate, ignored, failed
    detail: Optional[str] = None


class PlanOut(BaseModel):
    """Public view of a catalog entry."""
    id: str
    name: str
    description: Optional[str] = None
    billing_period: str = Field(alias="billingPeriod")
    amount: Optional[int] = None
    currency: str = "usd"
    features: List[str] = []

    class Config:
        populate_by_name = True


class CheckoutSessionRequest(BaseModel):
    plan_id: Optional[str] = Field(default=None, alias="planId")

    @field_validator("plan_id", mode="before")
    @classmethod
    def plan_id_as_text(cls, value: Any) -> Optional[str]:
        # Numbers name a plan like any other id; other shapes name none.
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return str(value)
        return value if isinstance(value, str) else None

    class Config:
        populate_by_name = True


class CheckoutSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    checkout_url: Optional[str] = Field(default=None, alias="checkoutUrl")

    class Config:
        populate_by_name = True


class PlanSummary(BaseModel):
    id: Optional[str] = None
    name: str
    billing_period: Optional[str] = Field(default=None, alias="billingPeriod")

    class Config:
        populate_by_name = True


class SubscriptionDetails(BaseModel):
    """Current subscription as returned to the account owner."""
    processor_subscription_id: str = Field(alias="processorSubscriptionId")
    status: str
    current_period_start: Optional[datetime] = Field(default=None, alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(default=False, alias="cancelAtPeriodEnd")
    plan: Optional[PlanSummary] = None

    class Config:
        populate_by_name = True


class NoSubscriptionResponse(BaseModel):
    message: str = "No active subscription found."
    subscription: None = None


class CancelSubscriptionResponse(BaseModel):
    status: str
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    message: Optional[str] = None

    class Config:
        populate_by_name = True


class WebhookAck(BaseModel):
    received: bool = True
