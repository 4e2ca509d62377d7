from pydantic import BaseModel
from typing import Optional
from datetime import datetime


# Processor statuses seen so far. Anything else is stored as-is.
KNOWN_SUBSCRIPTION_STATUSES = frozenset({
    "inactive",
    "active",
    "trialing",
    "incomplete",
    "incomplete_expired",
    "past_due",
    "unpaid",
    "canceled",
    "paused",
})

TERMINAL_STATUSES = frozenset({"inactive", "canceled"})


class UserSubscription(BaseModel):
    """Subscription fields of a user document in the users collection."""
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    subscription_status: str = "inactive"  # processor vocabulary, kept open
    active_plan_id: Optional[str] = None
    last_reconciled_at: Optional[int] = None  # unix seconds of newest applied source
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def has_live_subscription(self) -> bool:
        return bool(self.processor_subscription_id) and self.subscription_status not in TERMINAL_STATUSES
