"""
Shared Type Definitions for Lambda Handlers.

Row shapes for the subscription table and the small value types passed
between the billing reconciliation components.
"""

from dataclasses import dataclass, field
from typing import Optional, TypedDict


class SubscriptionItem(TypedDict, total=False):
    """Row of the user subscriptions table (one per user)."""

    user_id: str
    stripe_customer_id: str
    stripe_subscription_id: str
    product_id: str
    plan: str
    plan_name: str
    status: str
    current_period_end: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class BillingEvent:
    """A verified, fresh webhook event envelope."""

    event_id: str
    event_type: str
    created_at: int
    payload: dict = field(default_factory=dict)
    livemode: bool = False

    @property
    def customer_id(self) -> Optional[str]:
        customer = self.payload.get("customer")
        if isinstance(customer, dict):
            return customer.get("id")
        return customer


@dataclass(frozen=True)
class PlanInfo:
    """Plan a Stripe product maps to."""

    product_id: str
    name: str
    tier: str
    monthly_price_id: Optional[str] = None


@dataclass(frozen=True)
class UserIdentity:
    """Internal user resolved from a Stripe customer."""

    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
