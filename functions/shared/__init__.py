# Shared utilities package
from .constants import DEPROVISION_STATUSES, TIER_ORDER
from .customer_resolver import resolve_user
from .errors import BillingError, WebhookRejectedError
from .plan_mapping import load_plan_mapping
from .response_utils import error_response, received_response
from .subscription_store import deprovision_user, upsert_active_subscription

__all__ = [
    "TIER_ORDER",
    "DEPROVISION_STATUSES",
    "resolve_user",
    "BillingError",
    "WebhookRejectedError",
    "load_plan_mapping",
    "error_response",
    "received_response",
    "deprovision_user",
    "upsert_active_subscription",
]
