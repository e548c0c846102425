"""
Error types for the billing webhook.

Rejections map to 400, fatal errors to 500. Soft skips are not errors: the
handlers return early and the webhook is acknowledged.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing reconciliation errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class WebhookRejectedError(BillingError):
    """Raised when an inbound event fails signature, payload or freshness checks."""

    def __init__(self, code: str, message: str):
        super().__init__(code=code, message=message, status_code=400)


class PlanMappingUnavailableError(BillingError):
    """Raised when the product plans table cannot be read."""

    def __init__(self, message: str = "Product plan mapping unavailable"):
        super().__init__(code="plan_mapping_unavailable", message=message)


class PeriodResolutionError(BillingError):
    """Raised when no valid billing period end can be determined."""

    def __init__(self, subscription_id: Optional[str], reason: str):
        super().__init__(
            code="period_unresolved",
            message=f"Cannot determine current_period_end for {subscription_id}: {reason}",
            details={"subscription_id": subscription_id},
        )
