"""
Shared constants for the billing reconciliation service.
"""

# Tier ordering for arbitration (free < pro < ultra).
# Which product maps to which tier lives only in the product plans table.
TIER_ORDER = {"free": 0, "pro": 1, "ultra": 2}

# Webhook anti-replay window (seconds between event creation and processing)
MAX_EVENT_AGE_SECONDS = 300

# The only status this service ever writes to a subscription record
ACTIVE_STATUS = "active"

# Subscription statuses that remove paid entitlement
DEPROVISION_STATUSES = frozenset(
    {
        "paused",
        "canceled",
        "past_due",
        "unpaid",
        "incomplete_expired",
    }
)

# Stripe "list subscriptions" page size used for tier arbitration
ACTIVE_SUBSCRIPTIONS_LIMIT = 100

# Billing events audit rows expire after this many days
BILLING_EVENT_TTL_DAYS = 90

# Stripe recurring intervals supported by period-end derivation
SUPPORTED_INTERVALS = ("day", "week", "month", "year")

# Human readable billing period labels used in emails
PERIOD_LABELS = {
    "day": "Daily",
    "week": "Weekly",
    "month": "Monthly",
    "year": "Yearly",
}
