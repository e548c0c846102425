"""
Reconcile Subscription - re-derive one user's plan from Stripe.

For support cases where a webhook was lost or permanently failed. Looks up
the user's active Stripe subscriptions, applies the same tier arbitration as
the webhook and then either upserts the winning plan or reverts the user to
free.

Usage (as a Lambda): {"email": "user@example.com"} or {"user_id": "..."}

Usage (run locally):
    PYTHONPATH=functions python3 functions/admin/reconcile_subscription.py --email user@example.com --dry-run
    PYTHONPATH=functions python3 functions/admin/reconcile_subscription.py --user-id u_123
"""

import argparse
import json
import logging

import stripe

from shared.billing_utils import expandable_id, get_stripe_secrets
from shared.customer_resolver import find_user_id_by_email, get_user
from shared.logging_utils import configure_structured_logging, mask_email
from shared.plan_mapping import load_plan_mapping
from shared.subscription_periods import resolve_period_end
from shared.subscription_store import deprovision_user, get_subscription_record, upsert_active_subscription
from shared.tier_arbitration import list_active_subscriptions, select_authoritative_subscription

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

CUSTOMER_LOOKUP_LIMIT = 10


def handler(event, context):
    configure_structured_logging()

    api_key, _ = get_stripe_secrets()
    if not api_key:
        logger.error("Stripe secret key not configured")
        return {"statusCode": 500, "error": "stripe_not_configured"}
    stripe.api_key = api_key

    event = event or {}
    if not event.get("user_id") and not event.get("email"):
        return {"statusCode": 400, "error": "user_id or email is required"}

    return reconcile(
        user_id=event.get("user_id"),
        email=event.get("email"),
        dry_run=bool(event.get("dry_run", False)),
    )


def reconcile(user_id: str = None, email: str = None, dry_run: bool = False) -> dict:
    """Bring one user's subscription row in line with Stripe.

    Returns:
        {statusCode, user_id, action, plan}; action is one of
        "upserted", "deprovisioned", "would_upsert", "would_deprovision"
    """
    if not user_id:
        user_id = find_user_id_by_email(email)
    user = get_user(user_id) if user_id else None
    if not user:
        logger.warning(f"Reconcile: no user for user_id={user_id} email={mask_email(email)}")
        return {"statusCode": 404, "user_id": user_id, "action": "user_not_found", "plan": None}

    plan_mapping = load_plan_mapping()
    customer_ids = _customer_ids_for(user)

    active = []
    for customer_id in customer_ids:
        active.extend(list_active_subscriptions(customer_id))

    selected = select_authoritative_subscription(active[0], active, plan_mapping) if active else None

    if not selected:
        logger.info(
            f"Reconcile {user.user_id}: no active known-tier subscription "
            f"across {len(customer_ids)} customer(s)"
        )
        if not dry_run:
            deprovision_user(user.user_id, "manual_reconcile")
        return {
            "statusCode": 200,
            "user_id": user.user_id,
            "action": "would_deprovision" if dry_run else "deprovisioned",
            "plan": "free",
        }

    winner, plan = selected
    period_end = resolve_period_end(winner)
    customer_id = expandable_id(winner.get("customer"))

    logger.info(
        f"Reconcile {user.user_id}: {winner.get('id')} -> {plan.tier} until {period_end.isoformat()}"
    )
    if not dry_run:
        upsert_active_subscription(
            user_id=user.user_id,
            customer_id=customer_id,
            subscription_id=winner.get("id"),
            plan=plan,
            period_end=period_end,
        )
    return {
        "statusCode": 200,
        "user_id": user.user_id,
        "action": "would_upsert" if dry_run else "upserted",
        "plan": plan.tier,
    }


def _customer_ids_for(user) -> list[str]:
    """Stripe customers for a user: the recorded one, else all matching the email."""
    record = get_subscription_record(user.user_id)
    if record and record.get("stripe_customer_id"):
        return [record["stripe_customer_id"]]
    if not user.email:
        return []
    customers = stripe.Customer.list(email=user.email, limit=CUSTOMER_LOOKUP_LIMIT)
    return [c["id"] for c in customers.get("data") or []]


def main():
    parser = argparse.ArgumentParser(description="Reconcile a user's subscription with Stripe")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", help="User email")
    target.add_argument("--user-id", help="Internal user id")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()

    print(json.dumps(handler({"email": args.email, "user_id": args.user_id, "dry_run": args.dry_run}, None)))


if __name__ == "__main__":
    main()
