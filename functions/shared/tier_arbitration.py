"""
Tier arbitration across a customer's concurrently active subscriptions.

A customer can briefly hold two active subscriptions (mid-upgrade). The
recorded plan must follow the best tier held, re-derived from Stripe's live
list each time, so the result does not depend on webhook delivery order.
"""

import logging

import stripe

from .billing_utils import expandable_id
from .constants import ACTIVE_STATUS, ACTIVE_SUBSCRIPTIONS_LIMIT
from .plan_mapping import plan_for_subscription, product_id_for_subscription, tier_rank
from .types import PlanInfo

logger = logging.getLogger(__name__)


def list_active_subscriptions(customer_id: str) -> list:
    """Fetch the customer's currently active subscriptions from Stripe."""
    response = stripe.Subscription.list(
        customer=customer_id,
        status=ACTIVE_STATUS,
        limit=ACTIVE_SUBSCRIPTIONS_LIMIT,
    )
    return list(response.get("data") or [])


def select_authoritative_subscription(
    trigger,
    active_subscriptions: list,
    mapping: dict[str, PlanInfo],
):
    """Pick the highest-tier subscription among the active ones.

    Args:
        trigger: Subscription from the event being processed
        active_subscriptions: Live active subscriptions for the customer
        mapping: Product plan mapping for this invocation

    Returns:
        (subscription, PlanInfo) for the winner, or None when no candidate
        maps to a known product
    """
    candidates = list(active_subscriptions)
    trigger_id = trigger.get("id")
    listed_ids = {s.get("id") for s in candidates}
    if trigger.get("status") == ACTIVE_STATUS and trigger_id and trigger_id not in listed_ids:
        # The live list can lag behind the event that announced the subscription,
        # but a late event must not revive one that has since been deleted
        live = _retrieve_if_active(trigger_id)
        if live is not None:
            candidates.append(live)

    best = None
    best_key = None
    for subscription in candidates:
        plan = plan_for_subscription(subscription, mapping)
        if not plan:
            logger.warning(
                f"Subscription {subscription.get('id')} has unknown product "
                f"{product_id_for_subscription(subscription)}, ignoring for arbitration"
            )
            continue

        key = (
            tier_rank(plan.tier),
            subscription.get("id") == trigger_id,
            _period_end_hint(subscription),
        )
        if best_key is None or key > best_key:
            best = (subscription, plan)
            best_key = key

    if best and len(candidates) > 1:
        logger.info(
            f"Arbitrated {len(candidates)} active subscriptions for customer "
            f"{expandable_id(trigger.get('customer'))}: {best[0].get('id')} ({best[1].tier}) wins"
        )
    return best


def _period_end_hint(subscription) -> int:
    value = subscription.get("current_period_end")
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _retrieve_if_active(subscription_id: str):
    """Re-read one subscription from Stripe; None unless it is still active."""
    try:
        subscription = stripe.Subscription.retrieve(subscription_id)
    except stripe.InvalidRequestError as e:
        if getattr(e, "code", None) == "resource_missing":
            logger.info(f"Subscription {subscription_id} no longer exists, excluding from arbitration")
            return None
        raise

    if subscription.get("status") != ACTIVE_STATUS:
        logger.info(
            f"Subscription {subscription_id} is now {subscription.get('status')}, "
            f"ignoring the event's stale active status"
        )
        return None
    return subscription
