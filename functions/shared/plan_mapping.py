"""
Product to plan mapping.

The product plans table is the single source of truth for which Stripe
product grants which tier. It is read once per invocation and passed down;
nothing here caches it at module level, so a table edit takes effect on the
next webhook without a deploy.
"""

import logging
import os

from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .billing_utils import expandable_id, first_subscription_item
from .constants import TIER_ORDER
from .errors import PlanMappingUnavailableError
from .types import PlanInfo

logger = logging.getLogger(__name__)

PRODUCT_PLANS_TABLE = os.environ.get("PRODUCT_PLANS_TABLE", "chat-product-plans")


def load_plan_mapping() -> dict[str, PlanInfo]:
    """Read the whole product plans table.

    Returns:
        Mapping of Stripe product id -> PlanInfo

    Raises:
        PlanMappingUnavailableError: the table could not be read
    """
    table = get_dynamodb().Table(PRODUCT_PLANS_TABLE)
    mapping: dict[str, PlanInfo] = {}
    scan_kwargs = {}

    try:
        while True:
            response = table.scan(**scan_kwargs)
            for item in response.get("Items", []):
                plan = _plan_from_item(item)
                if plan:
                    mapping[plan.product_id] = plan
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
    except ClientError as e:
        logger.error(f"Failed to load product plan mapping: {e}")
        raise PlanMappingUnavailableError() from e

    logger.info(f"Loaded product plan mapping ({len(mapping)} products)")
    return mapping


def _plan_from_item(item: dict) -> PlanInfo | None:
    product_id = item.get("stripe_product_id")
    tier = (item.get("plan_tier") or "").lower()
    if not product_id:
        return None
    if tier not in TIER_ORDER:
        logger.warning(f"Ignoring product {product_id} with unknown tier '{item.get('plan_tier')}'")
        return None
    return PlanInfo(
        product_id=product_id,
        name=item.get("plan_name") or tier.title(),
        tier=tier,
        monthly_price_id=item.get("monthly_price_id") or None,
    )


def tier_rank(tier: str | None) -> int:
    """Position of a tier in free < pro < ultra (unknown tiers rank lowest)."""
    return TIER_ORDER.get(tier or "", -1)


def product_id_for_subscription(subscription) -> str | None:
    """Product id of the subscription's first item."""
    price = first_subscription_item(subscription).get("price") or {}
    return expandable_id(price.get("product"))


def plan_for_subscription(subscription, mapping: dict[str, PlanInfo]) -> PlanInfo | None:
    """Look up the plan of a subscription, None for unmapped products."""
    product_id = product_id_for_subscription(subscription)
    if not product_id:
        return None
    return mapping.get(product_id)


def monthly_price_for_tier(tier: str, mapping: dict[str, PlanInfo]) -> str | None:
    """Monthly price id configured for a tier (used for trial conversion)."""
    for plan in sorted(mapping.values(), key=lambda p: p.product_id):
        if plan.tier == tier and plan.monthly_price_id:
            return plan.monthly_price_id
    return None
