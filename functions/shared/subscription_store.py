"""
Subscription state writes.

Two states per user: Free (no subscription row) and Active (row present,
status "active"). Rows are keyed on user_id, so activation is an upsert and
de-provisioning is a delete; both are safe to replay.

Usage limits are deleted only by deprovision_user(). Activation and renewal
never touch them: the usage-period rollover job owns their reset, and
writing them here would race with it.
"""

import logging
import os
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import ACTIVE_STATUS
from .metrics import emit_metric
from .types import PlanInfo, SubscriptionItem

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "chat-user-subscriptions")
USAGE_LIMITS_TABLE = os.environ.get("USAGE_LIMITS_TABLE", "chat-usage-limits")
TRIAL_CONVERSIONS_TABLE = os.environ.get("TRIAL_CONVERSIONS_TABLE", "chat-trial-conversions")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def upsert_active_subscription(
    user_id: str,
    customer_id: str | None,
    subscription_id: str,
    plan: PlanInfo,
    period_end: datetime,
) -> None:
    """Create or overwrite the user's subscription row as active."""
    now = _now_iso()
    table = get_dynamodb().Table(SUBSCRIPTIONS_TABLE)
    table.update_item(
        Key={"user_id": user_id},
        UpdateExpression=(
            "SET stripe_customer_id = :cust, "
            "stripe_subscription_id = :sub, "
            "product_id = :product, "
            "#plan = :plan, "
            "plan_name = :plan_name, "
            "#status = :status, "
            "current_period_end = :period_end, "
            "updated_at = :now, "
            "created_at = if_not_exists(created_at, :now)"
        ),
        ExpressionAttributeNames={"#plan": "plan", "#status": "status"},
        ExpressionAttributeValues={
            ":cust": customer_id,
            ":sub": subscription_id,
            ":product": plan.product_id,
            ":plan": plan.tier,
            ":plan_name": plan.name,
            ":status": ACTIVE_STATUS,
            ":period_end": period_end.isoformat(),
            ":now": now,
        },
    )
    logger.info(
        f"Upserted subscription for {user_id}: plan={plan.tier} ({plan.name}), "
        f"subscription={subscription_id}, period_end={period_end.isoformat()}"
    )


def confirm_subscription_active(user_id: str) -> SubscriptionItem | None:
    """Mark an existing subscription row active after a successful payment.

    Returns:
        The updated row, or None if the user has no subscription row yet
    """
    table = get_dynamodb().Table(SUBSCRIPTIONS_TABLE)
    try:
        response = table.update_item(
            Key={"user_id": user_id},
            UpdateExpression="SET #status = :status, updated_at = :now",
            ConditionExpression="attribute_exists(user_id)",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={":status": ACTIVE_STATUS, ":now": _now_iso()},
            ReturnValues="ALL_NEW",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return None
        raise
    return response.get("Attributes")


def get_subscription_record(user_id: str) -> SubscriptionItem | None:
    table = get_dynamodb().Table(SUBSCRIPTIONS_TABLE)
    return table.get_item(Key={"user_id": user_id}).get("Item")


def get_usage_limits_updated_at(user_id: str) -> str | None:
    """Diagnostic read of the usage limits row's updated_at."""
    table = get_dynamodb().Table(USAGE_LIMITS_TABLE)
    item = table.get_item(
        Key={"user_id": user_id},
        ProjectionExpression="updated_at",
    ).get("Item")
    return item.get("updated_at") if item else None


def deprovision_user(user_id: str, reason: str) -> None:
    """Revert a user to Free: delete the subscription and usage limits rows.

    Deleting rows that do not exist is a no-op, so replays are harmless.

    Args:
        user_id: Internal user id
        reason: Short label for logs/metrics (e.g. "refund", "dispute")
    """
    usage_updated_at = get_usage_limits_updated_at(user_id)

    get_dynamodb().Table(SUBSCRIPTIONS_TABLE).delete_item(Key={"user_id": user_id})
    get_dynamodb().Table(USAGE_LIMITS_TABLE).delete_item(Key={"user_id": user_id})

    logger.info(
        f"De-provisioned {user_id} ({reason}): subscription and usage limits removed "
        f"(usage limits last updated {usage_updated_at or 'never'})"
    )
    emit_metric("Deprovisioned", dimensions={"Reason": reason})


def record_trial_conversion(
    user_id: str,
    trial_subscription_id: str,
    trial_product_id: str | None,
    target_plan: str,
    paid_subscription_id: str,
) -> bool:
    """Append a trial conversion row (once per trial subscription).

    Returns:
        True if written, False if this trial was already recorded
    """
    now = _now_iso()
    table = get_dynamodb().Table(TRIAL_CONVERSIONS_TABLE)
    try:
        table.put_item(
            Item={
                "user_id": user_id,
                "trial_subscription_id": trial_subscription_id,
                "trial_product_id": trial_product_id or "unknown",
                "target_plan": target_plan,
                "paid_subscription_id": paid_subscription_id,
                "converted_at": now,
                "created_at": now,
            },
            ConditionExpression="attribute_not_exists(user_id)",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.info(f"Trial conversion for {trial_subscription_id} already recorded")
            return False
        raise
    logger.info(
        f"Recorded trial conversion for {user_id}: {trial_subscription_id} -> "
        f"{paid_subscription_id} ({target_plan})"
    )
    return True
