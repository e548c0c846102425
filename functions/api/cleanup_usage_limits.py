"""
Usage Limits Rollover - Scheduled Lambda (hourly)

Deletes usage limit rows whose period_end has passed, so the chat service
starts a fresh period (and recomputes limits from the current plan) on the
user's next request. Subscription rows are never touched here.
"""

import logging
import os
from datetime import datetime, timezone

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.logging_utils import configure_structured_logging
from shared.metrics import emit_metric

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

USAGE_LIMITS_TABLE = os.environ.get("USAGE_LIMITS_TABLE", "chat-usage-limits")


def handler(event, context):
    """
    Lambda handler for expiring usage limit periods.

    Scans for rows with period_end < now and deletes each one, conditional on
    period_end being unchanged (a concurrent period reset wins).
    """
    configure_structured_logging()

    table = get_dynamodb().Table(USAGE_LIMITS_TABLE)
    now_iso = datetime.now(timezone.utc).isoformat()

    scanned = 0
    deleted = 0
    errors = 0

    scan_kwargs = {
        "FilterExpression": Attr("period_end").lt(now_iso),
        "ProjectionExpression": "user_id, period_end",
    }

    while True:
        response = table.scan(**scan_kwargs)
        items = response.get("Items", [])
        scanned += response.get("ScannedCount", len(items))

        for item in items:
            user_id = item["user_id"]
            try:
                table.delete_item(
                    Key={"user_id": user_id},
                    ConditionExpression=Attr("period_end").eq(item["period_end"]),
                )
                deleted += 1
            except ClientError as e:
                if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                    logger.debug(f"Usage period for {user_id} was reset concurrently")
                else:
                    logger.error(f"Error expiring usage limits for {user_id}: {e}")
                    errors += 1

        if "LastEvaluatedKey" not in response:
            break
        scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    logger.info(f"Usage limits rollover complete: scanned={scanned}, deleted={deleted}, errors={errors}")
    emit_metric("UsageLimitsExpired", value=deleted)

    return {
        "statusCode": 200,
        "deleted_count": deleted,
        "scanned_count": scanned,
        "errors": errors,
        "timestamp": now_iso,
    }
