"""
CloudWatch Metrics Helper

Best-effort custom metrics for the billing webhook. A metrics failure never
fails the Lambda.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from .aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "ChatBilling")


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Args:
        metric_name: Name of the metric
        value: Metric value (default: 1.0)
        unit: Unit of measurement (Count, Seconds, Bytes, etc.)
        dimensions: Optional dimensions for filtering metrics

    Example:
        emit_metric("Deprovisioned", dimensions={"Reason": "refund"})
    """
    try:
        metric_data = {
            "MetricName": metric_name,
            "Value": value,
            "Unit": unit,
            "Timestamp": datetime.now(timezone.utc),
        }

        if dimensions:
            metric_data["Dimensions"] = [
                {"Name": k, "Value": v} for k, v in dimensions.items()
            ]

        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[metric_data],
        )

        logger.debug(
            f"Emitted metric: {metric_name}={value} {unit}",
            extra={"dimensions": dimensions},
        )

    except Exception as e:
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_webhook_metric(event_type: str, outcome: str) -> None:
    """
    Emit a per-event outcome metric.

    Args:
        event_type: Stripe event type
        outcome: 'processed', 'skipped', 'rejected', 'failed'
    """
    emit_metric(
        "WebhookEvents",
        dimensions={"EventType": event_type[:100], "Outcome": outcome},
    )
