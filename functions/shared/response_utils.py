"""
Response utilities for Lambda handlers.

Webhook responses are consumed by Stripe, not browsers, so no CORS headers
are attached.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Optional


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal types from DynamoDB."""
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def json_response(
    status_code: int, body: dict, headers: Optional[dict] = None
) -> dict:
    """
    Create standardized JSON response.

    Args:
        status_code: HTTP status code
        body: Response body dictionary
        headers: Optional additional headers

    Returns:
        Lambda response dictionary
    """
    response_headers = {"Content-Type": "application/json"}
    if headers:
        response_headers.update(headers)

    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def received_response(**extra: Any) -> dict:
    """Acknowledge a webhook: 200 {"received": true, ...}."""
    return json_response(200, {"received": True, **extra})


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> dict:
    """
    Create an error response.

    Body is {"error": message, "code": code}; the provider only inspects the
    status code, the body is for humans reading the delivery log.

    Args:
        status_code: HTTP status code
        code: Machine-readable error code (snake_case)
        message: Human-readable error message
        details: Optional additional error details

    Returns:
        Lambda response dict
    """
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return json_response(status_code, body)
