"""Shared billing utilities for Stripe-related operations."""

import json
import logging
import os
import time

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager

logger = logging.getLogger(__name__)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes


def _read_secret(secret_arn: str, json_field: str) -> str | None:
    """Read a secret that is either raw text or JSON with `json_field`."""
    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or None
    return secret_value or None


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Return (api_key, webhook_secret).

    Secrets Manager ARNs take precedence over the plain STRIPE_SECRET_KEY /
    STRIPE_WEBHOOK_SECRET environment variables. The webhook secret may be
    None, which puts the webhook into unverified mode.
    """
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = None
    webhook_secret = None

    if STRIPE_SECRET_ARN:
        api_key = _read_secret(STRIPE_SECRET_ARN, "key")
    if STRIPE_WEBHOOK_SECRET_ARN:
        webhook_secret = _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret")

    api_key = api_key or os.environ.get("STRIPE_SECRET_KEY") or None
    webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET") or None

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def clear_stripe_secrets_cache() -> None:
    """Drop cached secrets. Used in tests and after secret rotation."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0


def expandable_id(value) -> str | None:
    """Return the id of a Stripe field that may be an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return value.get("id")
    except AttributeError:
        return getattr(value, "id", None)


def first_subscription_item(subscription) -> dict:
    """Return items.data[0] of a subscription, or an empty dict."""
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}
