"""
Webhook event authentication.

Verifies the Stripe signature (when a signing secret is configured), parses
the event envelope and rejects events older than the replay window. This is
a pure gate: apart from logging and a metric it has no side effects.
"""

import json
import logging
import time

import stripe

from .constants import MAX_EVENT_AGE_SECONDS
from .errors import WebhookRejectedError
from .metrics import emit_metric
from .types import BillingEvent

logger = logging.getLogger(__name__)


def authenticate_event(
    payload: str | bytes,
    sig_header: str | None,
    webhook_secret: str | None,
    now: float | None = None,
) -> BillingEvent:
    """Validate an inbound webhook and return the typed event.

    Args:
        payload: Raw request body, exactly as received
        sig_header: Value of the Stripe-Signature header
        webhook_secret: Signing secret, or None for unverified mode
        now: Processing time (epoch seconds), defaults to time.time()

    Raises:
        WebhookRejectedError: signature, payload or freshness check failed
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookRejectedError("invalid_payload", "Invalid webhook payload")

    now = time.time() if now is None else now

    if webhook_secret:
        if not sig_header:
            logger.warning("Missing Stripe signature")
            raise WebhookRejectedError("missing_signature", "Missing Stripe signature")
        try:
            # Signature only; a genuine but old delivery is reported as stale below
            stripe.Webhook.construct_event(payload, sig_header, webhook_secret, tolerance=None)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid Stripe signature: {e}")
            raise WebhookRejectedError("invalid_signature", "Invalid signature")
        except ValueError as e:
            logger.warning(f"Unparseable webhook payload: {e}")
            raise WebhookRejectedError("invalid_payload", "Invalid webhook payload")
    else:
        logger.warning(
            "Processing unverified webhook: no signing secret configured",
            extra={"insecure_mode": True},
        )
        emit_metric("UnverifiedWebhook")

    event = parse_event(payload)

    signed_at = _signature_timestamp(sig_header) if webhook_secret else None
    if signed_at is not None and now - signed_at > MAX_EVENT_AGE_SECONDS:
        logger.warning(
            f"Rejecting replayed delivery of {event.event_id} ({event.event_type}): "
            f"signed {int(now - signed_at)}s ago"
        )
        raise WebhookRejectedError("stale_event", "Event too old")

    age = now - event.created_at
    if age > MAX_EVENT_AGE_SECONDS:
        logger.warning(
            f"Rejecting stale event {event.event_id} ({event.event_type}): "
            f"age {int(age)}s exceeds {MAX_EVENT_AGE_SECONDS}s"
        )
        raise WebhookRejectedError("stale_event", "Event too old")

    return event


def parse_event(payload: str) -> BillingEvent:
    """Parse a Stripe event envelope {id, type, created, data: {object}}."""
    try:
        envelope = json.loads(payload)
    except (TypeError, json.JSONDecodeError):
        raise WebhookRejectedError("invalid_payload", "Invalid webhook payload")

    if not isinstance(envelope, dict):
        raise WebhookRejectedError("invalid_payload", "Invalid webhook payload")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    created = envelope.get("created")
    data_object = (envelope.get("data") or {}).get("object")

    if (
        not isinstance(event_id, str)
        or not isinstance(event_type, str)
        or isinstance(created, bool)
        or not isinstance(created, int)
        or not isinstance(data_object, dict)
    ):
        logger.warning(f"Malformed event envelope (id={event_id}, type={event_type})")
        raise WebhookRejectedError("invalid_payload", "Invalid webhook payload")

    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        created_at=created,
        payload=data_object,
        livemode=bool(envelope.get("livemode", False)),
    )


def _signature_timestamp(sig_header: str) -> int | None:
    """Read t= from a Stripe-Signature header ("t=...,v1=...")."""
    for item in sig_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None
