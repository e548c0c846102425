"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Keeps each user's subscription row consistent with Stripe's event stream.
Events can arrive late, twice, or out of order, so every branch either
re-derives state from Stripe's live view (tier arbitration) or applies an
idempotent write (upsert keyed on user_id, delete-if-present).

Responses:
- 200 {"received": true}: processed, soft-skipped or unhandled
- 400: bad signature, malformed payload, stale event
- 500: anything that should make Stripe redeliver later
"""

import base64
import binascii
import logging
import os
from datetime import datetime, timedelta, timezone

import stripe
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.billing_utils import expandable_id, get_stripe_secrets
from shared.constants import ACTIVE_STATUS, BILLING_EVENT_TTL_DAYS, DEPROVISION_STATUSES, PERIOD_LABELS
from shared.customer_resolver import get_user, resolve_user
from shared.errors import BillingError, WebhookRejectedError
from shared.logging_utils import (
    configure_structured_logging,
    log_external_call,
    mask_email,
    set_request_id,
    set_stripe_event,
)
from shared.metrics import emit_webhook_metric
from shared.notifications import send_payment_confirmation
from shared.plan_mapping import load_plan_mapping, monthly_price_for_tier, product_id_for_subscription
from shared.response_utils import error_response, received_response
from shared.subscription_periods import resolve_period_end
from shared.subscription_store import (
    confirm_subscription_active,
    deprovision_user,
    get_subscription_record,
    record_trial_conversion,
    upsert_active_subscription,
)
from shared.tier_arbitration import list_active_subscriptions, select_authoritative_subscription
from shared.types import BillingEvent, PlanInfo
from shared.webhook_auth import authenticate_event

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "chat-billing-events")

# Handler outcomes (metrics dimension and audit status)
PROCESSED = "processed"
SKIPPED = "skipped"
IGNORED = "ignored"

TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - customer.subscription.created/updated: arbitrate tier, upsert or de-provision
    - customer.subscription.deleted: trial conversion or de-provision
    - invoice.paid / invoice.payment_succeeded: confirm active, email receipt
    - invoice.payment_failed, charge.refunded, charge.dispute.created,
      payment_intent.payment_failed, unpaid/expired checkout: de-provision
    - payment_method.attached: informational
    """
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = get_stripe_secrets()
    if not stripe_api_key:
        logger.error("Stripe secret key not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    stripe.api_key = stripe_api_key

    sig_header = _header(event, "stripe-signature")

    try:
        payload = _request_body(event)
        billing_event = authenticate_event(payload, sig_header, webhook_secret)
    except WebhookRejectedError as e:
        emit_webhook_metric("unknown", "rejected")
        return error_response(e.status_code, e.code, e.message)

    event_type = billing_event.event_type
    set_stripe_event(billing_event.event_id, event_type, billing_event.customer_id)
    logger.info(
        f"Processing Stripe event: {event_type} (id={billing_event.event_id}, livemode={billing_event.livemode})"
    )

    try:
        plan_mapping = load_plan_mapping()
        handle = EVENT_HANDLERS.get(event_type)
        if handle is None:
            logger.info(f"Unhandled event type: {event_type}")
            outcome = IGNORED
        else:
            outcome = handle(billing_event.payload, plan_mapping)
    except ClientError as e:
        _record_failure(billing_event, e)
        logger.error(f"Storage error handling {event_type}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except TRANSIENT_STRIPE_ERRORS as e:
        _record_failure(billing_event, e)
        logger.error(f"Transient Stripe error handling {event_type}: {e}")
        return error_response(500, "stripe_error", "Stripe error, please retry")
    except stripe.StripeError as e:
        _record_failure(billing_event, e)
        logger.error(f"Stripe error handling {event_type}: {e}")
        return error_response(500, "stripe_error", "Stripe error")
    except BillingError as e:
        _record_failure(billing_event, e)
        logger.error(f"Billing error handling {event_type}: {e}")
        return error_response(e.status_code, e.code, e.message)
    except Exception as e:
        _record_failure(billing_event, e)
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        return error_response(500, "processing_failed", "Processing failed")

    _record_billing_event(billing_event, outcome)
    emit_webhook_metric(event_type, outcome)
    return received_response()


def _header(event: dict, name: str) -> str | None:
    """Header lookup ignoring case (API Gateway and proxies differ)."""
    for key, value in (event.get("headers") or {}).items():
        if key.lower() == name:
            return value
    return None


def _request_body(event: dict) -> str | bytes:
    body = event.get("body") or ""
    if not event.get("isBase64Encoded"):
        return body
    try:
        return base64.b64decode(body)
    except (binascii.Error, ValueError):
        raise WebhookRejectedError("invalid_payload", "Invalid webhook payload")


# ===========================================
# Billing Event Audit Trail
# ===========================================


def _record_billing_event(event: BillingEvent, status: str, error: str = None):
    """Record the webhook outcome for audit (best-effort).

    Not used for deduplication: every transition is already idempotent.
    """
    try:
        now = datetime.now(timezone.utc)
        get_dynamodb().Table(BILLING_EVENTS_TABLE).put_item(
            Item={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "customer_id": event.customer_id or "unknown",
                "event_created_at": event.created_at,
                "livemode": event.livemode,
                "status": status,
                "error": error,
                "processed_at": now.isoformat(),
                "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
            }
        )
    except Exception as e:
        logger.error(f"Failed to record billing event {event.event_id}: {e}")


def _record_failure(event: BillingEvent, error: Exception):
    _record_billing_event(event, "failed", str(error))
    emit_webhook_metric(event.event_type, "failed")


# ===========================================
# Subscription lifecycle
# ===========================================


def _handle_subscription_changed(subscription: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    """customer.subscription.created / customer.subscription.updated."""
    subscription_id = subscription.get("id")
    customer_id = expandable_id(subscription.get("customer"))
    status = subscription.get("status")
    cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

    logger.info(
        f"Subscription {subscription_id} changed for customer {customer_id}: "
        f"status={status}, cancel_at_period_end={cancel_at_period_end}"
    )

    if status in DEPROVISION_STATUSES:
        user = resolve_user(customer_id=customer_id)
        if not user:
            return SKIPPED
        deprovision_user(user.user_id, f"subscription_{status}")
        return PROCESSED

    if cancel_at_period_end:
        # Access runs until period end; the deleted event does the downgrade
        logger.info(f"Subscription {subscription_id} cancels at period end, keeping current plan")
        return SKIPPED

    if status != ACTIVE_STATUS:
        logger.info(f"Ignoring subscription {subscription_id} with status={status}")
        return SKIPPED

    user = resolve_user(customer_id=customer_id)
    if not user:
        return SKIPPED

    active_subscriptions = list_active_subscriptions(customer_id)
    selected = select_authoritative_subscription(subscription, active_subscriptions, plan_mapping)
    if not selected:
        logger.warning(
            f"Unknown product for subscription {subscription_id} "
            f"({product_id_for_subscription(subscription)}), skipping"
        )
        return SKIPPED

    winner, plan = selected
    period_end = resolve_period_end(winner)
    upsert_active_subscription(
        user_id=user.user_id,
        customer_id=customer_id,
        subscription_id=winner.get("id"),
        plan=plan,
        period_end=period_end,
    )
    return PROCESSED


def _handle_subscription_deleted(subscription: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    """customer.subscription.deleted: trial conversion, otherwise downgrade to free.

    We trust Stripe as source of truth and downgrade whenever a non-trial
    subscription is deleted.
    """
    subscription_id = subscription.get("id")
    customer_id = expandable_id(subscription.get("customer"))
    metadata = subscription.get("metadata") or {}

    logger.info(f"Subscription {subscription_id} deleted for customer {customer_id}")

    if _is_trial_with_target(metadata):
        if _convert_trial(subscription, metadata, plan_mapping):
            return PROCESSED
        logger.warning(f"Trial conversion failed for {subscription_id}, downgrading to free")

    user = resolve_user(customer_id=customer_id)
    if not user:
        return SKIPPED
    deprovision_user(user.user_id, "subscription_deleted")
    return PROCESSED


def _is_trial_with_target(metadata: dict) -> bool:
    return str(metadata.get("is_trial", "")).lower() == "true" and bool(metadata.get("target_plan"))


def _convert_trial(subscription: dict, metadata: dict, plan_mapping: dict[str, PlanInfo]) -> bool:
    """Start the paid subscription a finished trial was sold as.

    The paid subscription's own created/updated events upsert the plan; this
    only creates it at Stripe and logs the conversion.

    Returns:
        True if the paid subscription exists and the conversion is recorded
    """
    trial_id = subscription.get("id")
    customer_id = expandable_id(subscription.get("customer"))
    target_plan = str(metadata.get("target_plan")).lower()

    user = get_user(metadata["user_id"]) if metadata.get("user_id") else None
    if not user:
        user = resolve_user(customer_id=customer_id)
    if not user:
        logger.warning(f"Cannot convert trial {trial_id}: user not found")
        return False

    price_id = monthly_price_for_tier(target_plan, plan_mapping)
    if not price_id:
        logger.warning(f"Cannot convert trial {trial_id}: no monthly price configured for '{target_plan}'")
        return False

    create_kwargs = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "metadata": {"user_id": user.user_id, "converted_from_trial": trial_id},
        "idempotency_key": f"trial-conversion-{trial_id}",
    }
    payment_method = expandable_id(subscription.get("default_payment_method"))
    if payment_method:
        create_kwargs["default_payment_method"] = payment_method

    started = datetime.now(timezone.utc)
    try:
        paid_subscription = stripe.Subscription.create(**create_kwargs)
    except TRANSIENT_STRIPE_ERRORS:
        raise
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "Subscription.create", False, _elapsed_ms(started), str(e))
        return False
    log_external_call(logger, "stripe", "Subscription.create", True, _elapsed_ms(started))

    record_trial_conversion(
        user_id=user.user_id,
        trial_subscription_id=trial_id,
        trial_product_id=product_id_for_subscription(subscription),
        target_plan=target_plan,
        paid_subscription_id=paid_subscription["id"],
    )
    return True


# ===========================================
# Payments
# ===========================================


def _handle_invoice_paid(invoice: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    """invoice.paid / invoice.payment_succeeded: confirm the plan is active.

    Usage limits are left alone: renewal resets belong to the rollover job.
    """
    customer_id = expandable_id(invoice.get("customer"))
    subscription_id = _invoice_subscription_id(invoice)
    amount_paid = invoice.get("amount_paid") or 0

    logger.info(
        f"Invoice {invoice.get('id')} paid for customer {customer_id}, "
        f"subscription={subscription_id}, amount={amount_paid}"
    )

    if not subscription_id:
        logger.info(f"Invoice {invoice.get('id')} is not for a subscription, skipping")
        return SKIPPED

    user = resolve_user(customer_id=customer_id, email=invoice.get("customer_email"))
    if not user:
        return SKIPPED

    record = confirm_subscription_active(user.user_id)
    if not record:
        logger.info(f"No subscription row for {user.user_id} yet, the subscription event will create it")
        return SKIPPED

    recipient = user.email or invoice.get("customer_email")
    if amount_paid > 0 and recipient:
        send_payment_confirmation(
            email=recipient,
            plan_name=record.get("plan_name") or record.get("plan") or "paid",
            period_label=_invoice_period_label(invoice),
            amount=int(amount_paid),
            currency=invoice.get("currency") or "",
        )
    return PROCESSED


def _handle_invoice_payment_failed(invoice: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    customer_id = expandable_id(invoice.get("customer"))
    logger.warning(
        f"Payment failed for invoice {invoice.get('id')} "
        f"(customer {customer_id}, attempt {invoice.get('attempt_count')})"
    )

    user = resolve_user(customer_id=customer_id, email=invoice.get("customer_email"))
    if not user:
        return SKIPPED
    deprovision_user(user.user_id, "payment_failed")
    return PROCESSED


def _handle_charge_refunded(charge: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    """charge.refunded: cancel at Stripe (best-effort) and downgrade."""
    customer_id = expandable_id(charge.get("customer"))
    amount_refunded = charge.get("amount_refunded") or 0

    logger.info(
        f"Charge {charge.get('id')} refunded for customer {customer_id}: "
        f"{amount_refunded} of {charge.get('amount')} {charge.get('currency')}"
    )

    if amount_refunded <= 0:
        return SKIPPED

    email = None if customer_id else (charge.get("billing_details") or {}).get("email")
    user = resolve_user(customer_id=customer_id, email=email)
    if not user:
        return SKIPPED

    record = get_subscription_record(user.user_id)
    if record and record.get("stripe_subscription_id"):
        _cancel_subscription_best_effort(record["stripe_subscription_id"])

    deprovision_user(user.user_id, "refund")
    return PROCESSED


def _cancel_subscription_best_effort(subscription_id: str) -> None:
    """Cancel at Stripe; failures (often "already canceled") are logged only."""
    started = datetime.now(timezone.utc)
    try:
        stripe.Subscription.cancel(subscription_id)
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "Subscription.cancel", False, _elapsed_ms(started), str(e))
        return
    log_external_call(logger, "stripe", "Subscription.cancel", True, _elapsed_ms(started))


def _handle_checkout_session(session: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    """checkout.session.completed / expired: only unpaid or expired sessions matter.

    Paid checkouts are provisioned by the subscription events that follow.
    """
    payment_status = session.get("payment_status")
    status = session.get("status")
    customer_id = expandable_id(session.get("customer"))

    if payment_status != "unpaid" and status != "expired":
        logger.info(
            f"Checkout {session.get('id')} completed (payment_status={payment_status}), "
            f"provisioning handled by subscription events"
        )
        return IGNORED

    email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")
    logger.info(
        f"Checkout {session.get('id')} not paid (payment_status={payment_status}, status={status}) "
        f"for {customer_id or mask_email(email)}"
    )

    user = resolve_user(customer_id=customer_id, email=email)
    if not user:
        return SKIPPED
    deprovision_user(user.user_id, "checkout_expired" if status == "expired" else "checkout_unpaid")
    return PROCESSED


def _handle_payment_intent_failed(intent: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    payment_method = (intent.get("last_payment_error") or {}).get("payment_method") or {}
    if not isinstance(payment_method, dict):
        payment_method = {}
    customer_id = expandable_id(payment_method.get("customer")) or expandable_id(intent.get("customer"))

    logger.warning(f"PaymentIntent {intent.get('id')} failed for customer {customer_id}")

    email = None
    if not customer_id:
        email = (payment_method.get("billing_details") or {}).get("email") or intent.get("receipt_email")
    user = resolve_user(customer_id=customer_id, email=email)
    if not user:
        return SKIPPED
    deprovision_user(user.user_id, "payment_intent_failed")
    return PROCESSED


def _handle_dispute_created(dispute: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    """charge.dispute.created: downgrade immediately."""
    charge = dispute.get("charge")
    logger.warning(
        f"Dispute {dispute.get('id')} created for charge {expandable_id(charge)}: "
        f"{dispute.get('amount')} {dispute.get('currency')} (reason: {dispute.get('reason') or 'not_specified'})"
    )

    if not isinstance(charge, dict) or not charge.get("customer"):
        charge_id = expandable_id(charge)
        if not charge_id:
            logger.warning(f"Dispute {dispute.get('id')} has no charge, skipping")
            return SKIPPED
        charge = stripe.Charge.retrieve(charge_id)

    customer_id = expandable_id(charge.get("customer"))
    email = None if customer_id else (charge.get("billing_details") or {}).get("email")
    user = resolve_user(customer_id=customer_id, email=email)
    if not user:
        return SKIPPED
    deprovision_user(user.user_id, "dispute")
    return PROCESSED


def _handle_payment_method_attached(payment_method: dict, plan_mapping: dict[str, PlanInfo]) -> str:
    logger.info(
        f"Payment method {payment_method.get('id')} attached to customer "
        f"{expandable_id(payment_method.get('customer'))}"
    )
    return IGNORED


# ===========================================
# Helpers
# ===========================================


def _invoice_subscription_id(invoice: dict) -> str | None:
    subscription_id = expandable_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return expandable_id(details.get("subscription"))


def _invoice_period_label(invoice: dict) -> str:
    for line in (invoice.get("lines") or {}).get("data") or []:
        recurring = (line.get("price") or {}).get("recurring") or line.get("plan") or {}
        interval = recurring.get("interval")
        if interval:
            count = recurring.get("interval_count") or 1
            label = PERIOD_LABELS.get(interval, interval.title())
            return label if count == 1 else f"Every {count} {interval}s"
    return "Subscription"


def _elapsed_ms(started: datetime) -> float:
    return (datetime.now(timezone.utc) - started).total_seconds() * 1000


EVENT_HANDLERS = {
    "customer.subscription.created": _handle_subscription_changed,
    "customer.subscription.updated": _handle_subscription_changed,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.paid": _handle_invoice_paid,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_payment_failed,
    "charge.refunded": _handle_charge_refunded,
    "checkout.session.completed": _handle_checkout_session,
    "checkout.session.expired": _handle_checkout_session,
    "payment_intent.payment_failed": _handle_payment_intent_failed,
    "charge.dispute.created": _handle_dispute_created,
    "payment_method.attached": _handle_payment_method_attached,
}
