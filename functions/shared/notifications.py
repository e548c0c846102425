"""
Transactional billing emails via SES.

Sending is best-effort: it runs after the state write it reports on, and a
failure is logged and swallowed so an email outage never makes Stripe
redeliver the webhook.
"""

import logging
import os
from html import escape

from .aws_clients import get_ses
from .logging_utils import mask_email

logger = logging.getLogger(__name__)

EMAIL_SENDER = os.environ.get("EMAIL_SENDER", "billing@example.com")
APP_URL = os.environ.get("APP_URL", "https://app.example.com")

# Currencies without minor units (amounts from Stripe are already whole units)
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


def format_amount(amount: int, currency: str) -> str:
    """Format a Stripe minor-unit amount, e.g. (1999, "eur") -> "19.99 EUR"."""
    currency = (currency or "").lower()
    if currency in ZERO_DECIMAL_CURRENCIES:
        return f"{amount} {currency.upper()}"
    return f"{amount / 100:.2f} {currency.upper()}"


def send_payment_confirmation(
    email: str,
    plan_name: str,
    period_label: str,
    amount: int,
    currency: str,
) -> bool:
    """Send the "payment received" email.

    Args:
        email: Recipient
        plan_name: Display name of the plan, e.g. "Pro"
        period_label: "Monthly", "Yearly", ...
        amount: Amount paid in minor units
        currency: ISO currency code

    Returns:
        True if SES accepted the message, False otherwise (never raises)
    """
    price = format_amount(amount, currency)
    safe_plan = escape(plan_name)
    safe_period = escape(period_label)
    try:
        get_ses().send_email(
            Source=EMAIL_SENDER,
            Destination={"ToAddresses": [email]},
            Message={
                "Subject": {
                    "Data": f"Payment received for your {plan_name} plan",
                    "Charset": "UTF-8",
                },
                "Body": {
                    "Html": {
                        "Data": (
                            '<html><body style="font-family:system-ui,sans-serif;max-width:600px;margin:0 auto;padding:20px;">'
                            '<h1 style="color:#1e293b;">Thank you for your payment</h1>'
                            f'<p style="color:#475569;font-size:16px;">Your <strong>{safe_plan}</strong> plan '
                            f"({safe_period}) is active.</p>"
                            f'<p style="color:#475569;font-size:16px;">Amount charged: <strong>{escape(price)}</strong></p>'
                            f'<a href="{escape(APP_URL)}" '
                            'style="display:inline-block;background:#3b82f6;color:white;padding:12px 24px;text-decoration:none;border-radius:6px;margin:20px 0;">'
                            "Start chatting</a>"
                            "</body></html>"
                        ),
                        "Charset": "UTF-8",
                    },
                    "Text": {
                        "Data": (
                            f"Thank you for your payment\n\n"
                            f"Your {plan_name} plan ({period_label}) is active.\n"
                            f"Amount charged: {price}\n\n"
                            f"{APP_URL}"
                        ),
                        "Charset": "UTF-8",
                    },
                },
            },
        )
        logger.info(f"Payment confirmation sent to {mask_email(email)}")
        return True
    except Exception as e:
        logger.error(f"Failed to send payment confirmation email: {e}")
        return False
