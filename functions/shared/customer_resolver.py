"""
Stripe customer -> internal user resolution.

Email is the join key between Stripe customers and users. Every "not found"
along the way is a soft failure: it is logged and None is returned so the
webhook can acknowledge the event (deleted users, test customers and signup
races all produce events we cannot apply). Storage errors and transient
Stripe errors propagate.
"""

import logging
import os

import stripe
from boto3.dynamodb.conditions import Key

from .aws_clients import get_dynamodb
from .logging_utils import mask_email
from .types import UserIdentity

logger = logging.getLogger(__name__)

USERS_TABLE = os.environ.get("USERS_TABLE", "chat-users")
EMAIL_INDEX = "email-lower-index"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def resolve_user(customer_id: str | None = None, email: str | None = None) -> UserIdentity | None:
    """Resolve an internal user from a Stripe customer id or an email.

    Args:
        customer_id: Stripe customer id, used when no email is at hand
        email: Email attached to the event (skips the Stripe lookup)

    Returns:
        UserIdentity, or None when any step finds nothing
    """
    if not email:
        if not customer_id:
            logger.warning("Cannot resolve user: event has neither customer nor email")
            return None
        email = fetch_customer_email(customer_id)
        if not email:
            return None

    user_id = find_user_id_by_email(email)
    if not user_id:
        logger.warning(f"No user found for email {mask_email(email)} (customer={customer_id})")
        return None

    user = get_user(user_id)
    if not user:
        logger.warning(f"User {user_id} matched by email but has no identity record")
    return user


def fetch_customer_email(customer_id: str) -> str | None:
    """Fetch a customer's email from Stripe (None if missing or deleted)."""
    try:
        customer = stripe.Customer.retrieve(customer_id)
    except stripe.InvalidRequestError as e:
        if getattr(e, "code", None) == "resource_missing":
            logger.warning(f"Stripe customer {customer_id} not found")
            return None
        raise

    if customer.get("deleted"):
        logger.warning(f"Stripe customer {customer_id} is deleted")
        return None

    email = customer.get("email")
    if not email:
        logger.warning(f"Stripe customer {customer_id} has no email")
        return None
    return email


def find_user_id_by_email(email: str) -> str | None:
    """Case-insensitive user lookup via the email-lower GSI."""
    table = get_dynamodb().Table(USERS_TABLE)
    response = table.query(
        IndexName=EMAIL_INDEX,
        KeyConditionExpression=Key("email_lower").eq(normalize_email(email)),
    )
    items = response.get("Items", [])
    if not items:
        return None
    if len(items) > 1:
        logger.warning(
            f"{len(items)} users share email {mask_email(email)}, using {items[0]['user_id']}"
        )
    return items[0]["user_id"]


def get_user(user_id: str) -> UserIdentity | None:
    """Load the full user identity by id."""
    table = get_dynamodb().Table(USERS_TABLE)
    item = table.get_item(Key={"user_id": user_id}).get("Item")
    if not item:
        return None
    return UserIdentity(
        user_id=item["user_id"],
        email=item.get("email"),
        display_name=item.get("display_name"),
    )
