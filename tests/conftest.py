"""
Shared pytest fixtures for billing webhook tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    try:
        from shared.aws_clients import reset_clients
        reset_clients()
    except ImportError:
        pass


@pytest.fixture(autouse=True)
def reset_stripe_secrets_cache():
    """Drop cached Stripe secrets so each test sees its own environment."""
    from shared.billing_utils import clear_stripe_secrets_cache

    clear_stripe_secrets_cache()
    yield
    clear_stripe_secrets_cache()


@pytest.fixture
def stripe_env(monkeypatch):
    """Stripe API key and webhook signing secret from plain env vars."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", STRIPE_API_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    dynamodb.create_table(
        TableName="chat-product-plans",
        KeySchema=[{"AttributeName": "stripe_product_id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "stripe_product_id", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    # Users table with case-insensitive email lookup
    dynamodb.create_table(
        TableName="chat-users",
        KeySchema=[{"AttributeName": "user_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "user_id", "AttributeType": "S"},
            {"AttributeName": "email_lower", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-lower-index",
                "KeySchema": [{"AttributeName": "email_lower", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    for table_name in ("chat-user-subscriptions", "chat-usage-limits"):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[{"AttributeName": "user_id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "user_id", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )

    dynamodb.create_table(
        TableName="chat-trial-conversions",
        KeySchema=[
            {"AttributeName": "user_id", "KeyType": "HASH"},
            {"AttributeName": "trial_subscription_id", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "user_id", "AttributeType": "S"},
            {"AttributeName": "trial_subscription_id", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="chat-billing-events",
        KeySchema=[
            {"AttributeName": "event_id", "KeyType": "HASH"},
            {"AttributeName": "event_type", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "event_id", "AttributeType": "S"},
            {"AttributeName": "event_type", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def seeded_plans(mock_dynamodb):
    """Product plans: one pro and one ultra product, plus a legacy row."""
    table = mock_dynamodb.Table("chat-product-plans")
    table.put_item(
        Item={
            "stripe_product_id": "prod_pro",
            "plan_name": "Pro",
            "plan_tier": "pro",
            "monthly_price_id": "price_pro_monthly",
        }
    )
    table.put_item(
        Item={
            "stripe_product_id": "prod_ultra",
            "plan_name": "Ultra",
            "plan_tier": "ultra",
            "monthly_price_id": "price_ultra_monthly",
        }
    )
    table.put_item(
        Item={
            "stripe_product_id": "prod_legacy",
            "plan_name": "Legacy",
            "plan_tier": "enterprise",
        }
    )
    return table


@pytest.fixture
def seeded_user(mock_dynamodb):
    """A registered user whose Stripe customer is cus_123."""
    table = mock_dynamodb.Table("chat-users")
    table.put_item(
        Item={
            "user_id": "user_abc",
            "email": "Alice@Example.com",
            "email_lower": "alice@example.com",
            "display_name": "Alice",
        }
    )
    return table


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-test",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header value for payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_stripe_event(event_type: str, data_object: dict, event_id: str = "evt_test_1", created: int = None) -> dict:
    """Stripe event envelope around data_object."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "livemode": False,
        "data": {"object": data_object},
    }


def make_subscription(
    subscription_id: str = "sub_pro",
    product: str = "prod_pro",
    status: str = "active",
    customer: str = "cus_123",
    current_period_end: int = 1_900_000_000,
    interval: str = "month",
    **extra,
) -> dict:
    """Minimal Stripe subscription object."""
    subscription = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "created": 1_700_000_000,
        "current_period_end": current_period_end,
        "metadata": {},
        "items": {
            "data": [
                {
                    "id": f"si_{subscription_id}",
                    "price": {
                        "id": f"price_{product}",
                        "product": product,
                        "recurring": {"interval": interval, "interval_count": 1},
                    },
                }
            ]
        },
    }
    subscription.update(extra)
    return subscription


@pytest.fixture
def webhook_request(api_gateway_event):
    """Build a signed API Gateway event for a Stripe event envelope."""

    def _build(stripe_event: dict, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> dict:
        payload = json.dumps(stripe_event)
        event = dict(api_gateway_event)
        event["headers"] = {"Stripe-Signature": sign_payload(payload, secret, timestamp)}
        event["body"] = payload
        return event

    return _build
