"""
Centralized AWS client factory with lazy initialization.

Reduces cold start overhead by deferring boto3 client/resource creation
until first use; clients are then reused for the life of the container.
"""

import os

_dynamodb = None
_clients = {}


def get_dynamodb():
    """Get DynamoDB resource, creating it lazily on first use."""
    global _dynamodb
    if _dynamodb is None:
        import boto3
        endpoint_url = os.environ.get("DYNAMODB_ENDPOINT_URL") or None
        _dynamodb = boto3.resource("dynamodb", endpoint_url=endpoint_url)
    return _dynamodb


def _get_client(service_name: str):
    client = _clients.get(service_name)
    if client is None:
        import boto3
        client = boto3.client(service_name)
        _clients[service_name] = client
    return client


def get_secretsmanager():
    """Stripe API key and signing secret."""
    return _get_client("secretsmanager")


def get_ses():
    """Payment confirmation emails."""
    return _get_client("ses")


def get_cloudwatch():
    """Webhook outcome metrics."""
    return _get_client("cloudwatch")


def reset_clients():
    """Reset all cached clients. Used in tests for clean state."""
    global _dynamodb
    _dynamodb = None
    _clients.clear()
