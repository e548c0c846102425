"""
Billing period end resolution.

Fallback chain: the event's own current_period_end, then a fresh retrieve of
the subscription (webhook payloads can be partial snapshots), then
created + interval_count x interval from the price's recurring config.
If all of that fails the invocation fails: a record must never be written
with an invalid expiry.
"""

import calendar
import logging
from datetime import datetime, timedelta, timezone

import stripe

from .billing_utils import first_subscription_item
from .constants import SUPPORTED_INTERVALS
from .errors import PeriodResolutionError

logger = logging.getLogger(__name__)


def resolve_period_end(subscription) -> datetime:
    """Return the authoritative end of the current billing period (UTC).

    Raises:
        PeriodResolutionError: no method produced a valid timestamp
    """
    subscription_id = subscription.get("id")

    timestamp = _period_end_timestamp(subscription)
    if timestamp is not None:
        return _from_timestamp(timestamp, subscription_id)

    source = subscription
    if subscription_id:
        logger.info(f"current_period_end missing for {subscription_id}, re-fetching subscription")
        refreshed = stripe.Subscription.retrieve(subscription_id)
        timestamp = _period_end_timestamp(refreshed)
        if timestamp is not None:
            return _from_timestamp(timestamp, subscription_id)
        if _recurring(refreshed):
            source = refreshed

    period_end = derive_period_end(source)
    logger.info(f"Derived current_period_end for {subscription_id} from created + interval: {period_end.isoformat()}")
    return period_end


def derive_period_end(subscription) -> datetime:
    """created + interval_count x interval, from the first item's price."""
    subscription_id = subscription.get("id")
    created = subscription.get("created")
    if not _is_timestamp(created):
        raise PeriodResolutionError(subscription_id, "no created timestamp")

    recurring = _recurring(subscription)
    if not recurring:
        raise PeriodResolutionError(subscription_id, "no recurring price configuration")

    interval = recurring.get("interval")
    if interval not in SUPPORTED_INTERVALS:
        raise PeriodResolutionError(subscription_id, f"unsupported interval '{interval}'")

    count = recurring.get("interval_count")
    if count is None:
        count = 1
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise PeriodResolutionError(subscription_id, f"invalid interval_count '{count}'")

    start = _from_timestamp(created, subscription_id)
    try:
        return add_interval(start, interval, count)
    except (ValueError, OverflowError) as e:
        raise PeriodResolutionError(subscription_id, f"period end out of range: {e}") from e


def add_interval(start: datetime, interval: str, count: int = 1) -> datetime:
    """Add count x interval to start using calendar months for month/year.

    Month arithmetic clamps to the last day of the target month
    (Jan 31 + 1 month = Feb 28/29).
    """
    if interval == "day":
        return start + timedelta(days=count)
    if interval == "week":
        return start + timedelta(weeks=count)
    if interval == "month":
        return _add_months(start, count)
    if interval == "year":
        return _add_months(start, 12 * count)
    raise ValueError(f"Unsupported interval: {interval}")


def _add_months(start: datetime, months: int) -> datetime:
    years, month_index = divmod(start.month - 1 + months, 12)
    year = start.year + years
    month = month_index + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _period_end_timestamp(subscription) -> int | None:
    value = subscription.get("current_period_end")
    if _is_timestamp(value):
        return value
    # Newer API versions carry the period on the subscription item
    value = first_subscription_item(subscription).get("current_period_end")
    if _is_timestamp(value):
        return value
    return None


def _recurring(subscription) -> dict | None:
    price = first_subscription_item(subscription).get("price") or {}
    return price.get("recurring") or None


def _is_timestamp(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _from_timestamp(value: int, subscription_id: str | None) -> datetime:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise PeriodResolutionError(subscription_id, f"invalid timestamp {value}") from e
