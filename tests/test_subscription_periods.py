"""
Tests for billing period end resolution.
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from conftest import make_subscription
from shared.errors import PeriodResolutionError
from shared.subscription_periods import add_interval, derive_period_end, resolve_period_end


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestAddInterval:
    def test_day_and_week(self):
        start = _utc(2026, 1, 1)
        assert add_interval(start, "day", 3) == _utc(2026, 1, 4)
        assert add_interval(start, "week", 2) == _utc(2026, 1, 15)

    def test_month_clamps_to_month_end(self):
        assert add_interval(_utc(2026, 1, 31), "month") == _utc(2026, 2, 28)
        assert add_interval(_utc(2028, 1, 31), "month") == _utc(2028, 2, 29)

    def test_month_crosses_year(self):
        assert add_interval(_utc(2026, 11, 15, 8, 30), "month", 3) == _utc(2027, 2, 15, 8, 30)

    def test_year_from_leap_day(self):
        assert add_interval(_utc(2028, 2, 29), "year") == _utc(2029, 2, 28)

    def test_unknown_interval(self):
        with pytest.raises(ValueError):
            add_interval(_utc(2026, 1, 1), "fortnight")


class TestResolvePeriodEnd:
    def test_uses_subscription_field(self):
        subscription = make_subscription(current_period_end=1_900_000_000)

        with patch("stripe.Subscription.retrieve") as mock_retrieve:
            result = resolve_period_end(subscription)

        assert result == datetime.fromtimestamp(1_900_000_000, tz=timezone.utc)
        mock_retrieve.assert_not_called()

    def test_uses_item_field(self):
        subscription = make_subscription(current_period_end=None)
        subscription["items"]["data"][0]["current_period_end"] = 1_800_000_000

        with patch("stripe.Subscription.retrieve") as mock_retrieve:
            result = resolve_period_end(subscription)

        assert result == datetime.fromtimestamp(1_800_000_000, tz=timezone.utc)
        mock_retrieve.assert_not_called()

    def test_refetches_partial_snapshot(self):
        partial = make_subscription(current_period_end=None)
        full = make_subscription(current_period_end=1_850_000_000)

        with patch("stripe.Subscription.retrieve", return_value=full) as mock_retrieve:
            result = resolve_period_end(partial)

        mock_retrieve.assert_called_once_with("sub_pro")
        assert result == datetime.fromtimestamp(1_850_000_000, tz=timezone.utc)

    def test_derives_from_refetched_recurring_config(self):
        partial = make_subscription(current_period_end=None)
        partial["items"] = {"data": []}
        full = make_subscription(current_period_end=None, interval="year")

        with patch("stripe.Subscription.retrieve", return_value=full):
            result = resolve_period_end(partial)

        # created 2023-11-14T22:13:20Z + 1 year
        assert result == _utc(2024, 11, 14, 22, 13, 20)

    def test_rejects_non_positive_timestamp(self):
        subscription = make_subscription(current_period_end=0)
        subscription["items"]["data"][0]["price"]["recurring"] = None

        with patch("stripe.Subscription.retrieve", return_value=subscription):
            with pytest.raises(PeriodResolutionError):
                resolve_period_end(subscription)


class TestDerivePeriodEnd:
    def test_interval_count(self):
        subscription = make_subscription(current_period_end=None)
        subscription["items"]["data"][0]["price"]["recurring"] = {"interval": "month", "interval_count": 3}

        assert derive_period_end(subscription) == _utc(2024, 2, 14, 22, 13, 20)

    @pytest.mark.parametrize(
        "recurring",
        [
            None,
            {"interval": "decade", "interval_count": 1},
            {"interval": "month", "interval_count": 0},
            {"interval": "month", "interval_count": "2"},
        ],
    )
    def test_invalid_recurring_config(self, recurring):
        subscription = make_subscription(current_period_end=None)
        subscription["items"]["data"][0]["price"]["recurring"] = recurring

        with pytest.raises(PeriodResolutionError) as exc_info:
            derive_period_end(subscription)

        assert exc_info.value.code == "period_unresolved"
        assert exc_info.value.details == {"subscription_id": "sub_pro"}

    def test_missing_created(self):
        subscription = make_subscription(current_period_end=None, created=None)

        with pytest.raises(PeriodResolutionError):
            derive_period_end(subscription)
