"""Tests for message formatting and alert templates."""
from datetime import datetime, timezone

import pytest

from pricealerts.notif.formatter import format_datetime, format_percent, format_price, format_value
from pricealerts.notif.templates import (
    build_payload,
    build_reason,
    email_subject,
    push_message,
    sms_text,
    telegram_text,
)
from pricealerts.rules.conditions import all_of, leaf, negate
from pricealerts.rules.evaluator import evaluate_with_trace
from pricealerts.rules.types import PlatformQuote, Priority
from tests.fakes import NOW, make_rule, make_snapshot


class TestFormatPrice:
    """Tests for money formatting."""

    @pytest.mark.parametrize("value,expected", [
        (7.5, "$7.50"),
        (0, "$0.00"),
        (1234.567, "$1,234.57"),
        (-1.2, "-$1.20"),
    ])
    def test_format_price(self, value, expected):
        assert format_price(value) == expected


class TestFormatPercent:
    """Tests for percentage formatting."""

    @pytest.mark.parametrize("value,expected", [
        (22.0, "22%"),
        (21.99999, "22%"),
        (12.345, "12.3%"),
        (0, "0%"),
    ])
    def test_format_percent(self, value, expected):
        assert format_percent(value) == expected

    def test_format_value_by_field(self):
        assert format_value("price", 3) == "$3.00"
        assert format_value("priceVsAverage", 90.0) == "90%"
        assert format_value("recommendation", "Buy") == "Buy"


class TestFormatDatetime:
    """Tests for timezone-aware timestamps."""

    def test_utc(self):
        assert format_datetime(NOW) == "2025-11-11 12:00 UTC"

    def test_local_timezone(self):
        assert format_datetime(NOW, "America/New_York") == "2025-11-11 07:00 EST"

    def test_naive_is_utc_and_bad_tz_falls_back(self):
        assert format_datetime(datetime(2025, 1, 1, 8, 30), "Nowhere/City") == "2025-01-01 08:30 UTC"


class TestReason:
    """Tests for the human-readable trigger reason."""

    def test_scenario_a_reason(self):
        snapshot = make_snapshot()
        result = evaluate_with_trace(make_rule().condition, snapshot)
        assert build_reason(result, snapshot) == "price dropped 22% to $45.00; Strong Buy rating"

    def test_arbitrage_reason(self):
        snapshot = make_snapshot(quotes=(
            PlatformQuote("platformA", 10.0),
            PlatformQuote("platformB", 12.0, seller_fee_percent=2),
        ))
        result = evaluate_with_trace(leaf("arbitrageOpportunity", ">", 1), snapshot)
        assert build_reason(result, snapshot) == "$1.76 arbitrage (buy on platformA, sell on platformB)"

    def test_negated_leaf(self):
        snapshot = make_snapshot()
        tree = all_of(leaf("price", "<", 50), negate(leaf("riskLevel", "=", "high")))
        result = evaluate_with_trace(tree, snapshot)
        assert build_reason(result, snapshot) == "price $45.00; risk is not high"

    def test_volume_reason(self):
        snapshot = make_snapshot()
        result = evaluate_with_trace(leaf("volumeChangePercent", ">", 10), snapshot)
        assert build_reason(result, snapshot) == "volume up 20% over 30 days"


class TestChannelTexts:
    """Tests for the per-channel message bodies."""

    @pytest.fixture
    def payload(self):
        rule = make_rule(priority=Priority.CRITICAL)
        return build_payload(rule, make_snapshot(), "price dropped 22% to $45.00", NOW)

    def test_payload_fields(self, payload):
        assert payload.title == "Price Alert: AK-47 | Redline"
        assert payload.price == 45.0
        assert payload.url == "https://market.example/ak-redline"

    def test_email_subject_marks_priority(self, payload):
        assert email_subject(payload) == "🚨 Price Alert: AK-47 | Redline is now $45.00"

    def test_push_message(self, payload):
        message = push_message(payload)
        assert message["body"] == "price dropped 22% to $45.00"
        assert message["data"] == {"url": "https://market.example/ak-redline"}

    def test_sms_within_two_segments(self, payload):
        from dataclasses import replace

        long_payload = replace(payload, body="x" * 400)
        assert len(sms_text(long_payload)) == 306
        assert sms_text(payload).startswith("Redline dip: AK-47 | Redline - price dropped")

    def test_telegram_text_escapes_html(self, payload):
        from dataclasses import replace

        text = telegram_text(replace(payload, body="<b>& more"), "UTC")
        assert "&lt;b&gt;&amp; more" in text
        assert "2025-11-11 12:00 UTC" in text
