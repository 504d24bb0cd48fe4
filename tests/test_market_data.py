"""Tests for the SQL market data provider and its pandas helpers."""
from datetime import datetime, timedelta

import pandas as pd
import pytest

from pricealerts.datafeeds.market_data import SqlMarketDataProvider, daily_lowest, history_stats
from pricealerts.rules.conditions import FieldId
from pricealerts.rules.fields import resolve
from pricealerts.storage.models import Item, MarketplacePrice, PriceHistory
from tests.fakes import NOW

NAIVE_NOW = NOW.replace(tzinfo=None)


def history_frame(rows):
    return pd.DataFrame(rows, columns=["item_id", "platform", "price", "volume", "recorded_at"])


class TestDailyLowest:
    """Tests for collapsing raw history to one row per day."""

    def test_last_observation_per_platform_then_min(self):
        """Steam's later 11.0 replaces its 9.0; the day's lowest is csfloat's 10.0."""
        day = datetime(2025, 11, 1)
        df = history_frame([
            ("a", "steam", 9.0, 5.0, day + timedelta(hours=1)),
            ("a", "steam", 11.0, 6.0, day + timedelta(hours=20)),
            ("a", "csfloat", 10.0, 4.0, day + timedelta(hours=3)),
        ])

        daily = daily_lowest(df)

        assert len(daily) == 1
        assert daily.iloc[0]["price"] == 10.0
        assert daily.iloc[0]["volume"] == 10.0

    def test_missing_volume_stays_missing(self):
        df = history_frame([("a", "steam", 9.0, float("nan"), datetime(2025, 11, 1, 5))])
        assert pd.isna(daily_lowest(df).iloc[0]["volume"])

    def test_empty(self):
        assert daily_lowest(history_frame([])).empty


class TestHistoryStats:
    """Tests for the 7-day baseline, 30-day average and 30-day volume."""

    def test_baselines(self):
        rows = []
        for days_ago in range(0, 31):
            ts = NAIVE_NOW - timedelta(days=days_ago, hours=1)
            rows.append(("a", "steam", 100.0 - days_ago, 1000.0 + days_ago, ts))
        stats = history_stats(daily_lowest(history_frame(rows)), NOW)["a"]

        assert stats["price_7d_ago"] == 93.0
        assert stats["volume_30d_ago"] == 1030.0
        # Days 0..29 inside the window: mean of 100..71
        assert stats["moving_average_30d"] == pytest.approx(85.5)

    def test_short_history_has_no_baseline(self):
        """Two days of data cannot give a 7-day or 30-day reference."""
        rows = [("a", "steam", 10.0, 1.0, NAIVE_NOW - timedelta(days=d)) for d in (0, 1)]
        stats = history_stats(daily_lowest(history_frame(rows)), NOW)["a"]
        assert stats["price_7d_ago"] is None
        assert stats["volume_30d_ago"] is None
        assert stats["moving_average_30d"] == pytest.approx(10.0)


class TestSqlMarketDataProvider:
    """Tests for snapshot assembly from the database."""

    @pytest.fixture
    def provider(self, session_factory):
        with session_factory() as session:
            session.add_all([
                Item(id="ak", name="AK-47 | Redline", category="rifle", recommendation="Strong Buy", risk_level="low"),
                Item(id="awp", name="AWP | Asiimov", category="rifle"),
            ])
            session.add_all([
                MarketplacePrice(item_id="ak", platform="steam", price=45.0, volume=80.0,
                                 listing_url="https://steam.example/ak"),
                MarketplacePrice(item_id="ak", platform="csfloat", price=44.0, buyer_fee_percent=5.0, volume=40.0),
            ])
            session.add_all([
                PriceHistory(item_id="ak", platform="steam", price=57.5, volume=100.0,
                             recorded_at=NAIVE_NOW - timedelta(days=8)),
                PriceHistory(item_id="ak", platform="steam", price=60.0, volume=90.0,
                             recorded_at=NAIVE_NOW - timedelta(days=30)),
                PriceHistory(item_id="ak", platform="steam", price=1.0, volume=1.0,
                             recorded_at=NAIVE_NOW + timedelta(days=1)),
            ])
            session.commit()
        return SqlMarketDataProvider(session_factory)

    def test_snapshot_fields(self, provider):
        [snap] = provider.snapshot(["ak"], NOW)

        assert snap.name == "AK-47 | Redline"
        assert {q.platform for q in snap.quotes} == {"steam", "csfloat"}
        assert snap.best_quote.platform == "steam"
        assert snap.volume == 120.0
        assert snap.price_7d_ago == 57.5
        assert snap.volume_30d_ago == 90.0
        assert snap.recommendation == "Strong Buy"
        assert snap.captured_at == NOW

    def test_requested_order_and_unknown_ids(self, provider):
        snaps = provider.snapshot(["awp", "missing", "ak", "awp"], NOW)
        assert [s.item_id for s in snaps] == ["awp", "ak"]

    def test_item_without_history_or_quotes(self, provider):
        [snap] = provider.snapshot(["awp"], NOW)
        assert snap.quotes == ()
        assert snap.price_7d_ago is None
        assert snap.volume is None

    def test_empty_request(self, provider):
        assert provider.snapshot([], NOW) == []

    def test_buyer_fee_is_not_a_price_move(self, session_factory):
        """A flat $10 price with a 5% buyer fee shows no change against its history."""
        with session_factory() as session:
            session.add(Item(id="flat", name="Flat", category="case"))
            session.add(MarketplacePrice(item_id="flat", platform="buff", price=10.0, buyer_fee_percent=5.0))
            session.add_all([
                PriceHistory(item_id="flat", platform="buff", price=10.0, volume=1.0,
                             recorded_at=NAIVE_NOW - timedelta(days=d))
                for d in range(31)
            ])
            session.commit()

        [snap] = SqlMarketDataProvider(session_factory).snapshot(["flat"], NOW)

        assert resolve(FieldId.PRICE_DROP_PERCENT, snap) == pytest.approx(0.0)
        assert resolve(FieldId.PRICE_VS_AVERAGE, snap) == pytest.approx(100.0)
        assert resolve(FieldId.PRICE, snap) == pytest.approx(10.5)
