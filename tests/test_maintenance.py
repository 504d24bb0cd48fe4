"""Tests for alert pruning and engagement metrics."""
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest
from sqlalchemy import select

import pricealerts.storage.cleanup as cleanup_module
from pricealerts.storage.cleanup import cleanup_old_alerts, run_maintenance
from pricealerts.storage.metrics import recompute_alert_metrics, summarize_engagement
from pricealerts.storage.models import AlertMetricsRow, AlertRuleRow, TriggeredAlertRow, User
from tests.fakes import NOW

NAIVE_NOW = NOW.replace(tzinfo=None)


def seed(session_factory, cooldown_hours=24.0, alerts=(), now=NAIVE_NOW):
    """One rule plus triggered alerts given as (days_ago, clicked, purchased, usefulness)."""
    with session_factory() as session:
        session.add(User(id=1, email="a@example.com"))
        rule = AlertRuleRow(
            user_id=1, name="r", conditions={"field": "price", "operator": "<", "value": 10},
            delivery_channels=["email"], cooldown_hours=cooldown_hours,
        )
        session.add(rule)
        session.flush()
        for days_ago, clicked, purchased, usefulness in alerts:
            session.add(TriggeredAlertRow(
                rule_id=rule.id, item_id="ak", user_id=1, reason="r", trigger_values={},
                priority="medium", delivered_via={"email": "success"},
                created_at=now - timedelta(days=days_ago),
                clicked=clicked, purchased=purchased, usefulness=usefulness,
            ))
        session.commit()
        return rule.id


class TestSummarizeEngagement:
    """Tests for the per-rule engagement aggregation."""

    def test_rates(self):
        df = pd.DataFrame({
            "rule_id": [1, 1, 1, 1, 2],
            "clicked": [True, True, False, False, False],
            "purchased": [True, False, False, False, False],
            "dismissed": [False, False, True, False, True],
            "usefulness": [5, 3, None, None, None],
        })

        summary = summarize_engagement(df)

        assert summary.loc[1, "triggers"] == 4
        assert summary.loc[1, "click_through_rate"] == pytest.approx(0.5)
        assert summary.loc[1, "conversion_rate"] == pytest.approx(0.25)
        assert summary.loc[1, "avg_usefulness"] == pytest.approx(4.0)
        assert summary.loc[2, "dismissals"] == 1
        assert pd.isna(summary.loc[2, "avg_usefulness"])

    def test_empty(self):
        empty = pd.DataFrame(columns=["rule_id", "clicked", "purchased", "dismissed", "usefulness"])
        assert summarize_engagement(empty).empty


class TestRecomputeMetrics:
    """Tests for rebuilding the alert_metrics table."""

    def test_rows_written(self, session_factory):
        rule_id = seed(session_factory, alerts=[(1, True, True, 4), (2, False, False, None)])

        assert recompute_alert_metrics(session_factory) == 1

        with session_factory() as session:
            row = session.get(AlertMetricsRow, rule_id)
            assert row.triggers == 2
            assert row.clicks == 1
            assert row.purchases == 1
            assert row.click_through_rate == 0.5
            assert row.avg_usefulness == 4.0

    def test_recompute_replaces_previous(self, session_factory):
        seed(session_factory, alerts=[(1, False, False, None)])
        recompute_alert_metrics(session_factory)
        recompute_alert_metrics(session_factory)
        with session_factory() as session:
            assert len(session.scalars(select(AlertMetricsRow)).all()) == 1


class TestCleanup:
    """Tests for pruning triggered alerts."""

    def test_prunes_past_retention(self, test_env_vars, session_factory):
        """30-day retention removes the 35- and 45-day-old alerts."""
        seed(session_factory, alerts=[(10, False, False, None), (35, False, False, None), (45, False, False, None)])

        assert cleanup_old_alerts(session_factory, now=NOW) == {"deleted": 2, "kept": 1}

    def test_long_cooldown_extends_retention(self, test_env_vars, session_factory):
        """A 40-day cooldown keeps the 35-day-old alert so the cooldown still holds."""
        seed(
            session_factory,
            cooldown_hours=40 * 24,
            alerts=[(10, False, False, None), (35, False, False, None), (45, False, False, None)],
        )

        assert cleanup_old_alerts(session_factory, now=NOW) == {"deleted": 1, "kept": 2}

    def test_disabled(self, test_env_vars, session_factory, monkeypatch):
        monkeypatch.setattr(cleanup_module, "get_database_cleanup_config", lambda: {"enabled": False})
        seed(session_factory, alerts=[(400, False, False, None)])

        assert cleanup_old_alerts(session_factory, now=NOW) == {"deleted": 0, "kept": 0}

    def test_run_maintenance(self, test_env_vars, session_factory):
        today = datetime.now(timezone.utc).replace(tzinfo=None)
        seed(session_factory, alerts=[(1, True, False, None), (90, False, False, None)], now=today)

        stats = run_maintenance(session_factory)

        assert stats["deleted"] == 1
        assert stats["metrics_rules"] == 1
