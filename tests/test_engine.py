"""Tests for the sweep engine."""
from datetime import timedelta

import pytest

from pricealerts.errors import ConcurrentUpdateError
from pricealerts.rules.engine import AlertEngine
from pricealerts.rules.types import DeliveryOutcome, DeliveryStatus, ChannelName, Priority, QuietHours, TriggeredAlert
from tests.fakes import NOW, FakeCatalog, FakeChannel, FakeProvider, FakeRuleStore, make_rule, make_snapshot


def past_alert(rule_id, item_id, hours_ago):
    return TriggeredAlert(
        rule_id=rule_id,
        item_id=item_id,
        owner_id=7,
        reason="earlier",
        values={},
        priority=Priority.MEDIUM,
        deliveries=(DeliveryOutcome(ChannelName.EMAIL, DeliveryStatus.SUCCESS),),
        created_at=NOW - timedelta(hours=hours_ago),
    )


class BrokenSaveStore(FakeRuleStore):
    """Store that fails to persist alerts for one item."""

    def save_triggered_alert(self, alert) -> int:
        if alert.item_id == "bad":
            raise RuntimeError("disk full")
        return super().save_triggered_alert(alert)


class ConflictingRecordStore(FakeRuleStore):
    """Store whose trigger write always loses the version race."""

    def record_trigger(self, alert, deactivate=False):
        raise ConcurrentUpdateError(f"rule {alert.rule_id} kept changing")


class FailingProvider(FakeProvider):
    def snapshot(self, item_ids, as_of=None):
        self.calls.append(list(item_ids))
        raise ConnectionError("market data down")


@pytest.fixture
def build_engine(make_dispatcher, throttler):
    """Factory for an engine over in-memory collaborators with a fixed clock."""
    def _build(rules, items=("a", "b", "c"), store=None, provider=None, catalog=None):
        store = store if store is not None else FakeRuleStore(rules)
        store.rules.update({r.id: r for r in rules})
        provider = provider or FakeProvider([make_snapshot(i) for i in items])
        channel = FakeChannel(ChannelName.EMAIL)
        engine = AlertEngine(
            store=store,
            catalog=catalog or FakeCatalog(),
            provider=provider,
            dispatcher=make_dispatcher(store, [channel], clock=lambda: NOW),
            throttler=throttler,
            max_workers=2,
            io_timeout_seconds=5,
            clock=lambda: NOW,
        )
        return engine, store, provider, channel
    return _build


class TestSweep:
    """Tests for AlertEngine.run_sweep."""

    @pytest.mark.asyncio
    async def test_single_snapshot_for_all_rules(self, build_engine):
        """Rules with overlapping candidates share one snapshot call."""
        rules = [make_rule(1, item_ids=("a", "b")), make_rule(2, item_ids=("b", "c"))]
        engine, store, provider, _ = build_engine(rules)

        report = await engine.run_sweep()

        assert provider.calls == [["a", "b", "c"]]
        assert report.rules_loaded == 2
        assert report.rules_evaluated == 2
        assert report.items_evaluated == 4
        assert report.alerts_triggered == 4
        assert sorted((a.rule_id, a.item_id) for a in store.alerts) == [(1, "a"), (1, "b"), (2, "b"), (2, "c")]
        assert report.finished_at == NOW

    @pytest.mark.asyncio
    async def test_no_rules(self, build_engine):
        engine, _, provider, _ = build_engine([])
        report = await engine.run_sweep()
        assert report.rules_loaded == 0
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unmatched_item_not_dispatched(self, build_engine):
        """Only items whose snapshot satisfies the condition fire."""
        rule = make_rule(item_ids=("a", "b"))
        provider = FakeProvider([make_snapshot("a"), make_snapshot("b", recommendation="Hold")])
        engine, store, _, _ = build_engine([rule], provider=provider)

        report = await engine.run_sweep()

        assert report.items_evaluated == 2
        assert [a.item_id for a in store.alerts] == ["a"]

    @pytest.mark.asyncio
    async def test_missing_snapshot_skipped(self, build_engine):
        rule = make_rule(item_ids=("a", "ghost"))
        engine, store, _, _ = build_engine([rule], items=("a",))

        report = await engine.run_sweep()

        assert report.items_evaluated == 1
        assert report.alerts_triggered == 1

    @pytest.mark.asyncio
    async def test_candidates_from_catalog(self, build_engine):
        """Rules without an allowlist get candidates from the catalog."""
        catalog = FakeCatalog({"a": {"category": "rifle", "price": 45.0}, "b": {"category": "rifle", "price": 80.0}})
        engine, store, provider, _ = build_engine([make_rule(max_price=50.0)], catalog=catalog)

        await engine.run_sweep()

        assert provider.calls == [["a"]]
        assert [a.item_id for a in store.alerts] == ["a"]


class TestThrottling:
    """Suppression and budgets during a sweep."""

    @pytest.mark.asyncio
    async def test_daily_cap_reached(self, build_engine):
        """A rule with 5 triggers today and a cap of 5 is not evaluated."""
        rule = make_rule(item_ids=("a",), max_alerts_per_day=5)
        store = FakeRuleStore([rule])
        store.alerts.extend(past_alert(rule.id, f"old-{n}", hours_ago=1) for n in range(5))
        engine, _, provider, channel = build_engine([rule], store=store)

        report = await engine.run_sweep()

        assert report.rules_suppressed == 1
        assert report.suppressed == {"suppressed_daily_cap": 1}
        assert report.alerts_triggered == 0
        assert provider.calls == []
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_remaining_budget_limits_sweep(self, build_engine):
        """4 of 5 used today leaves room for exactly one more alert."""
        rule = make_rule(item_ids=("a", "b", "c"), max_alerts_per_day=5)
        store = FakeRuleStore([rule])
        store.alerts.extend(past_alert(rule.id, f"old-{n}", hours_ago=1) for n in range(4))
        engine, _, _, _ = build_engine([rule], store=store)

        report = await engine.run_sweep()

        assert report.alerts_triggered == 1
        assert len(store.alerts) == 5

    @pytest.mark.asyncio
    async def test_yesterdays_alerts_do_not_count(self, build_engine):
        rule = make_rule(item_ids=("a",), max_alerts_per_day=1, cooldown_hours=0)
        store = FakeRuleStore([rule])
        store.alerts.append(past_alert(rule.id, "a", hours_ago=13))
        engine, _, _, _ = build_engine([rule], store=store)

        report = await engine.run_sweep()

        assert report.alerts_triggered == 1

    @pytest.mark.asyncio
    async def test_cooldown_filters_item(self, build_engine):
        """An item alerted 2h ago with a 24h cooldown is skipped."""
        rule = make_rule(item_ids=("a", "b"), cooldown_hours=24)
        store = FakeRuleStore([rule])
        store.alerts.append(past_alert(rule.id, "a", hours_ago=2))
        engine, _, provider, _ = build_engine([rule], store=store)

        await engine.run_sweep()

        assert provider.calls == [["b"]]
        assert [a.item_id for a in store.alerts[1:]] == ["b"]

    @pytest.mark.asyncio
    async def test_all_candidates_cooling_down(self, build_engine):
        rule = make_rule(item_ids=("a",), cooldown_hours=24)
        store = FakeRuleStore([rule])
        store.alerts.append(past_alert(rule.id, "a", hours_ago=2))
        engine, _, provider, _ = build_engine([rule], store=store)

        report = await engine.run_sweep()

        assert report.rules_evaluated == 0
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_quiet_hours_suppressed(self, build_engine):
        rule = make_rule(item_ids=("a",), quiet_hours=QuietHours.parse("11:00", "13:00"))
        engine, store, _, _ = build_engine([rule])

        report = await engine.run_sweep()

        assert report.suppressed == {"suppressed_quiet_hours": 1}
        assert store.alerts == []

    @pytest.mark.asyncio
    async def test_one_shot_fires_once(self, build_engine):
        """A one-shot rule matching three items fires for the first only and is deactivated."""
        rule = make_rule(item_ids=("a", "b", "c"), is_one_time=True)
        engine, store, _, _ = build_engine([rule])

        report = await engine.run_sweep()

        assert report.alerts_triggered == 1
        assert [a.item_id for a in store.alerts] == ["a"]
        assert store.rules[rule.id].is_active is False

        second = await engine.run_sweep()
        assert second.rules_loaded == 0
        assert len(store.alerts) == 1

    @pytest.mark.asyncio
    async def test_one_shot_stops_when_recording_fails(self, build_engine):
        """A failed trigger write records nothing and the one-shot rule tries no other item."""
        rule = make_rule(item_ids=("a", "b", "c"), is_one_time=True)
        store = ConflictingRecordStore([rule])
        engine, _, _, channel = build_engine([rule], store=store)

        report = await engine.run_sweep()

        assert len(channel.sent) == 1
        assert report.alerts_triggered == 0
        assert store.alerts == []
        assert store.rules[rule.id].is_active is True
        assert store.rules[rule.id].trigger_count == 0

    @pytest.mark.asyncio
    async def test_quiet_hours_reached_mid_sweep(self, build_engine):
        """The clock crosses into 22:00-08:00 after planning; no alert is created."""
        rule = make_rule(item_ids=("a", "b"), quiet_hours=QuietHours.parse("22:00", "08:00"))
        engine, store, _, channel = build_engine([rule])
        times = iter([NOW.replace(hour=21, minute=59, second=59)])
        engine.clock = lambda: next(times, NOW.replace(hour=22, minute=0, second=1))

        report = await engine.run_sweep()

        assert report.rules_evaluated == 1
        assert report.alerts_triggered == 0
        assert store.alerts == []
        assert channel.sent == []


class TestFailureIsolation:
    """Errors stay scoped to the item or rule that raised them."""

    @pytest.mark.asyncio
    async def test_failing_item_does_not_stop_rule(self, build_engine):
        rule = make_rule(item_ids=("bad", "good"))
        store = BrokenSaveStore([rule])
        engine, _, _, _ = build_engine([rule], items=("bad", "good"), store=store)

        report = await engine.run_sweep()

        assert report.items_evaluated == 2
        assert report.alerts_triggered == 1
        assert [a.item_id for a in store.alerts] == ["good"]

    @pytest.mark.asyncio
    async def test_failing_rule_does_not_stop_sweep(self, build_engine):
        """A rule whose candidate lookup raises is counted, the other rule still runs."""

        class BrokenCatalog(FakeCatalog):
            def query(self, categories=(), max_price=None):
                raise RuntimeError("index offline")

        rules = [make_rule(1, max_price=50.0), make_rule(2, item_ids=("a",))]
        engine, store, _, _ = build_engine(rules, catalog=BrokenCatalog())

        report = await engine.run_sweep()

        assert report.rules_failed == 1
        assert [a.rule_id for a in store.alerts] == [2]

    @pytest.mark.asyncio
    async def test_snapshot_failure_aborts_sweep(self, build_engine):
        rule = make_rule(item_ids=("a",))
        engine, store, provider, _ = build_engine([rule], provider=FailingProvider())

        report = await engine.run_sweep()

        assert provider.calls == [["a"]]
        assert report.rules_failed == 1
        assert report.alerts_triggered == 0
        assert store.alerts == []


class TestDeadline:
    """Soft sweep deadline."""

    @pytest.mark.asyncio
    async def test_expired_deadline_defers_rules(self, build_engine):
        """Rules not picked up before the deadline are counted and the sweep is an overrun."""
        rules = [make_rule(1, item_ids=("a",)), make_rule(2, item_ids=("b",))]
        engine, store, provider, _ = build_engine(rules)

        report = await engine.run_sweep(deadline_seconds=1e-9)

        assert report.rules_unreached == 2
        assert report.overrun is True
        assert provider.calls == []
        assert store.alerts == []

    @pytest.mark.asyncio
    async def test_generous_deadline_not_overrun(self, build_engine):
        engine, _, _, _ = build_engine([make_rule(item_ids=("a",))])
        report = await engine.run_sweep(deadline_seconds=60)
        assert report.overrun is False
        assert report.alerts_triggered == 1
