"""
Alert Rules Engine - evaluates every active rule against one shared market
snapshot per sweep and dispatches the rules that fire.
This is the core of the alerting system.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from loguru import logger

from pricealerts.interfaces import CatalogIndex, MarketDataProvider, RuleStore
from pricealerts.notif.dispatcher import TriggerDispatcher
from pricealerts.notif.throttle import RuleState, ThrottleController
from pricealerts.rules.candidates import CandidateSelector
from pricealerts.rules.evaluator import evaluate_with_trace
from pricealerts.rules.types import AlertRule, MarketSnapshot, SweepReport
from pricealerts.utils.aio import run_io


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RulePlan:
    """A rule that passed the throttle gate, with its cooldown-filtered candidates."""
    rule: AlertRule
    candidates: List[str]
    budget: Optional[int]


class AlertEngine:
    """
    Runs sweeps. One sweep is:
    1. load active rules
    2. per rule: throttle gate -> candidate selection -> cooldown filter
    3. one market snapshot for the union of all candidates
    4. per rule: evaluate each candidate, dispatch the satisfied ones

    Steps 2 and 4 run on a bounded pool of workers. Workers stop picking up
    rules once the sweep deadline passes; unreached rules wait for the next sweep.
    """

    def __init__(
        self,
        store: RuleStore,
        catalog: CatalogIndex,
        provider: MarketDataProvider,
        dispatcher: TriggerDispatcher,
        throttler: Optional[ThrottleController] = None,
        selector: Optional[CandidateSelector] = None,
        max_workers: int = 8,
        io_timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.provider = provider
        self.dispatcher = dispatcher
        self.throttler = throttler or ThrottleController()
        self.selector = selector or CandidateSelector()
        self.max_workers = max(1, max_workers)
        self.io_timeout_seconds = io_timeout_seconds
        self.clock = clock

    async def _io(self, fn, *args):
        return await run_io(fn, *args, timeout=self.io_timeout_seconds)

    async def run_sweep(self, deadline_seconds: Optional[float] = None) -> SweepReport:
        """
        Run one full sweep.

        Args:
            deadline_seconds: Soft deadline measured from sweep start (None = no deadline)

        Returns:
            SweepReport with counters for the sweep
        """
        now = self.clock()
        report = SweepReport(started_at=now)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_seconds if deadline_seconds else None

        rules = await self._io(self.store.list_active_rules)
        report.rules_loaded = len(rules)
        if not rules:
            logger.debug("No active rules")
            report.finished_at = self.clock()
            return report

        plans = await self._run_pool(rules, lambda rule: self._plan_rule(rule, now, report), deadline, report)
        plans = [plan for plan in plans if plan is not None]

        item_ids = sorted({item_id for plan in plans for item_id in plan.candidates})
        if plans:
            try:
                snapshots = await self._load_snapshots(item_ids, now)
            except Exception as e:
                logger.error(f"Market snapshot failed for {len(item_ids)} items, sweep aborted: {e}")
                report.rules_failed += len(plans)
                report.finished_at = self.clock()
                return report

            await self._run_pool(plans, lambda plan: self._evaluate_rule(plan, snapshots, report), deadline, report)

        report.finished_at = self.clock()
        if report.rules_unreached:
            report.overrun = True
            logger.warning(
                f"Sweep overrun: {report.rules_unreached} rule(s) not reached before the deadline, "
                f"deferred to next sweep"
            )

        logger.info(
            f"Sweep done in {report.duration_seconds:.2f}s: rules={report.rules_loaded} "
            f"evaluated={report.rules_evaluated} suppressed={report.rules_suppressed} "
            f"items={report.items_evaluated} alerts={report.alerts_triggered} failed={report.rules_failed}"
        )
        return report

    async def _run_pool(
        self,
        work: Sequence[Any],
        handler: Callable[[Any], Awaitable[Any]],
        deadline: Optional[float],
        report: SweepReport,
    ) -> List[Any]:
        """Process `work` with at most max_workers concurrent handlers."""
        queue: asyncio.Queue = asyncio.Queue()
        for unit in work:
            queue.put_nowait(unit)

        loop = asyncio.get_running_loop()
        results: List[Any] = []

        async def worker():
            while True:
                try:
                    unit = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                if deadline is not None and loop.time() >= deadline:
                    report.rules_unreached += 1
                    continue

                try:
                    results.append(await handler(unit))
                except Exception as e:
                    rule = unit.rule if isinstance(unit, RulePlan) else unit
                    logger.exception(f"Rule {getattr(rule, 'id', '?')} failed: {e}")
                    report.rules_failed += 1

        workers = min(self.max_workers, len(work))
        await asyncio.gather(*(worker() for _ in range(workers)))
        return results

    async def _plan_rule(self, rule: AlertRule, now: datetime, report: SweepReport) -> Optional[RulePlan]:
        state, reason = self.throttler.check_rule(rule, now)
        if state != RuleState.ELIGIBLE:
            self._count_suppressed(report, state, rule, reason)
            return None

        triggers_today = 0
        if rule.max_alerts_per_day is not None:
            since = self.throttler.day_start(rule, now)
            triggers_today = await self._io(self.store.count_triggers_since, rule.id, since)
            state, reason = self.throttler.check_daily_cap(rule, triggers_today)
            if state != RuleState.ELIGIBLE:
                self._count_suppressed(report, state, rule, reason)
                return None

        candidates = await self._io(self.selector.select, rule, self.catalog)
        if candidates and rule.cooldown_hours > 0:
            last_triggers = await self._io(self.store.last_trigger_times, rule.id, candidates)
            candidates = self.throttler.filter_cooldown(rule, candidates, last_triggers, now)

        if not candidates:
            logger.debug(f"Rule {rule.id} has no eligible candidates")
            self.throttler.finish(rule)
            return None

        return RulePlan(rule, candidates, self.throttler.remaining_budget(rule, triggers_today))

    def _count_suppressed(self, report: SweepReport, state: RuleState, rule: AlertRule, reason: Optional[str]):
        report.rules_suppressed += 1
        report.suppressed[state.value] = report.suppressed.get(state.value, 0) + 1
        logger.debug(f"Rule {rule.id} '{rule.name}' suppressed: {reason}")

    async def _load_snapshots(self, item_ids: List[str], now: datetime) -> Dict[str, MarketSnapshot]:
        if not item_ids:
            return {}
        snapshots = await self._io(self.provider.snapshot, item_ids, now)
        logger.debug(f"Loaded market snapshot for {len(snapshots)}/{len(item_ids)} items")
        return {snapshot.item_id: snapshot for snapshot in snapshots}

    async def _evaluate_rule(self, plan: RulePlan, snapshots: Dict[str, MarketSnapshot], report: SweepReport) -> int:
        """Evaluate and dispatch one rule. Each item is isolated from the others."""
        rule = plan.rule
        report.rules_evaluated += 1
        fired = 0

        for item_id in plan.candidates:
            if plan.budget is not None and fired >= plan.budget:
                logger.info(f"Rule {rule.id} reached its alert budget for this sweep ({plan.budget})")
                break

            snapshot = snapshots.get(item_id)
            if snapshot is None:
                logger.debug(f"Rule {rule.id}: no market data for {item_id}")
                continue

            report.items_evaluated += 1
            try:
                result = evaluate_with_trace(rule.condition, snapshot)
            except Exception as e:
                logger.exception(f"Rule {rule.id} item {item_id} failed to evaluate: {e}")
                continue
            if not result.matched:
                continue

            created_at = self.clock()
            # The sweep may have run into the quiet window since the gate was checked
            if self.throttler.in_quiet_hours(rule, created_at):
                logger.info(f"Rule {rule.id} entered quiet hours mid-sweep, holding remaining alerts")
                break

            try:
                await self.dispatcher.dispatch(rule, snapshot, result, created_at)
            except Exception as e:
                logger.exception(f"Rule {rule.id} item {item_id} failed: {e}")
                # Delivery may already have happened; a one-shot rule gets no second item
                if rule.is_one_time:
                    break
                continue

            fired += 1
            report.alerts_triggered += 1
            self.throttler.record_trigger(rule)

            if rule.is_one_time:
                break

        if fired == 0:
            self.throttler.finish(rule)
        return fired


# Global engine instance
_engine_instance = None


def get_alert_engine(dry_run: bool = False) -> AlertEngine:
    """Get global alert engine wired to the SQL collaborators (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        from pricealerts.config import get_scheduler_config
        from pricealerts.datafeeds.market_data import SqlMarketDataProvider
        from pricealerts.notif.dispatcher import build_dispatcher
        from pricealerts.notif.throttle import get_throttler
        from pricealerts.rules.candidates import get_candidate_selector
        from pricealerts.storage.repo import SqlCatalogIndex, SqlRecipientDirectory, SqlRuleStore

        scheduler_config = get_scheduler_config()
        store = SqlRuleStore()
        _engine_instance = AlertEngine(
            store=store,
            catalog=SqlCatalogIndex(),
            provider=SqlMarketDataProvider(),
            dispatcher=build_dispatcher(store, SqlRecipientDirectory(), dry_run=dry_run),
            throttler=get_throttler(),
            selector=get_candidate_selector(),
            max_workers=scheduler_config['max_workers'],
            io_timeout_seconds=scheduler_config['io_timeout_seconds'],
        )
    return _engine_instance
