# -*- coding: utf-8 -*-
"""
Per-rule throttling: quiet hours, daily caps, one-shot rules and per-item cooldowns.
Checked before a rule's conditions are evaluated so suppressed rules cost nothing.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pytz
from loguru import logger

from pricealerts.rules.types import AlertRule


class RuleState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"
    SUPPRESSED_DAILY_CAP = "suppressed_daily_cap"
    SUPPRESSED_ONE_SHOT = "suppressed_one_shot"
    ELIGIBLE = "eligible"
    DISABLED = "disabled"

    @property
    def is_suppressed(self) -> bool:
        return self in (
            RuleState.SUPPRESSED_QUIET_HOURS,
            RuleState.SUPPRESSED_DAILY_CAP,
            RuleState.SUPPRESSED_ONE_SHOT,
            RuleState.DISABLED,
        )


class ThrottleController:
    """
    Gatekeeper for rule evaluation.

    Holds no counters of its own: trigger history lives in the rule store and is
    passed in, so the decisions here are pure functions of (rule, now, history).
    `states` only mirrors the last decision per rule for status reporting.
    """

    def __init__(self, default_timezone: str = "UTC", daily_cap_window: str = "calendar"):
        """
        Args:
            default_timezone: Used when neither the quiet-hours window nor the
                              owner specify a timezone
            daily_cap_window: "calendar" (owner's calendar day) or "rolling" (last 24h)
        """
        self.default_timezone = default_timezone
        self.daily_cap_window = daily_cap_window
        self.states: Dict[int, RuleState] = {}

    def _tz_for(self, rule: AlertRule, prefer_quiet_hours: bool = False):
        name = None
        if prefer_quiet_hours and rule.quiet_hours is not None:
            name = rule.quiet_hours.timezone
        name = name or rule.owner.timezone or self.default_timezone
        try:
            return pytz.timezone(name)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Rule {rule.id}: unknown timezone {name!r}, using {self.default_timezone}")
            return pytz.timezone(self.default_timezone)

    def in_quiet_hours(self, rule: AlertRule, now: datetime) -> bool:
        """True when `now` falls inside the rule's quiet window (rule-local wall clock)."""
        if rule.quiet_hours is None:
            return False
        local = _as_utc(now).astimezone(self._tz_for(rule, prefer_quiet_hours=True))
        return rule.quiet_hours.contains(local.time().replace(tzinfo=None))

    def day_start(self, rule: AlertRule, now: datetime) -> datetime:
        """
        Start of the window the daily cap counts triggers in, as UTC.

        Calendar mode: local midnight of the owner's current day.
        Rolling mode: now - 24h.
        """
        now = _as_utc(now)
        if self.daily_cap_window == "rolling":
            return now - timedelta(hours=24)

        tz = self._tz_for(rule)
        local = now.astimezone(tz)
        midnight = tz.localize(datetime(local.year, local.month, local.day))
        return midnight.astimezone(timezone.utc)

    def check_rule(self, rule: AlertRule, now: datetime) -> Tuple[RuleState, Optional[str]]:
        """
        Cheap gate that needs no trigger history.

        Returns:
            (state, reason): ELIGIBLE with None, or a suppressed state and a reason
        """
        self.states[rule.id] = RuleState.EVALUATING

        if rule.is_one_time and rule.trigger_count > 0:
            # One-shot rules that already fired should have been deactivated
            if rule.is_active:
                logger.warning(f"Rule {rule.id} is one-shot with {rule.trigger_count} triggers but still active")
            self.states[rule.id] = RuleState.DISABLED
            return RuleState.SUPPRESSED_ONE_SHOT, "one-shot rule already triggered"

        if not rule.is_active:
            self.states[rule.id] = RuleState.DISABLED
            return RuleState.DISABLED, "rule inactive"

        if self.in_quiet_hours(rule, now):
            self.states[rule.id] = RuleState.SUPPRESSED_QUIET_HOURS
            return RuleState.SUPPRESSED_QUIET_HOURS, "quiet hours"

        self.states[rule.id] = RuleState.ELIGIBLE
        return RuleState.ELIGIBLE, None

    def check_daily_cap(self, rule: AlertRule, triggers_today: int) -> Tuple[RuleState, Optional[str]]:
        """Gate on the number of triggers already attributed to the current day."""
        if rule.max_alerts_per_day is not None and triggers_today >= rule.max_alerts_per_day:
            logger.debug(f"Rule {rule.id} daily cap reached ({triggers_today}/{rule.max_alerts_per_day})")
            self.states[rule.id] = RuleState.SUPPRESSED_DAILY_CAP
            return RuleState.SUPPRESSED_DAILY_CAP, f"daily cap reached ({triggers_today}/{rule.max_alerts_per_day})"
        return RuleState.ELIGIBLE, None

    def remaining_budget(self, rule: AlertRule, triggers_today: int) -> Optional[int]:
        """
        How many more alerts the rule may produce this sweep.

        Returns:
            None for unlimited, else a non-negative count
        """
        budget = None
        if rule.max_alerts_per_day is not None:
            budget = max(0, rule.max_alerts_per_day - triggers_today)
        if rule.is_one_time:
            budget = 1 if budget is None else min(budget, 1)
        return budget

    def filter_cooldown(
        self,
        rule: AlertRule,
        item_ids: Sequence[str],
        last_triggers: Mapping[str, datetime],
        now: datetime,
    ) -> List[str]:
        """
        Drop items that triggered this rule less than cooldown_hours ago.
        An item becomes eligible again at exactly last_trigger + cooldown.
        """
        if rule.cooldown_hours <= 0 or not last_triggers:
            return list(item_ids)

        cooldown = timedelta(hours=rule.cooldown_hours)
        now = _as_utc(now)
        eligible = []
        for item_id in item_ids:
            last = last_triggers.get(item_id)
            if last is not None and now - _as_utc(last) < cooldown:
                logger.debug(f"Rule {rule.id} item {item_id} in cooldown since {last.isoformat()}")
                continue
            eligible.append(item_id)
        return eligible

    def record_trigger(self, rule: AlertRule) -> RuleState:
        """State after a successful trigger: IDLE, or DISABLED for one-shot rules."""
        state = RuleState.DISABLED if rule.is_one_time else RuleState.IDLE
        self.states[rule.id] = state
        return state

    def finish(self, rule: AlertRule) -> None:
        """Return an evaluated rule that did not fire to IDLE."""
        if self.states.get(rule.id) in (RuleState.EVALUATING, RuleState.ELIGIBLE):
            self.states[rule.id] = RuleState.IDLE

    def get_stats(self) -> Dict[str, int]:
        """Count of rules per last-known state."""
        stats: Dict[str, int] = {}
        for state in self.states.values():
            stats[state.value] = stats.get(state.value, 0) + 1
        return stats


def _as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# Global throttle controller instance (singleton)
_throttler_instance: Optional[ThrottleController] = None


def get_throttler() -> ThrottleController:
    """Get global throttle controller configured from YAML."""
    global _throttler_instance

    if _throttler_instance is None:
        from pricealerts.config import get_alerts_config

        alerts_config = get_alerts_config()
        _throttler_instance = ThrottleController(
            default_timezone=alerts_config['timezone'],
            daily_cap_window=alerts_config['daily_cap_window'],
        )

    return _throttler_instance
