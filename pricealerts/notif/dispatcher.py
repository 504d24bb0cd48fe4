# -*- coding: utf-8 -*-
"""
Trigger dispatcher: turns a satisfied (rule, item) pair into a delivered and
persisted TriggeredAlert.

Channels are attempted concurrently and independently. A failure on one
channel is recorded against that channel only; partial delivery is a normal
outcome. After delivery the alert record, the rule counters and one-shot
deactivation go to the store as one transaction. That write is shielded from
cancellation so it either completes or never starts.
"""
import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Sequence

from loguru import logger

from pricealerts.errors import ChannelError
from pricealerts.interfaces import RecipientDirectory, RuleStore
from pricealerts.notif.channels.base import DeliveryChannel, NotificationPayload
from pricealerts.notif.templates import build_payload, build_reason
from pricealerts.rules.evaluator import EvaluationResult
from pricealerts.rules.types import (
    AlertRule,
    ChannelName,
    DeliveryOutcome,
    DeliveryStatus,
    MarketSnapshot,
    Owner,
    TriggeredAlert,
)
from pricealerts.utils.aio import run_io


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerDispatcher:

    def __init__(
        self,
        store: RuleStore,
        channels: Dict[ChannelName, DeliveryChannel],
        max_attempts: int = 3,
        timeout_seconds: float = 10.0,
        retry_delays: Sequence[float] = (1, 2, 4),
        io_timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: Rule store used to persist the alert and bump rule counters
            channels: Channel implementations by name
            max_attempts: Attempts per channel before the failure is permanent
            timeout_seconds: Per-attempt send timeout
            retry_delays: Sleep before attempt 2, 3, ... (last value repeats)
            io_timeout_seconds: Timeout for each rule store call
        """
        self.store = store
        self.channels = channels
        self.max_attempts = max(1, max_attempts)
        self.timeout_seconds = timeout_seconds
        self.retry_delays = list(retry_delays) or [0]
        self.io_timeout_seconds = io_timeout_seconds
        self.clock = clock

    async def dispatch(
        self,
        rule: AlertRule,
        snapshot: MarketSnapshot,
        evaluation: EvaluationResult,
        created_at: Optional[datetime] = None,
    ) -> TriggeredAlert:
        """
        Deliver and persist one alert.

        Args:
            rule: The rule that fired
            snapshot: The sweep snapshot of the item it fired for
            evaluation: Trace of the satisfying leaves
            created_at: Alert timestamp (defaults to now)

        Returns:
            The persisted TriggeredAlert (with id)
        """
        created_at = created_at or self.clock()
        reason = build_reason(evaluation, snapshot)
        payload = build_payload(rule, snapshot, reason, created_at)

        outcomes = await asyncio.gather(
            *(self._deliver(channel, rule.owner, payload) for channel in rule.delivery_channels)
        )

        alert = TriggeredAlert(
            rule_id=rule.id,
            item_id=snapshot.item_id,
            owner_id=rule.owner.user_id,
            reason=reason,
            values=evaluation.values,
            priority=rule.priority,
            deliveries=tuple(outcomes),
            created_at=created_at,
            listing_url=payload.url,
        )

        alert = await asyncio.shield(self._persist(rule, alert))

        logger.info(
            f"Alert triggered: rule={rule.id} '{rule.name}' item={snapshot.item_id} "
            f"priority={rule.priority.value} delivered_via={alert.delivered_via} reason='{reason}'"
        )
        return alert

    async def _persist(self, rule: AlertRule, alert: TriggeredAlert) -> TriggeredAlert:
        alert_id = await run_io(
            self.store.record_trigger, alert, rule.is_one_time, timeout=self.io_timeout_seconds
        )
        if rule.is_one_time and alert_id is not None:
            logger.info(f"One-shot rule {rule.id} '{rule.name}' deactivated after first trigger")
        return replace(alert, id=alert_id)

    def _retry_delay(self, attempt: int) -> float:
        index = min(attempt - 1, len(self.retry_delays) - 1)
        return self.retry_delays[index]

    async def _deliver(self, channel_name: ChannelName, recipient: Owner, payload: NotificationPayload) -> DeliveryOutcome:
        """Attempt one channel with retries. Never raises (except on cancellation)."""
        channel = self.channels.get(channel_name)
        if channel is None or not channel.enabled:
            logger.warning(f"Rule {payload.rule_id}: channel {channel_name.value} not configured")
            return DeliveryOutcome(channel_name, DeliveryStatus.FAILURE, attempts=0, error="channel not configured")

        last_error = None
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            try:
                await asyncio.wait_for(channel.send(recipient, payload), timeout=self.timeout_seconds)
                return DeliveryOutcome(
                    channel_name, DeliveryStatus.SUCCESS, attempts=attempt, delivered_at=self.clock()
                )
            except ChannelError as e:
                last_error = str(e)
                if not e.retryable:
                    break
            except asyncio.TimeoutError:
                last_error = f"timeout after {self.timeout_seconds}s"
            except Exception as e:
                logger.exception(f"Unexpected error on {channel_name.value} for rule {payload.rule_id}: {e}")
                last_error = str(e) or type(e).__name__
                break

            if attempt < self.max_attempts:
                logger.debug(
                    f"{channel_name.value} attempt {attempt}/{self.max_attempts} failed for rule "
                    f"{payload.rule_id}: {last_error}"
                )
                await asyncio.sleep(self._retry_delay(attempt))

        logger.warning(
            f"Delivery failed: {channel_name.value} rule={payload.rule_id} item={payload.item_id} "
            f"after {attempt} attempt(s): {last_error}"
        )
        return DeliveryOutcome(channel_name, DeliveryStatus.FAILURE, attempts=attempt, error=last_error)


def build_channels(
    directory: Optional[RecipientDirectory] = None, dry_run: bool = False
) -> Dict[ChannelName, DeliveryChannel]:
    """Instantiate every channel enabled in config. dry_run forces log-only sends."""
    from pricealerts.config import get_channel_config
    from pricealerts.notif.channels.email import EmailChannel
    from pricealerts.notif.channels.push import PushChannel
    from pricealerts.notif.channels.sms import SmsChannel
    from pricealerts.notif.channels.telegram import TelegramChannel

    channels: Dict[ChannelName, DeliveryChannel] = {}
    for channel in (
        EmailChannel(get_channel_config('email'), directory=directory),
        PushChannel(get_channel_config('push'), directory=directory),
        SmsChannel(get_channel_config('sms')),
        TelegramChannel(get_channel_config('telegram')),
    ):
        if channel.enabled:
            if dry_run:
                channel.force_dry_run = True
            channels[channel.name] = channel
            logger.info(f"Delivery channel ready: {channel!r}")
    return channels


def build_dispatcher(
    store: RuleStore, directory: Optional[RecipientDirectory] = None, dry_run: bool = False
) -> TriggerDispatcher:
    """Dispatcher wired from YAML config."""
    from pricealerts.config import get_delivery_config, get_scheduler_config

    delivery = get_delivery_config()
    return TriggerDispatcher(
        store=store,
        channels=build_channels(directory, dry_run),
        max_attempts=delivery['max_attempts'],
        timeout_seconds=delivery['timeout_seconds'],
        retry_delays=delivery['retry_delays_seconds'],
        io_timeout_seconds=get_scheduler_config()['io_timeout_seconds'],
    )
