"""
SQLAlchemy implementations of the collaborator interfaces.

Every method opens its own short session so the engine can call them from
worker threads. Rule counters are written under the mapper's version column;
a concurrent edit of the same rule makes the commit fail with StaleDataError
and the whole read-modify-write is retried.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.orm import object_session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from pricealerts.errors import ConcurrentUpdateError, ValidationError
from pricealerts.interfaces import CatalogIndex, FeedbackSink, RecipientDirectory, RuleStore
from pricealerts.rules.conditions import condition_from_dict, condition_to_dict, validate_condition
from pricealerts.rules.types import (
    AlertRule,
    ChannelName,
    Owner,
    Priority,
    QuietHours,
    TriggeredAlert,
)
from .db import SessionLocal
from .models import (
    AlertRuleRow,
    EmailSuppression,
    Item,
    MarketplacePrice,
    PushSubscription,
    TriggeredAlertRow,
    User,
)

MAX_UPDATE_RETRIES = 3


def to_db_time(dt: datetime) -> datetime:
    """Aware (or naive UTC) -> naive UTC for storage."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def from_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc)


def rule_from_row(row: AlertRuleRow, user: User) -> AlertRule:
    """Build the immutable rule value; raises ValidationError for a malformed condition tree."""
    quiet_hours = None
    if row.quiet_hours_start and row.quiet_hours_end:
        quiet_hours = QuietHours.parse(row.quiet_hours_start, row.quiet_hours_end, row.quiet_hours_timezone)

    return AlertRule(
        id=row.id,
        owner=Owner(
            user_id=user.id,
            email=user.email,
            phone=user.phone,
            telegram_chat_id=user.telegram_chat_id,
            timezone=user.timezone,
        ),
        name=row.name,
        condition=condition_from_dict(row.conditions),
        item_ids=tuple(row.item_ids or ()),
        categories=frozenset(row.categories or ()),
        max_price=row.max_price,
        priority=Priority(row.priority),
        delivery_channels=tuple(ChannelName(c) for c in (row.delivery_channels or ["email"])),
        is_active=row.is_active,
        is_one_time=row.is_one_time,
        max_alerts_per_day=row.max_alerts_per_day,
        cooldown_hours=row.cooldown_hours,
        quiet_hours=quiet_hours,
        last_triggered_at=from_db_time(row.last_triggered_at),
        trigger_count=row.trigger_count,
        version=row.version,
    )


def _bump_counters(row: AlertRuleRow, ts: datetime):
    row.trigger_count += 1
    if row.last_triggered_at is None or ts > row.last_triggered_at:
        row.last_triggered_at = ts


def _alert_row(alert: TriggeredAlert) -> TriggeredAlertRow:
    return TriggeredAlertRow(
        rule_id=alert.rule_id,
        item_id=alert.item_id,
        user_id=alert.owner_id,
        reason=alert.reason,
        trigger_values=dict(alert.values),
        priority=alert.priority.value,
        delivered_via=alert.delivered_via,
        delivery_details=[
            {
                "channel": d.channel.value,
                "status": d.status.value,
                "attempts": d.attempts,
                "error": d.error,
                "delivered_at": d.delivered_at.isoformat() if d.delivered_at else None,
            }
            for d in alert.deliveries
        ],
        listing_url=alert.listing_url,
        created_at=to_db_time(alert.created_at),
    )


class SqlRuleStore(RuleStore):

    def __init__(self, session_factory: sessionmaker = SessionLocal, max_retries: int = MAX_UPDATE_RETRIES):
        self.session_factory = session_factory
        self.max_retries = max(1, max_retries)

    def list_active_rules(self) -> List[AlertRule]:
        """Active rules; a rule whose stored condition no longer validates is skipped and logged."""
        rules = []
        with self.session_factory() as session:
            rows = session.execute(
                select(AlertRuleRow, User)
                .join(User, AlertRuleRow.user_id == User.id)
                .where(AlertRuleRow.is_active.is_(True))
                .order_by(AlertRuleRow.id)
            ).all()

            for row, user in rows:
                try:
                    rules.append(rule_from_row(row, user))
                except (ValidationError, ValueError) as e:
                    logger.error(f"Skipping rule {row.id} '{row.name}': invalid definition: {e}")
        return rules

    def get_rule(self, rule_id: int) -> Optional[AlertRule]:
        with self.session_factory() as session:
            result = session.execute(
                select(AlertRuleRow, User)
                .join(User, AlertRuleRow.user_id == User.id)
                .where(AlertRuleRow.id == rule_id)
            ).first()
            if result is None:
                return None
            return rule_from_row(*result)

    def save_rule(self, rule: AlertRule) -> int:
        """
        Insert a new rule (authoring path). The condition tree is validated first.

        Raises:
            ValidationError: invalid condition tree or unknown owner
        """
        validate_condition(rule.condition)
        with self.session_factory() as session:
            if session.get(User, rule.owner.user_id) is None:
                raise ValidationError(f"unknown owner {rule.owner.user_id}")

            quiet = rule.quiet_hours
            row = AlertRuleRow(
                user_id=rule.owner.user_id,
                name=rule.name,
                conditions=condition_to_dict(rule.condition),
                item_ids=list(rule.item_ids) or None,
                categories=sorted(rule.categories) or None,
                max_price=rule.max_price,
                priority=rule.priority.value,
                delivery_channels=[c.value for c in rule.delivery_channels],
                is_active=rule.is_active,
                is_one_time=rule.is_one_time,
                max_alerts_per_day=rule.max_alerts_per_day,
                cooldown_hours=rule.cooldown_hours,
                quiet_hours_start=quiet.start.strftime("%H:%M") if quiet else None,
                quiet_hours_end=quiet.end.strftime("%H:%M") if quiet else None,
                quiet_hours_timezone=quiet.timezone if quiet else None,
            )
            session.add(row)
            session.commit()
            return row.id

    def _update_rule(self, rule_id: int, mutate: Callable[[AlertRuleRow], None]) -> bool:
        """
        Read-modify-write one rule row under optimistic versioning.

        Returns:
            False if the rule does not exist

        Raises:
            ConcurrentUpdateError: still stale after max_retries attempts
        """
        for attempt in range(1, self.max_retries + 1):
            with self.session_factory() as session:
                row = session.get(AlertRuleRow, rule_id)
                if row is None:
                    return False
                try:
                    mutate(row)
                    session.commit()
                    return True
                except StaleDataError:
                    session.rollback()
                    logger.debug(f"Rule {rule_id} changed concurrently, retrying ({attempt}/{self.max_retries})")

        raise ConcurrentUpdateError(f"rule {rule_id} kept changing, gave up after {self.max_retries} attempts")

    def increment_trigger(self, rule_id: int, item_id: str, timestamp: datetime) -> None:
        ts = to_db_time(timestamp)

        if not self._update_rule(rule_id, lambda row: _bump_counters(row, ts)):
            logger.warning(f"increment_trigger: rule {rule_id} not found (item {item_id})")

    def deactivate(self, rule_id: int) -> None:
        def switch_off(row: AlertRuleRow):
            row.is_active = False

        if not self._update_rule(rule_id, switch_off):
            logger.warning(f"deactivate: rule {rule_id} not found")

    def save_triggered_alert(self, alert: TriggeredAlert) -> int:
        with self.session_factory() as session:
            row = _alert_row(alert)
            session.add(row)
            session.commit()
            return row.id

    def record_trigger(self, alert: TriggeredAlert, deactivate: bool = False) -> Optional[int]:
        """
        Alert row, counters and deactivation in one versioned transaction.

        The alert row is rebuilt on every attempt, so a stale rule write never
        leaves an orphan alert behind.

        Raises:
            ConcurrentUpdateError: still stale after max_retries attempts
        """
        ts = to_db_time(alert.created_at)
        saved = {}

        def apply(row: AlertRuleRow):
            _bump_counters(row, ts)
            if deactivate:
                row.is_active = False
            alert_row = _alert_row(alert)
            session = object_session(row)
            session.add(alert_row)
            session.flush()
            saved['id'] = alert_row.id

        if not self._update_rule(alert.rule_id, apply):
            logger.warning(f"record_trigger: rule {alert.rule_id} not found (item {alert.item_id})")
            return None
        return saved['id']

    def count_triggers_since(self, rule_id: int, since: datetime) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(TriggeredAlertRow.id)).where(
                    TriggeredAlertRow.rule_id == rule_id,
                    TriggeredAlertRow.created_at >= to_db_time(since),
                )
            ) or 0

    def last_trigger_times(self, rule_id: int, item_ids: Sequence[str]) -> Dict[str, datetime]:
        if not item_ids:
            return {}
        with self.session_factory() as session:
            rows = session.execute(
                select(TriggeredAlertRow.item_id, func.max(TriggeredAlertRow.created_at))
                .where(TriggeredAlertRow.rule_id == rule_id, TriggeredAlertRow.item_id.in_(list(item_ids)))
                .group_by(TriggeredAlertRow.item_id)
            ).all()
        return {item_id: from_db_time(last) for item_id, last in rows}


class SqlCatalogIndex(CatalogIndex):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(Item.id))) or 0

    def all_item_ids(self) -> List[str]:
        with self.session_factory() as session:
            return list(session.scalars(select(Item.id).order_by(Item.id)))

    def query(self, categories: Iterable[str] = (), max_price: Optional[float] = None) -> List[str]:
        categories = list(categories)
        stmt = select(Item.id)
        if categories:
            stmt = stmt.where(Item.category.in_(categories))
        if max_price is not None:
            # Buyer fee included, as in the price field
            total_cost = MarketplacePrice.price * (1 + MarketplacePrice.buyer_fee_percent / 100.0)
            lowest = (
                select(MarketplacePrice.item_id, func.min(total_cost).label("lowest"))
                .group_by(MarketplacePrice.item_id)
                .subquery()
            )
            stmt = stmt.join(lowest, lowest.c.item_id == Item.id).where(lowest.c.lowest <= max_price)

        with self.session_factory() as session:
            return list(session.scalars(stmt.order_by(Item.id)))


class SqlRecipientDirectory(RecipientDirectory):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def push_subscriptions(self, user_id: int) -> List[Dict[str, str]]:
        with self.session_factory() as session:
            subs = session.scalars(
                select(PushSubscription).where(PushSubscription.user_id == user_id).order_by(PushSubscription.id)
            ).all()
            return [
                {"id": str(s.id), "endpoint": s.endpoint, "p256dh": s.p256dh, "auth": s.auth}
                for s in subs
            ]

    def remove_push_subscription(self, subscription_id: str) -> None:
        with self.session_factory() as session:
            session.execute(delete(PushSubscription).where(PushSubscription.id == int(subscription_id)))
            session.commit()
        logger.info(f"Removed expired push subscription {subscription_id}")

    def is_email_suppressed(self, email: str) -> Optional[str]:
        with self.session_factory() as session:
            row = session.get(EmailSuppression, email.strip().lower())
            return row.reason if row else None


class SqlFeedbackSink(FeedbackSink):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def record(self, triggered_alert_id: int, event: str, value: Optional[int] = None) -> None:
        """
        Store an engagement event on the alert record.

        Raises:
            ValidationError: unknown event, or usefulness outside 1-5
        """
        if event not in self.EVENTS:
            raise ValidationError(f"unknown feedback event '{event}'")
        if event == "usefulness" and (not isinstance(value, int) or not 1 <= value <= 5):
            raise ValidationError(f"usefulness must be an integer 1-5, got {value!r}")

        now = to_db_time(datetime.now(timezone.utc))
        with self.session_factory() as session:
            row = session.get(TriggeredAlertRow, triggered_alert_id)
            if row is None:
                logger.warning(f"Feedback for unknown alert {triggered_alert_id} ignored")
                return

            if event == "clicked":
                row.clicked, row.clicked_at = True, row.clicked_at or now
            elif event == "purchased":
                row.purchased, row.purchased_at = True, row.purchased_at or now
            elif event == "dismissed":
                row.dismissed, row.dismissed_at = True, row.dismissed_at or now
            else:
                row.usefulness = value
            session.commit()
