# -*- coding: utf-8 -*-
"""
Domain value objects shared by the evaluator, throttle, dispatcher and stores.
All of them are frozen: rules and snapshots are read-only for the whole sweep.
"""
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from pricealerts.rules.conditions import Condition


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ChannelName(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    TELEGRAM = "telegram"


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Owner:
    user_id: int
    email: Optional[str] = None
    phone: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    timezone: Optional[str] = None


@dataclass(frozen=True)
class QuietHours:
    """
    Wall-clock window during which a rule is not evaluated.
    Half-open [start, end); end < start wraps midnight (22:00-08:00).
    """
    start: time
    end: time
    timezone: Optional[str] = None

    def contains(self, local_time: time) -> bool:
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= local_time < self.end
        return local_time >= self.start or local_time < self.end

    @classmethod
    def parse(cls, start: str, end: str, timezone: Optional[str] = None) -> "QuietHours":
        """Parse 'HH:MM' strings."""
        return cls(_parse_hhmm(start), _parse_hhmm(end), timezone)


def _parse_hhmm(value: str) -> time:
    hour, minute = map(int, value.split(":"))
    return time(hour=hour, minute=minute)


@dataclass(frozen=True)
class AlertRule:
    id: int
    owner: Owner
    name: str
    condition: Condition
    item_ids: Tuple[str, ...] = ()
    categories: FrozenSet[str] = frozenset()
    max_price: Optional[float] = None
    priority: Priority = Priority.MEDIUM
    delivery_channels: Tuple[ChannelName, ...] = (ChannelName.EMAIL,)
    is_active: bool = True
    is_one_time: bool = False
    max_alerts_per_day: Optional[int] = 10
    cooldown_hours: float = 24.0
    quiet_hours: Optional[QuietHours] = None
    last_triggered_at: Optional[datetime] = None
    trigger_count: int = 0
    version: int = 1

    @property
    def has_filters(self) -> bool:
        return bool(self.item_ids or self.categories or self.max_price is not None)


@dataclass(frozen=True)
class PlatformQuote:
    """Current listing of one item on one platform. Fees are percentages."""
    platform: str
    price: float
    buyer_fee_percent: float = 0.0
    seller_fee_percent: float = 0.0
    listing_url: Optional[str] = None

    @property
    def total_cost(self) -> float:
        """What a buyer pays, fees included."""
        return self.price * (1 + self.buyer_fee_percent / 100)

    @property
    def net_proceeds(self) -> float:
        """What a seller keeps after the platform's sale fee."""
        return self.price * (1 - self.seller_fee_percent / 100)


@dataclass(frozen=True)
class MarketSnapshot:
    """Point-in-time market view of one item, shared by every rule in a sweep."""
    item_id: str
    name: str = ""
    category: Optional[str] = None
    image_url: Optional[str] = None
    quotes: Tuple[PlatformQuote, ...] = ()
    price_7d_ago: Optional[float] = None
    moving_average_30d: Optional[float] = None
    volume: Optional[float] = None
    volume_30d_ago: Optional[float] = None
    recommendation: Optional[str] = None
    risk_level: Optional[str] = None
    captured_at: Optional[datetime] = None

    @property
    def best_quote(self) -> Optional[PlatformQuote]:
        if not self.quotes:
            return None
        return min(self.quotes, key=lambda q: q.total_cost)

    @property
    def lowest_listing_price(self) -> Optional[float]:
        """Lowest listed price before fees, the basis price history is recorded on."""
        if not self.quotes:
            return None
        return min(q.price for q in self.quotes)

    @property
    def display_name(self) -> str:
        return self.name or self.item_id


@dataclass(frozen=True)
class DeliveryOutcome:
    channel: ChannelName
    status: DeliveryStatus
    attempts: int = 1
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS


@dataclass(frozen=True)
class TriggeredAlert:
    """Immutable record of one rule firing for one item."""
    rule_id: int
    item_id: str
    owner_id: int
    reason: str
    values: Mapping[str, object]
    priority: Priority
    deliveries: Tuple[DeliveryOutcome, ...]
    created_at: datetime
    id: Optional[int] = None
    listing_url: Optional[str] = None

    @property
    def delivered_via(self) -> Dict[str, str]:
        """{"email": "success", "push": "failure"}"""
        return {d.channel.value: d.status.value for d in self.deliveries}

    @property
    def fully_delivered(self) -> bool:
        return all(d.succeeded for d in self.deliveries)


@dataclass
class SweepReport:
    """Outcome of one sweep (mutable while the sweep runs)."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    rules_loaded: int = 0
    rules_evaluated: int = 0
    rules_suppressed: int = 0
    rules_unreached: int = 0
    rules_failed: int = 0
    items_evaluated: int = 0
    alerts_triggered: int = 0
    overrun: bool = False
    suppressed: Dict[str, int] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def as_dict(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "rules_loaded": self.rules_loaded,
            "rules_evaluated": self.rules_evaluated,
            "rules_suppressed": self.rules_suppressed,
            "rules_unreached": self.rules_unreached,
            "rules_failed": self.rules_failed,
            "items_evaluated": self.items_evaluated,
            "alerts_triggered": self.alerts_triggered,
            "overrun": self.overrun,
            "suppressed": dict(self.suppressed),
        }
