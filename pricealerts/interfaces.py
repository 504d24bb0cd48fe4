# -*- coding: utf-8 -*-
"""
Collaborator interfaces consumed by the engine.

The SQLAlchemy implementations live in storage/ and datafeeds/; tests use
in-memory fakes. All methods are synchronous and the engine calls them from a
worker thread with a timeout.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from pricealerts.rules.types import AlertRule, MarketSnapshot, TriggeredAlert


class RuleStore(ABC):
    """Owns rule definitions, rule counters and triggered-alert history."""

    @abstractmethod
    def list_active_rules(self) -> List[AlertRule]:
        ...

    @abstractmethod
    def get_rule(self, rule_id: int) -> Optional[AlertRule]:
        ...

    @abstractmethod
    def increment_trigger(self, rule_id: int, item_id: str, timestamp: datetime) -> None:
        """Bump trigger_count and last_triggered_at under optimistic versioning."""

    @abstractmethod
    def deactivate(self, rule_id: int) -> None:
        ...

    @abstractmethod
    def save_triggered_alert(self, alert: TriggeredAlert) -> int:
        """Persist an alert record and return its id."""

    @abstractmethod
    def record_trigger(self, alert: TriggeredAlert, deactivate: bool = False) -> Optional[int]:
        """
        Save the alert, bump the rule counters and optionally deactivate the
        rule in one transaction. Either all of it is stored or none of it.

        Returns the alert id, or None if the rule no longer exists.
        """

    @abstractmethod
    def count_triggers_since(self, rule_id: int, since: datetime) -> int:
        ...

    @abstractmethod
    def last_trigger_times(self, rule_id: int, item_ids: Sequence[str]) -> Dict[str, datetime]:
        """Most recent trigger time per item, only for items that have one."""


class CatalogIndex(ABC):
    """Indexed view of tracked items maintained by the catalog pipeline."""

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def all_item_ids(self) -> List[str]:
        ...

    @abstractmethod
    def query(self, categories: Iterable[str] = (), max_price: Optional[float] = None) -> List[str]:
        """Item ids in any of `categories` (if given) whose lowest fee-inclusive price is <= max_price."""


class MarketDataProvider(ABC):

    @abstractmethod
    def snapshot(self, item_ids: Sequence[str], as_of: Optional[datetime] = None) -> List[MarketSnapshot]:
        """One snapshot per known item; unknown ids are left out."""


class RecipientDirectory(ABC):
    """Delivery addresses that change outside rule authoring."""

    @abstractmethod
    def push_subscriptions(self, user_id: int) -> List[Dict[str, str]]:
        """[{"id", "endpoint", "p256dh", "auth"}, ...]"""

    @abstractmethod
    def remove_push_subscription(self, subscription_id: str) -> None:
        ...

    @abstractmethod
    def is_email_suppressed(self, email: str) -> Optional[str]:
        """Suppression reason, or None when the address may be mailed."""


class FeedbackSink(ABC):
    """Receives engagement events; the engine never reads them back."""

    EVENTS = ("clicked", "purchased", "dismissed", "usefulness")

    @abstractmethod
    def record(self, triggered_alert_id: int, event: str, value: Optional[int] = None) -> None:
        ...
