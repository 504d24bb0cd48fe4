"""
Base channel interface for delivering triggered alerts
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from loguru import logger

from pricealerts.rules.types import ChannelName, Owner, Priority


@dataclass(frozen=True)
class NotificationPayload:
    """Channel-neutral content of one alert notification."""
    rule_id: int
    rule_name: str
    item_id: str
    item_name: str
    title: str
    body: str
    priority: Priority
    price: Optional[float] = None
    url: Optional[str] = None
    icon: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeliveryReceipt:
    """Result of a successful send."""
    channel: ChannelName
    provider_id: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None


class DeliveryChannel(ABC):
    """Base class for all delivery channels"""

    name: ChannelName

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Args:
            config: Channel-specific configuration (delivery.channels.<name>)
        """
        self.config = config or {}
        self.enabled = self.config.get('enabled', True)
        self.force_dry_run = bool(self.config.get('dry_run', False))

    @property
    def configured(self) -> bool:
        """Credentials and endpoints are present."""
        return True

    @property
    def dry_run(self) -> bool:
        """Sends are logged instead of delivered (forced, or credentials missing)."""
        return self.force_dry_run or not self.configured

    @abstractmethod
    async def send(self, recipient: Owner, payload: NotificationPayload) -> DeliveryReceipt:
        """
        Deliver one notification.

        Raises:
            ChannelError: retryable=False for permanent failures
        """

    def _dry_run_receipt(self, recipient: Owner, text: str) -> DeliveryReceipt:
        logger.info(f"[dry-run] [{self.name.value}] user={recipient.user_id} -> {text}")
        return DeliveryReceipt(self.name, detail={"dry_run": True})

    def __repr__(self):
        return f"{self.__class__.__name__}(enabled={self.enabled}, dry_run={self.dry_run})"


def is_retryable_status(status: int) -> bool:
    """HTTP statuses worth another attempt: timeouts, rate limits, server errors."""
    return status in (408, 425, 429) or status >= 500
