"""
Web push channel.

Posts each of the owner's browser subscriptions to a web-push gateway that
holds the VAPID keys. A 404/410 answer means the subscription expired: it is
removed and not retried.
"""
import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from pricealerts.config import PUSH_GATEWAY_TOKEN
from pricealerts.errors import ChannelError
from pricealerts.interfaces import RecipientDirectory
from pricealerts.notif.channels.base import (
    DeliveryChannel,
    DeliveryReceipt,
    NotificationPayload,
    is_retryable_status,
)
from pricealerts.notif.templates import push_message
from pricealerts.rules.types import ChannelName, Owner

EXPIRED_STATUSES = (404, 410)


class PushChannel(DeliveryChannel):
    name = ChannelName.PUSH

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        directory: Optional[RecipientDirectory] = None,
        token: str = PUSH_GATEWAY_TOKEN,
    ):
        super().__init__(config)
        self.directory = directory
        self.gateway_url = self.config.get("gateway_url")
        self.token = token

    @property
    def configured(self) -> bool:
        return bool(self.gateway_url)

    async def send(self, recipient: Owner, payload: NotificationPayload) -> DeliveryReceipt:
        subscriptions: List[Dict[str, str]] = []
        if self.directory is not None:
            subscriptions = await asyncio.to_thread(self.directory.push_subscriptions, recipient.user_id)
        if not subscriptions:
            raise ChannelError("owner has no push subscriptions", retryable=False)

        message = push_message(payload)
        if self.dry_run:
            return self._dry_run_receipt(recipient, f"{len(subscriptions)} device(s): {message['title']} - {message['body']}")

        delivered = 0
        expired = 0
        errors: List[str] = []
        retryable = False

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with aiohttp.ClientSession() as session:
            # Every device gets the alert; one failing device does not stop the others
            for sub in subscriptions:
                body = {
                    "subscription": {
                        "endpoint": sub["endpoint"],
                        "keys": {"p256dh": sub.get("p256dh", ""), "auth": sub.get("auth", "")},
                    },
                    "payload": message,
                }
                try:
                    async with session.post(self.gateway_url, json=body, headers=headers) as response:
                        if 200 <= response.status < 300:
                            delivered += 1
                            continue
                        if response.status in EXPIRED_STATUSES:
                            expired += 1
                            logger.info(f"Push subscription expired ({response.status}): {sub.get('id')}")
                            await self._remove_subscription(sub.get("id"))
                            continue
                        errors.append(f"gateway {response.status}")
                        retryable = retryable or is_retryable_status(response.status)
                except aiohttp.ClientError as e:
                    errors.append(str(e))
                    retryable = True

        if delivered:
            return DeliveryReceipt(
                self.name,
                detail={"delivered": delivered, "expired": expired, "failed": len(errors)},
            )

        if expired and not errors:
            raise ChannelError(f"410 Gone - {expired} subscription(s) expired and removed", retryable=False)
        raise ChannelError(f"push failed on all devices: {'; '.join(errors)}", retryable=retryable)

    async def _remove_subscription(self, subscription_id: Optional[str]):
        if self.directory is None or subscription_id is None:
            return
        try:
            await asyncio.to_thread(self.directory.remove_push_subscription, subscription_id)
        except Exception as e:
            logger.error(f"Failed to delete expired push subscription {subscription_id}: {e}")
