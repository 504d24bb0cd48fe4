"""
Email channel: Resend HTTP API.

Checks the suppression list before sending and adds a one-click unsubscribe
link per rule.
"""
import asyncio
import hashlib
import hmac
from typing import Any, Dict, Optional

import aiohttp

from pricealerts.config import APP_URL, RESEND_API_KEY, UNSUBSCRIBE_SECRET
from pricealerts.errors import ChannelError
from pricealerts.interfaces import RecipientDirectory
from pricealerts.notif.channels.base import (
    DeliveryChannel,
    DeliveryReceipt,
    NotificationPayload,
    is_retryable_status,
)
from pricealerts.notif.templates import email_html, email_subject
from pricealerts.rules.types import ChannelName, Owner

RESEND_API_URL = "https://api.resend.com/emails"


def generate_unsubscribe_token(rule_id: int, secret: str = UNSUBSCRIBE_SECRET) -> str:
    """Short SHA-256 token binding an unsubscribe link to one rule."""
    return hashlib.sha256(f"{rule_id}:{secret}".encode("utf-8")).hexdigest()[:16]


def verify_unsubscribe_token(rule_id: int, token: str, secret: str = UNSUBSCRIBE_SECRET) -> bool:
    return hmac.compare_digest(generate_unsubscribe_token(rule_id, secret), token)


class EmailChannel(DeliveryChannel):
    name = ChannelName.EMAIL

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        api_key: str = RESEND_API_KEY,
        directory: Optional[RecipientDirectory] = None,
        app_url: str = APP_URL,
    ):
        super().__init__(config)
        self.api_key = api_key
        self.directory = directory
        self.app_url = app_url.rstrip("/")
        self.api_url = self.config.get("api_url") or RESEND_API_URL
        self.from_address = self.config.get("from_address") or "Price Alerts <alerts@example.com>"

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def unsubscribe_url(self, rule_id: int) -> str:
        return f"{self.app_url}/api/unsubscribe?alert={rule_id}&token={generate_unsubscribe_token(rule_id)}"

    async def send(self, recipient: Owner, payload: NotificationPayload) -> DeliveryReceipt:
        if not recipient.email:
            raise ChannelError("owner has no email address", retryable=False)

        if self.directory is not None:
            suppressed = await asyncio.to_thread(self.directory.is_email_suppressed, recipient.email)
            if suppressed:
                raise ChannelError(f"Email address is suppressed: {suppressed}", retryable=False)

        subject = email_subject(payload)
        html = email_html(
            payload,
            manage_url=f"{self.app_url}/alerts",
            unsubscribe_url=self.unsubscribe_url(payload.rule_id),
            tz_name=recipient.timezone or "UTC",
        )

        if self.dry_run:
            return self._dry_run_receipt(recipient, f"{recipient.email}: {subject}")

        body = {
            "from": self.from_address,
            "to": [recipient.email],
            "subject": subject,
            "html": html,
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.api_url,
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                ) as response:
                    if 200 <= response.status < 300:
                        data = await response.json()
                        return DeliveryReceipt(self.name, provider_id=data.get("id"), detail={"subject": subject})
                    text = await response.text()
                    raise ChannelError(
                        f"Resend API error {response.status}: {text[:200]}",
                        retryable=is_retryable_status(response.status),
                    )
        except aiohttp.ClientError as e:
            raise ChannelError(f"Resend request failed: {e}", retryable=True)
