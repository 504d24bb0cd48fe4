"""
SMS channel: Twilio REST API.
"""
from typing import Any, Dict, Optional

import aiohttp

from pricealerts.config import TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN
from pricealerts.errors import ChannelError
from pricealerts.notif.channels.base import (
    DeliveryChannel,
    DeliveryReceipt,
    NotificationPayload,
    is_retryable_status,
)
from pricealerts.notif.templates import sms_text
from pricealerts.rules.types import ChannelName, Owner

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class SmsChannel(DeliveryChannel):
    name = ChannelName.SMS

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        account_sid: str = TWILIO_ACCOUNT_SID,
        auth_token: str = TWILIO_AUTH_TOKEN,
    ):
        super().__init__(config)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = self.config.get("from_number")

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, recipient: Owner, payload: NotificationPayload) -> DeliveryReceipt:
        if not recipient.phone:
            raise ChannelError("owner has no phone number", retryable=False)

        text = sms_text(payload)
        if self.dry_run:
            return self._dry_run_receipt(recipient, f"{recipient.phone}: {text}")

        url = TWILIO_MESSAGES_URL.format(sid=self.account_sid)
        form = {"To": recipient.phone, "From": self.from_number, "Body": text}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    data=form,
                    auth=aiohttp.BasicAuth(self.account_sid, self.auth_token),
                ) as response:
                    if 200 <= response.status < 300:
                        data = await response.json()
                        return DeliveryReceipt(self.name, provider_id=data.get("sid"))
                    text = await response.text()
                    # 400 covers invalid or unsubscribed numbers: permanent
                    raise ChannelError(
                        f"Twilio error {response.status}: {text[:200]}",
                        retryable=is_retryable_status(response.status),
                    )
        except aiohttp.ClientError as e:
            raise ChannelError(f"Twilio request failed: {e}", retryable=True)
