"""
Telegram channel: sends the alert to the owner's chat through the bot API.
"""
from typing import Any, Dict, Optional

from telegram import Bot
from telegram.error import BadRequest, Forbidden, TelegramError

from pricealerts.config import TELEGRAM_BOT_TOKEN
from pricealerts.errors import ChannelError
from pricealerts.notif.channels.base import DeliveryChannel, DeliveryReceipt, NotificationPayload
from pricealerts.notif.templates import telegram_text
from pricealerts.rules.types import ChannelName, Owner


async def _send_message_async(token: str, text: str, chat_id: str):
    """Send message to specific chat."""
    async with Bot(token) as bot:
        return await bot.send_message(chat_id=chat_id, text=text, parse_mode='HTML')


class TelegramChannel(DeliveryChannel):
    name = ChannelName.TELEGRAM

    def __init__(self, config: Optional[Dict[str, Any]] = None, token: str = TELEGRAM_BOT_TOKEN):
        super().__init__(config)
        self.token = token

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def send(self, recipient: Owner, payload: NotificationPayload) -> DeliveryReceipt:
        if not recipient.telegram_chat_id:
            raise ChannelError("owner has no Telegram chat", retryable=False)

        text = telegram_text(payload, recipient.timezone or "UTC")
        if self.dry_run:
            return self._dry_run_receipt(recipient, f"chat {recipient.telegram_chat_id}: {text}")

        try:
            message = await _send_message_async(self.token, text, recipient.telegram_chat_id)
        except (Forbidden, BadRequest) as e:
            # Bot blocked by the user or chat gone
            raise ChannelError(f"Telegram rejected message: {e}", retryable=False)
        except TelegramError as e:
            raise ChannelError(f"Telegram send failed: {e}", retryable=True)

        return DeliveryReceipt(self.name, provider_id=str(message.message_id))
