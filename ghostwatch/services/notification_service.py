"""Owner messages and operator alerts through the Bot API."""

import logging
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    def __init__(self, bot: Bot, admin_id: int) -> None:
        self.bot = bot
        self.admin_id = admin_id

    async def notify_owner(self, owner_id: int, text: str) -> Optional[int]:
        """Send *text* to the owner. Returns the message id, or None if it failed."""
        try:
            message = await self.bot.send_message(chat_id=owner_id, text=text)
        except TelegramError as e:
            logger.warning("Could not message owner %s: %s", owner_id, e)
            return None
        return message.message_id

    async def alert_operator(self, text: str) -> None:
        if not self.admin_id:
            logger.warning("Operator alert (no admin configured): %s", text)
            return
        try:
            await self.bot.send_message(chat_id=self.admin_id, text=f"⚠️ {text}")
        except TelegramError as e:
            logger.error("Could not alert operator: %s (alert: %s)", e, text)

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
