from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional

import telegram

logger = logging.getLogger(__name__)


class ReconciliationAlerter:
    """Pushes operator alerts to the admin Telegram chats.

    Without a bot token the alert only goes to the log.
    """

    def __init__(
        self,
        bot_token: Optional[str],
        admin_ids: Iterable[int] = (),
        bot_factory: Callable[[str], telegram.Bot] = telegram.Bot,
    ) -> None:
        self.bot_token = bot_token
        self.admin_ids: List[int] = [int(x) for x in admin_ids]
        self._bot_factory = bot_factory

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.admin_ids)

    async def notify(self, text: str) -> int:
        """Send `text` to every admin chat; returns how many sends succeeded."""
        logger.critical("RECONCILIATION ALERT: %s", text)
        if not self.enabled:
            return 0
        sent = 0
        try:
            async with self._bot_factory(self.bot_token) as bot:
                for admin_id in self.admin_ids:
                    try:
                        await bot.send_message(chat_id=admin_id, text=text)
                        sent += 1
                    except telegram.error.TelegramError as e:
                        logger.error("Failed to alert admin %s: %s", admin_id, e)
        except telegram.error.TelegramError as e:
            logger.error("Telegram bot unavailable for alerts: %s", e)
        return sent
