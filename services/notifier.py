"""
Owner notifications over Telegram
Maps python-telegram-bot errors onto the retryable/terminal notification errors
"""

import logging
from datetime import timedelta
from typing import Callable, Optional, Union

from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TimedOut

from errors import NotificationDeliveryError, NotificationRejectedError

logger = logging.getLogger(__name__)

ChatId = Union[int, str]


def default_chat_id(owner_id: str) -> ChatId:
    """Owners are identified by their Telegram user id"""
    try:
        return int(owner_id)
    except (TypeError, ValueError):
        return owner_id


class TelegramNotifier:

    def __init__(self, bot, chat_id_resolver: Optional[Callable[[str], ChatId]] = None):
        self.bot = bot
        self.chat_id_resolver = chat_id_resolver or default_chat_id

    async def send(self, owner_id: str, text: str) -> None:
        """
        Deliver an HTML message to the owner

        Raises:
            NotificationDeliveryError: flood control, timeout or network failure (retry later)
            NotificationRejectedError: bot blocked or chat invalid (do not retry)
        """
        chat_id = self.chat_id_resolver(owner_id)
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode='HTML')
        except RetryAfter as e:
            retry_after = e.retry_after
            if isinstance(retry_after, timedelta):
                retry_after = retry_after.total_seconds()
            logger.warning(f"🚦 Telegram flood control for {chat_id}, retry in {retry_after}s")
            raise NotificationDeliveryError(f"Telegram flood control: {e}", retry_after=float(retry_after))
        except Forbidden as e:
            logger.warning(f"🚫 Telegram refused message to {chat_id}: {e}")
            raise NotificationRejectedError(f"Telegram refused delivery: {e}")
        except BadRequest as e:
            # BadRequest subclasses NetworkError, so it must be caught first
            logger.warning(f"🚫 Telegram rejected message to {chat_id}: {e}")
            raise NotificationRejectedError(f"Telegram rejected message: {e}")
        except (TimedOut, NetworkError) as e:
            logger.warning(f"🌐 Telegram delivery to {chat_id} failed: {e}")
            raise NotificationDeliveryError(f"Telegram delivery failed: {e}")

        logger.info(f"📨 Notification delivered to {chat_id}")
