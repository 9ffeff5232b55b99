from typing import Callable, Dict, Any, Awaitable
from aiogram import BaseMiddleware
from aiogram.types import Message, CallbackQuery, TelegramObject
import logging

from apps.bot.utils import texts

logger = logging.getLogger(__name__)


class ErrorMiddleware(BaseMiddleware):
    """Turns any exception escaping a handler into a "try later" reply"""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        try:
            return await handler(event, data)
        except Exception as e:
            user = getattr(event, "from_user", None)
            logger.error(f"Handler error for user {user.id if user else None}: {e}", exc_info=True)
            await self._apologize(event)
            return None

    @staticmethod
    async def _apologize(event: TelegramObject):
        try:
            if isinstance(event, Message):
                await event.answer(texts.SOMETHING_WENT_WRONG)
            elif isinstance(event, CallbackQuery):
                await event.answer(texts.SOMETHING_WENT_WRONG, show_alert=True)
        except Exception as e:
            logger.error(f"Failed to deliver error reply: {e}")
