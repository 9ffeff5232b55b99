from typing import Optional
from aiogram import types
from aiogram.types import InlineKeyboardMarkup
from aiogram.exceptions import TelegramBadRequest
import logging

logger = logging.getLogger(__name__)


class UXHelper:
    """Отправка и редактирование сообщений без падений на мелких ошибках Telegram"""

    @staticmethod
    async def smooth_edit_text(
        message: types.Message,
        new_text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None
    ):
        """Редактировать сообщение, при неудаче отправить новое"""
        try:
            await message.edit_text(new_text, reply_markup=reply_markup)
        except TelegramBadRequest as e:
            if "message is not modified" not in str(e).lower():
                logger.warning(f"Failed to edit message, sending a new one: {e}")
                await message.answer(new_text, reply_markup=reply_markup)

    @staticmethod
    async def answer_callback(callback: types.CallbackQuery, text: Optional[str] = None, show_alert: bool = False):
        # Callback queries expire after a while; answering a stale one is harmless
        try:
            await callback.answer(text, show_alert=show_alert)
        except TelegramBadRequest as e:
            logger.debug(f"Callback answer failed: {e}")
