"""
Outbound Telegram transport: user messages and private channel membership calls
"""
import logging
from typing import List, NamedTuple, Optional, Sequence

from aiogram import Bot
from aiogram.enums import ChatMemberStatus
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

logger = logging.getLogger(__name__)

ELEVATED_MEMBER_STATUSES = frozenset({
    ChatMemberStatus.ADMINISTRATOR.value,
    ChatMemberStatus.CREATOR.value,
})

CURRENT_MEMBER_STATUSES = frozenset({
    ChatMemberStatus.MEMBER.value,
    ChatMemberStatus.RESTRICTED.value,
    ChatMemberStatus.ADMINISTRATOR.value,
    ChatMemberStatus.CREATOR.value,
})


class Button(NamedTuple):
    text: str
    callback_data: Optional[str] = None
    url: Optional[str] = None


def build_keyboard(buttons: Optional[Sequence[Sequence[Button]]]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text=b.text, callback_data=b.callback_data, url=b.url) for b in row]
        for row in buttons
    ])


class TelegramNotifier:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, telegram_id: int, text: str, buttons: Optional[List[List[Button]]] = None) -> bool:
        """Deliver a message; failures are logged and never raised"""
        try:
            await self.bot.send_message(
                chat_id=telegram_id,
                text=text,
                reply_markup=build_keyboard(buttons)
            )
            return True
        except TelegramForbiddenError:
            logger.warning(f"User {telegram_id} blocked the bot, message dropped")
        except Exception as e:
            logger.error(f"Failed to send message to user {telegram_id}: {e}")
        return False

    async def approve_join_request(self, chat_id: int, telegram_id: int):
        await self.bot.approve_chat_join_request(chat_id=chat_id, user_id=telegram_id)

    async def decline_join_request(self, chat_id: int, telegram_id: int):
        await self.bot.decline_chat_join_request(chat_id=chat_id, user_id=telegram_id)

    async def get_member_status(self, chat_id: int, telegram_id: int) -> Optional[str]:
        try:
            member = await self.bot.get_chat_member(chat_id=chat_id, user_id=telegram_id)
        except TelegramBadRequest as e:
            # "user not found" / "participant_id_invalid" for users who never joined
            logger.info(f"No membership for user {telegram_id} in {chat_id}: {e}")
            return None
        return member.status.value if hasattr(member.status, "value") else str(member.status)

    async def remove_member(self, chat_id: int, telegram_id: int):
        """Ban and immediately unban so the user can file a new join request later"""
        await self.bot.ban_chat_member(chat_id=chat_id, user_id=telegram_id)
        await self.bot.unban_chat_member(chat_id=chat_id, user_id=telegram_id, only_if_banned=True)
