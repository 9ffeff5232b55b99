from typing import Iterable, Optional
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from apps.bot.utils import texts

GATEWAY_LABELS = {
    "yookassa": "💳 Банковская карта",
    "cryptocloud": "🪙 Криптовалюта",
}


def main_menu_keyboard(entitled: bool, auto_payment_enabled: bool) -> InlineKeyboardMarkup:
    rows = []
    if entitled:
        rows.append([InlineKeyboardButton(text="🔒 Доступ к каналу", callback_data="channel_access")])
    else:
        rows.append([InlineKeyboardButton(text="💳 Оформить подписку", callback_data="subscribe")])
    rows.append([InlineKeyboardButton(text="📊 Статус подписки", callback_data="status")])
    if auto_payment_enabled:
        rows.append([InlineKeyboardButton(text=texts.DISABLE_AUTOPAY_BUTTON, callback_data="disable_autopay")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def gateway_keyboard(gateway_names: Iterable[str]) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(text=GATEWAY_LABELS.get(name, name), callback_data=f"pay:{name}")]
        for name in gateway_names
    ]
    return InlineKeyboardMarkup(inline_keyboard=rows)


def payment_keyboard(confirmation_url: Optional[str], payment_id: str) -> InlineKeyboardMarkup:
    rows = []
    if confirmation_url:
        rows.append([InlineKeyboardButton(text="💳 Оплатить", url=confirmation_url)])
    rows.append([InlineKeyboardButton(text="🔄 Проверить оплату", callback_data=f"check_payment:{payment_id}")])
    return InlineKeyboardMarkup(inline_keyboard=rows)
