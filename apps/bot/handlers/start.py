from aiogram import Dispatcher, types, F
from aiogram.filters import Command, CommandStart

from apps.bot.services.subscription_engine import SubscriptionEngine
from apps.bot.utils import texts
from apps.bot.utils.keyboards import main_menu_keyboard
from apps.bot.utils.time_helper import utcnow
from apps.bot.utils.ux_helper import UXHelper


async def start_handler(message: types.Message, engine: SubscriptionEngine):
    user = await engine.register_user(
        message.from_user.id,
        username=message.from_user.username,
        first_name=message.from_user.first_name
    )

    await message.answer(
        texts.WELCOME.format(name=message.from_user.first_name or "друг"),
        reply_markup=main_menu_keyboard(user.is_entitled(utcnow()), user.auto_payment_enabled)
    )


def status_text(user) -> str:
    if user is None or not user.is_entitled(utcnow()):
        return texts.STATUS_INACTIVE
    return texts.STATUS_ACTIVE.format(
        end=texts.format_end(user.subscription_end),
        auto="включён" if user.auto_payment_enabled else "выключен"
    )


async def status_handler(message: types.Message, engine: SubscriptionEngine):
    user = await engine.get_user(message.from_user.id)
    entitled = user is not None and user.is_entitled(utcnow())
    await message.answer(
        status_text(user),
        reply_markup=main_menu_keyboard(entitled, bool(user and user.auto_payment_enabled))
    )


async def status_callback_handler(callback: types.CallbackQuery, engine: SubscriptionEngine):
    user = await engine.get_user(callback.from_user.id)
    entitled = user is not None and user.is_entitled(utcnow())
    await UXHelper.smooth_edit_text(
        callback.message,
        status_text(user),
        reply_markup=main_menu_keyboard(entitled, bool(user and user.auto_payment_enabled))
    )
    await UXHelper.answer_callback(callback)


def register_start_handlers(dp: Dispatcher):
    dp.message.register(start_handler, CommandStart())
    dp.message.register(status_handler, Command("status"))
    dp.callback_query.register(status_callback_handler, F.data == "status")
