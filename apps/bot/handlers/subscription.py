import logging
import re

from aiogram import Dispatcher, types, F
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup

from apps.bot.services.exceptions import GatewayError, NotFoundError, ValidationError
from apps.bot.services.subscription_engine import SubscriptionEngine
from apps.bot.utils import texts
from apps.bot.utils.keyboards import gateway_keyboard, payment_keyboard
from apps.bot.utils.ux_helper import UXHelper
from shared.models.payment import PaymentStatus

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmailStates(StatesGroup):
    waiting_email = State()


def subscribe_text(engine: SubscriptionEngine) -> str:
    return texts.CHOOSE_GATEWAY.format(
        days=engine.settings.subscription_period_days,
        amount=engine.settings.subscription_price,
        currency=engine.settings.currency
    )


async def _already_covered(engine: SubscriptionEngine, telegram_id: int):
    user = await engine.get_user(telegram_id)
    if user and user.auto_payment_enabled and user.is_entitled(engine.clock()):
        return texts.ALREADY_SUBSCRIBED.format(end=texts.format_end(user.subscription_end))
    return None


async def subscribe_command_handler(message: types.Message, engine: SubscriptionEngine):
    await engine.register_user(message.from_user.id, message.from_user.username, message.from_user.first_name)

    covered = await _already_covered(engine, message.from_user.id)
    if covered:
        await message.answer(covered)
        return

    await message.answer(subscribe_text(engine), reply_markup=gateway_keyboard(engine.gateways.keys()))


async def subscribe_callback_handler(callback: types.CallbackQuery, engine: SubscriptionEngine):
    covered = await _already_covered(engine, callback.from_user.id)
    if covered:
        await UXHelper.smooth_edit_text(callback.message, covered)
    else:
        await UXHelper.smooth_edit_text(
            callback.message,
            subscribe_text(engine),
            reply_markup=gateway_keyboard(engine.gateways.keys())
        )
    await UXHelper.answer_callback(callback)


async def _send_payment_link(message: types.Message, telegram_id: int, gateway_name: str, engine: SubscriptionEngine, state: FSMContext):
    """Create the charge; ask for an email first when the gateway needs a receipt"""
    try:
        handle = await engine.initiate_charge(telegram_id, gateway_name)
    except ValidationError as e:
        if e.field != "email":
            raise
        await state.set_state(EmailStates.waiting_email)
        await state.update_data(gateway=gateway_name)
        await message.answer(texts.ASK_EMAIL)
        return
    except GatewayError as e:
        logger.error(f"Charge creation via {gateway_name} failed for user {telegram_id}: {e}")
        await message.answer(texts.GATEWAY_UNAVAILABLE)
        return

    await message.answer(
        texts.PAYMENT_LINK.format(amount=handle.amount, currency=handle.currency),
        reply_markup=payment_keyboard(handle.confirmation_url, handle.payment_id)
    )


async def pay_handler(callback: types.CallbackQuery, state: FSMContext, engine: SubscriptionEngine):
    gateway_name = callback.data.split(":", 1)[1]
    await UXHelper.answer_callback(callback)
    await engine.register_user(callback.from_user.id, callback.from_user.username, callback.from_user.first_name)
    await _send_payment_link(callback.message, callback.from_user.id, gateway_name, engine, state)


async def email_handler(message: types.Message, state: FSMContext, engine: SubscriptionEngine):
    email = (message.text or "").strip()
    if not EMAIL_RE.match(email):
        await message.answer(texts.INVALID_EMAIL)
        return

    data = await state.get_data()
    await state.clear()
    await engine.set_email(message.from_user.id, email)
    await message.answer(texts.EMAIL_SAVED)

    gateway_name = data.get("gateway")
    if gateway_name:
        await _send_payment_link(message, message.from_user.id, gateway_name, engine, state)


async def check_payment_handler(callback: types.CallbackQuery, engine: SubscriptionEngine):
    payment_id = callback.data.split(":", 1)[1]
    try:
        status = await engine.refresh_payment(payment_id, telegram_id=callback.from_user.id)
    except NotFoundError:
        await UXHelper.answer_callback(callback, texts.SOMETHING_WENT_WRONG, show_alert=True)
        return
    except GatewayError as e:
        logger.error(f"Payment check for {payment_id} failed: {e}")
        await UXHelper.answer_callback(callback, texts.GATEWAY_UNAVAILABLE, show_alert=True)
        return

    if status == PaymentStatus.PENDING:
        await UXHelper.answer_callback(callback, texts.PAYMENT_STILL_PENDING, show_alert=True)
    else:
        # the outcome message is delivered by the engine
        await UXHelper.answer_callback(callback)


async def disable_autopay_handler(callback: types.CallbackQuery, engine: SubscriptionEngine):
    disabled = await engine.disable_auto_payment(callback.from_user.id)
    await UXHelper.answer_callback(callback)
    await callback.message.answer(
        texts.AUTO_PAYMENT_CANCELLED_BY_USER if disabled else texts.AUTO_PAYMENT_NOT_ENABLED
    )


def register_subscription_handlers(dp: Dispatcher):
    dp.message.register(subscribe_command_handler, Command("subscribe"))
    dp.message.register(email_handler, EmailStates.waiting_email, F.text)
    dp.callback_query.register(subscribe_callback_handler, F.data == "subscribe")
    dp.callback_query.register(pay_handler, F.data.startswith("pay:"))
    dp.callback_query.register(check_payment_handler, F.data.startswith("check_payment:"))
    dp.callback_query.register(disable_autopay_handler, F.data == "disable_autopay")
