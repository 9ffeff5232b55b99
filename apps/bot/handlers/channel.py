import logging

from aiogram import Dispatcher, types, F

from apps.bot.services.channel_gatekeeper import ChannelGatekeeper
from apps.bot.services.subscription_engine import SubscriptionEngine
from apps.bot.utils import texts
from apps.bot.utils.ux_helper import UXHelper

logger = logging.getLogger(__name__)


async def channel_access_handler(callback: types.CallbackQuery, engine: SubscriptionEngine):
    await UXHelper.answer_callback(callback)
    link = engine.settings.private_channel_link
    if not link or not await engine.is_entitled(callback.from_user.id):
        await callback.message.answer(texts.CHANNEL_NO_ACCESS)
        return
    await callback.message.answer(texts.CHANNEL_LINK.format(link=link))


async def join_request_handler(join_request: types.ChatJoinRequest, gatekeeper: ChannelGatekeeper):
    if join_request.chat.id != gatekeeper.channel_id:
        logger.info(f"Join request for unmanaged chat {join_request.chat.id} ignored")
        return

    await gatekeeper.handle_join_request(
        telegram_id=join_request.from_user.id,
        chat_id=join_request.chat.id,
        username=join_request.from_user.username,
        chat_title=join_request.chat.title
    )


def register_channel_handlers(dp: Dispatcher):
    dp.callback_query.register(channel_access_handler, F.data == "channel_access")
    dp.chat_join_request.register(join_request_handler)
