from aiogram import Dispatcher
from .start import register_start_handlers
from .subscription import register_subscription_handlers
from .channel import register_channel_handlers


def register_handlers(dp: Dispatcher):
    register_start_handlers(dp)
    register_subscription_handlers(dp)
    register_channel_handlers(dp)
