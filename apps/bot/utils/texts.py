"""Тексты сообщений бота"""
from datetime import datetime
from typing import Optional


def format_end(end: Optional[datetime]) -> str:
    if end is None:
        return "бессрочно"
    return end.strftime("%d.%m.%Y %H:%M") + " UTC"


WELCOME = (
    "👋 Привет, {name}!\n\n"
    "Это бот доступа к закрытому каналу. Оформите подписку, "
    "и после оплаты заявка на вступление будет одобрена автоматически."
)

CHOOSE_GATEWAY = "💳 Подписка на {days} дней: {amount} {currency}\n\nВыберите способ оплаты:"

PAYMENT_LINK = (
    "💳 Счёт на {amount} {currency} создан.\n\n"
    "Нажмите «Оплатить», чтобы перейти к форме оплаты. "
    "После оплаты подписка активируется автоматически."
)

ASK_EMAIL = "📧 Для отправки чека укажите ваш e-mail одним сообщением."
INVALID_EMAIL = "❌ Не похоже на e-mail. Попробуйте ещё раз."
EMAIL_SAVED = "✅ E-mail сохранён."

GATEWAY_UNAVAILABLE = "⚠️ Платёжная система сейчас недоступна. Попробуйте позже."
SOMETHING_WENT_WRONG = "⚠️ Что-то пошло не так. Попробуйте позже."

PAYMENT_SUCCEEDED = (
    "✅ Оплата прошла успешно!\n\n"
    "💰 Сумма: {amount} {currency}\n"
    "📅 Подписка активна до: {end}\n"
    "🔒 Доступ к закрытому каналу открыт."
)
AUTO_PAYMENT_ENABLED = "🔄 Автоплатёж включён, карта сохранена: {card}"
DISABLE_AUTOPAY_BUTTON = "🛑 Отключить автоплатёж"
PAYMENT_CANCELLED = (
    "❌ Платёж на {amount} {currency} отменён.\n\n"
    "Вы можете попробовать оплатить снова: /subscribe"
)
PAYMENT_STILL_PENDING = "⏳ Платёж ещё не завершён. Проверьте чуть позже."

AUTO_PAYMENT_SUCCEEDED = (
    "✅ Автоплатёж выполнен!\n\n"
    "💳 Списано: {amount} {currency}\n"
    "📅 Подписка продлена до: {end}"
)
AUTO_PAYMENT_DISABLED = (
    "❌ Автоплатёж не удался и был отключён.\n\n"
    "🚫 Причина: {reason}\n"
    "Чтобы продлить подписку, оплатите вручную: /subscribe"
)
AUTO_PAYMENT_CANCELLED_BY_USER = "🛑 Автоплатёж отключён. Подписка действует до конца оплаченного периода."
AUTO_PAYMENT_NOT_ENABLED = "ℹ️ Автоплатёж не был включён."

SUBSCRIPTION_EXPIRED = (
    "⌛ Срок вашей подписки истёк, доступ к каналу закрыт.\n\n"
    "Продлить подписку: /subscribe"
)

STATUS_ACTIVE = "📊 Подписка активна до: {end}\n🔄 Автоплатёж: {auto}"
STATUS_INACTIVE = "📊 Активной подписки нет.\n\nОформить: /subscribe"
ALREADY_SUBSCRIBED = "✅ У вас уже есть активная подписка с автоплатежом до {end}."

CHANNEL_LINK = "🔒 Ссылка на закрытый канал: {link}\n\nОтправьте заявку на вступление, она будет одобрена автоматически."
CHANNEL_NO_ACCESS = "❌ Для доступа к каналу нужна активная подписка: /subscribe"

JOIN_UNKNOWN_USER = (
    "❌ Доступ к каналу запрещён\n\n"
    "Вы не зарегистрированы в боте. Нажмите /start и оформите подписку: /subscribe"
)
JOIN_APPROVED = (
    "🎉 Добро пожаловать в закрытый канал!\n\n"
    "⚠️ Доступ действует только при активной подписке."
)
JOIN_DECLINED = (
    "❌ Доступ к каналу запрещён\n\n"
    "Для вступления нужна активная подписка.\n"
    "💳 Оформить подписку: /subscribe\n"
    "После оплаты отправьте заявку повторно."
)
JOIN_PENDING_REVIEW = "⏳ Заявка на вступление получена и будет рассмотрена администратором."
