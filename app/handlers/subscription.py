import structlog
from aiogram import Dispatcher, F, types
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.models import User
from app.keyboards.inline import get_back_keyboard, get_periods_keyboard, get_plans_keyboard, get_servers_keyboard
from app.services.errors import ServiceError
from app.services.subscription_service import (
    create_trial,
    get_user_subscriptions,
    list_plans,
    list_servers,
    purchase,
)
from app.utils.telegram import safe_edit_text


logger = structlog.get_logger(__name__)


def _parse_ints(callback_data: str, prefix: str) -> list[int] | None:
    try:
        return [int(part) for part in callback_data.removeprefix(prefix).split(':')]
    except ValueError:
        return None


async def handle_trial(callback: types.CallbackQuery, db_user: User, db: AsyncSession):
    user_id = db_user.id
    try:
        subscription = await create_trial(db, user_id)
    except ServiceError as exc:
        logger.info('Пробный период не выдан', user_id=user_id, error_code=exc.detail['error_code'])
        await callback.answer(exc.user_message, show_alert=True)
        return

    await safe_edit_text(
        callback,
        f'🎁 Пробный период активирован!\n\nДоступ открыт до {subscription.expires_at:%d.%m.%Y %H:%M} UTC.',
        get_back_keyboard(),
    )
    await callback.answer()


async def handle_buy(callback: types.CallbackQuery):
    try:
        servers = await list_servers()
    except ServiceError as exc:
        await callback.answer(exc.user_message, show_alert=True)
        return

    if not servers:
        await callback.answer('Сейчас нет доступных серверов', show_alert=True)
        return
    await safe_edit_text(callback, '🌍 Выберите сервер:', get_servers_keyboard(servers))
    await callback.answer()


async def handle_buy_server(callback: types.CallbackQuery):
    parsed = _parse_ints(callback.data or '', 'buy:server:')
    if not parsed:
        await callback.answer('Некорректный запрос', show_alert=True)
        return

    server_id = parsed[0]
    try:
        plans = await list_plans(server_id)
    except ServiceError as exc:
        await callback.answer(exc.user_message, show_alert=True)
        return

    if not plans:
        await callback.answer('На этом сервере нет доступных тарифов', show_alert=True)
        return
    await safe_edit_text(callback, '📦 Выберите тариф:', get_plans_keyboard(server_id, plans))
    await callback.answer()


async def handle_buy_plan(callback: types.CallbackQuery, db_user: User):
    parsed = _parse_ints(callback.data or '', 'buy:plan:')
    if not parsed or len(parsed) != 2:
        await callback.answer('Некорректный запрос', show_alert=True)
        return

    server_id, plan_id = parsed
    discount = int(db_user.promo_discount_percent or 0)
    text = '⏱ Выберите срок подписки:'
    if discount:
        text += f'\n\n🎟 Скидка {discount}% по промокоду будет применена.'
    await safe_edit_text(callback, text, get_periods_keyboard(server_id, plan_id, discount))
    await callback.answer()


async def handle_buy_period(callback: types.CallbackQuery, db_user: User, db: AsyncSession):
    parsed = _parse_ints(callback.data or '', 'buy:period:')
    if not parsed or len(parsed) != 3:
        await callback.answer('Некорректный запрос', show_alert=True)
        return

    server_id, plan_id, months = parsed
    price_kopeks = settings.get_period_price_kopeks(months)
    if not price_kopeks:
        await callback.answer('Такой срок недоступен', show_alert=True)
        return

    user_id = db_user.id
    try:
        subscription = await purchase(
            db,
            user_id,
            server_id=server_id,
            plan_id=plan_id,
            duration_months=months,
            price_kopeks=price_kopeks,
        )
    except ServiceError as exc:
        logger.info('Покупка не выполнена', user_id=user_id, error_code=exc.detail['error_code'])
        await callback.answer(exc.user_message, show_alert=True)
        return

    await safe_edit_text(
        callback,
        f'✅ Подписка «{subscription.plan_name}» оформлена!\n\n'
        f'Списано: {subscription.price_kopeks / 100:.2f} ₽\n'
        f'Действует до: {subscription.expires_at:%d.%m.%Y}',
        get_back_keyboard(),
    )
    await callback.answer()


async def handle_my_subscriptions(callback: types.CallbackQuery, db_user: User, db: AsyncSession):
    subscriptions = await get_user_subscriptions(db, db_user.id)
    if not subscriptions:
        text = 'У вас пока нет подписок.'
    else:
        lines = ['🔒 Ваши подписки:\n']
        for subscription in subscriptions[:10]:
            title = subscription.plan_name or ('Пробный период' if subscription.is_trial else f'Тариф #{subscription.plan_id}')
            lines.append(
                f'• {title}: {subscription.status_display}, до {subscription.expires_at:%d.%m.%Y}'
            )
        text = '\n'.join(lines)
    await safe_edit_text(callback, text, get_back_keyboard())
    await callback.answer()


def register_handlers(dp: Dispatcher):
    dp.callback_query.register(handle_trial, F.data == 'trial')
    dp.callback_query.register(handle_buy, F.data == 'buy')
    dp.callback_query.register(handle_buy_server, F.data.startswith('buy:server:'))
    dp.callback_query.register(handle_buy_plan, F.data.startswith('buy:plan:'))
    dp.callback_query.register(handle_buy_period, F.data.startswith('buy:period:'))
    dp.callback_query.register(handle_my_subscriptions, F.data == 'my_subscriptions')
