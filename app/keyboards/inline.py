from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from app.config import settings
from app.database.models import User
from app.external.remnawave_api import RemnaWavePlan, RemnaWaveServer


def _back_button(callback_data: str = 'main_menu') -> InlineKeyboardButton:
    return InlineKeyboardButton(text='🔙 Назад', callback_data=callback_data)


def get_main_menu_keyboard(user: User, *, show_trial: bool, is_admin: bool = False) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.row(InlineKeyboardButton(text=f'💰 Баланс {user.balance_rubles:.0f} ₽', callback_data='balance'))
    builder.row(InlineKeyboardButton(text='🚀 Купить', callback_data='buy'))
    if show_trial:
        builder.row(InlineKeyboardButton(text='🎁 Пробный период', callback_data='trial'))
    builder.row(InlineKeyboardButton(text='🔒 Мои подписки', callback_data='my_subscriptions'))
    builder.row(
        InlineKeyboardButton(text='👥 Рефералы', callback_data='referrals'),
        InlineKeyboardButton(text='🎟️ Промокод', callback_data='promocode'),
    )
    if is_admin:
        builder.row(InlineKeyboardButton(text='🛠 Админ-панель', callback_data='admin'))
    return builder.as_markup()


def get_servers_keyboard(servers: list[RemnaWaveServer]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for server in servers:
        builder.row(InlineKeyboardButton(text=f'🌍 {server.name}', callback_data=f'buy:server:{server.id}'))
    builder.row(_back_button())
    return builder.as_markup()


def get_plans_keyboard(server_id: int, plans: list[RemnaWavePlan]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for plan in plans:
        builder.row(InlineKeyboardButton(text=plan.name, callback_data=f'buy:plan:{server_id}:{plan.id}'))
    builder.row(_back_button('buy'))
    return builder.as_markup()


def get_periods_keyboard(server_id: int, plan_id: int, discount_percent: int = 0) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for months in settings.available_periods:
        price = settings.get_period_price_kopeks(months)
        if not price:
            continue
        if discount_percent:
            price = price * (100 - discount_percent) // 100
        builder.row(
            InlineKeyboardButton(
                text=f'{months} мес. — {price / 100:.0f} ₽',
                callback_data=f'buy:period:{server_id}:{plan_id}:{months}',
            )
        )
    builder.row(_back_button(f'buy:server:{server_id}'))
    return builder.as_markup()


def get_balance_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.row(InlineKeyboardButton(text='📜 История операций', callback_data='balance:history'))
    builder.row(_back_button())
    return builder.as_markup()


def get_promocode_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.row(InlineKeyboardButton(text='📝 Ввести промокод', callback_data='promocode:input'))
    builder.row(_back_button())
    return builder.as_markup()


def get_back_keyboard(callback_data: str = 'main_menu') -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[_back_button(callback_data)]])
