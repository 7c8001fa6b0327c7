from decimal import Decimal, InvalidOperation

import structlog
from aiogram import Dispatcher, F, types
from aiogram.filters import Command, CommandObject
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.user import get_user_by_id, get_user_by_telegram_id
from app.database.models import User
from app.keyboards.inline import get_back_keyboard
from app.services import activity_log_service, broadcast_service, stats_service, user_service
from app.services.errors import ServiceError
from app.services.promocode_service import get_valid_promocodes
from app.services.subscription_service import expire_subscriptions, retry_pending_deprovisions
from app.utils.telegram import safe_edit_text


logger = structlog.get_logger(__name__)

ADMIN_HELP = (
    '🛠 Команды администратора\n\n'
    '/admin stats — статистика\n'
    '/admin users [запрос] — поиск пользователей\n'
    '/admin user <id> — карточка пользователя\n'
    '/admin block <id> — заблокировать\n'
    '/admin unblock <id> — разблокировать\n'
    '/admin balance <id> <сумма> — изменить баланс (₽, минус списывает)\n'
    '/admin notify <текст> — рассылка всем\n'
    '/admin logs [id] — журнал действий\n'
    '/sweep — обработать истёкшие подписки'
)


def format_stats(stats: stats_service.BotStats) -> str:
    return (
        '📊 Статистика\n\n'
        f'👥 Пользователей: {stats.users_total} (новых сегодня: {stats.users_new_today})\n'
        f'🚫 Заблокировано: {stats.users_blocked}\n'
        f'🔐 Активных подписок: {stats.active_subscriptions} (пробных: {stats.active_trials})\n'
        f'💰 Выручка: {stats.revenue_total_kopeks / 100:.2f} ₽ (сегодня: {stats.revenue_today_kopeks / 100:.2f} ₽)\n'
        f'🎁 Активных промокодов: {stats.active_promocodes}'
    )


def format_user(user: User) -> str:
    username = f'@{user.username}' if user.username else '—'
    return (
        '👤 Пользователь\n\n'
        f'ID: {user.id} (Telegram: {user.telegram_id})\n'
        f'Имя: {user.display_name}\n'
        f'Username: {username}\n'
        f'Баланс: {user.balance_kopeks / 100:.2f} ₽\n'
        f'Реферальный код: {user.referral_code}\n'
        f'Заблокирован: {"да" if user.is_blocked else "нет"}\n'
        f'Админ: {"да" if user.is_admin else "нет"}\n'
        f'Регистрация: {user.created_at:%d.%m.%Y %H:%M}'
    )


def parse_amount_kopeks(raw: str) -> int | None:
    try:
        amount = Decimal(raw.replace(',', '.'))
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).to_integral_value())


async def _resolve_target(db: AsyncSession, raw: str) -> User | None:
    if not raw.isdigit():
        return None
    number = int(raw)
    return await get_user_by_id(db, number) or await get_user_by_telegram_id(db, number)


async def handle_admin_menu(callback: types.CallbackQuery, db: AsyncSession, is_admin: bool = False):
    if not is_admin:
        await callback.answer('Нет доступа', show_alert=True)
        return

    stats = await stats_service.get_stats(db)
    promocodes = await get_valid_promocodes(db)
    lines = [format_stats(stats), '', f'Действующих промокодов: {len(promocodes)}']
    for promocode in promocodes[:10]:
        uses = '∞' if promocode.uses_left is None else promocode.uses_left
        lines.append(f'• {promocode.code}: {promocode.type_display} {promocode.value}, осталось {uses}')
    lines.append('\n/admin help — список команд')
    await safe_edit_text(callback, '\n'.join(lines), get_back_keyboard())
    await callback.answer()


async def _show_users(message: types.Message, db: AsyncSession, args: str) -> None:
    users = await user_service.search_users(db, args, limit=10)
    if not users:
        await message.answer('Пользователи не найдены')
        return
    lines = ['👥 Пользователи:\n']
    for user in users:
        flag = ' 🚫' if user.is_blocked else ''
        lines.append(f'{user.id} · {user.telegram_id} · {user.display_name} · {user.balance_kopeks / 100:.2f} ₽{flag}')
    await message.answer('\n'.join(lines))


async def _show_logs(message: types.Message, db: AsyncSession, args: str) -> None:
    if args:
        target = await _resolve_target(db, args)
        if target is None:
            await message.answer('❌ Пользователь не найден')
            return
        entries, total = await activity_log_service.get_user_activity(db, target.id, limit=20)
        header = f'📜 Журнал пользователя {target.id} (всего {total}):\n'
    else:
        entries, total = await activity_log_service.get_recent_activity(db, limit=20)
        header = f'📜 Последние действия (всего {total}):\n'

    if not entries:
        await message.answer('📜 Журнал пуст')
        return
    lines = [header]
    for entry in entries:
        prefix = '' if args else f'[{entry.user_id}] '
        lines.append(prefix + activity_log_service.describe(entry))
    await message.answer('\n'.join(lines))


async def cmd_admin(
    message: types.Message,
    command: CommandObject,
    db: AsyncSession,
    db_user: User | None = None,
    is_admin: bool = False,
):
    if not is_admin:
        return

    subcommand, _, args = (command.args or 'help').strip().partition(' ')
    subcommand = subcommand.lower()
    args = args.strip()
    admin_id = db_user.id if db_user else None

    try:
        if subcommand == 'stats':
            await message.answer(format_stats(await stats_service.get_stats(db)))

        elif subcommand == 'users':
            await _show_users(message, db, args)

        elif subcommand == 'user':
            target = await _resolve_target(db, args)
            if target is None:
                await message.answer('❌ Укажите ID существующего пользователя')
                return
            await message.answer(format_user(target))

        elif subcommand in ('block', 'unblock'):
            target = await _resolve_target(db, args)
            if target is None:
                await message.answer('❌ Укажите ID существующего пользователя')
                return
            blocked = subcommand == 'block'
            await user_service.set_user_blocked(db, target.id, blocked, admin_id=admin_id)
            await message.answer('✅ Пользователь заблокирован' if blocked else '✅ Пользователь разблокирован')

        elif subcommand == 'balance':
            raw_id, _, raw_amount = args.partition(' ')
            target = await _resolve_target(db, raw_id)
            amount_kopeks = parse_amount_kopeks(raw_amount.strip()) if raw_amount.strip() else None
            if target is None or not amount_kopeks:
                await message.answer('❌ Использование: /admin balance <id> <сумма>')
                return
            balance = await user_service.adjust_balance(db, target.id, amount_kopeks, admin_id=admin_id)
            await message.answer(f'✅ Баланс изменён. Текущий баланс: {balance / 100:.2f} ₽')

        elif subcommand == 'notify':
            if not args:
                await message.answer('❌ Использование: /admin notify <текст>')
                return
            report = await broadcast_service.send_broadcast(db, message.bot, args, admin_id=admin_id)
            await message.answer(
                f'📢 Рассылка завершена\nПолучателей: {report.total}\n'
                f'Доставлено: {report.sent}\nОшибок: {report.failed}'
            )

        elif subcommand == 'logs':
            await _show_logs(message, db, args)

        else:
            await message.answer(ADMIN_HELP)

    except ServiceError as exc:
        await message.answer(f'❌ {exc.user_message}')


async def cmd_sweep(message: types.Message, db: AsyncSession, is_admin: bool = False):
    if not is_admin:
        return

    expired = await expire_subscriptions(db)
    deprovisioned = await retry_pending_deprovisions(db)
    logger.info('Ручная обработка подписок', expired=expired, deprovisioned=deprovisioned, admin_id=message.from_user.id)
    await message.answer(f'Истекло подписок: {expired}\nУдалено на панели: {deprovisioned}')


def register_handlers(dp: Dispatcher):
    dp.callback_query.register(handle_admin_menu, F.data == 'admin')
    dp.message.register(cmd_admin, Command('admin'))
    dp.message.register(cmd_sweep, Command('sweep'))
