import structlog
from aiogram import Dispatcher, F, types
from aiogram.filters import CommandObject, CommandStart
from aiogram.fsm.context import FSMContext
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.models import User
from app.keyboards.inline import get_main_menu_keyboard
from app.services.referral_service import link_referral
from app.services.subscription_service import has_used_trial
from app.utils.telegram import safe_edit_text


logger = structlog.get_logger(__name__)


async def _render_main_menu(db: AsyncSession, db_user: User, is_admin: bool) -> tuple[str, types.InlineKeyboardMarkup]:
    show_trial = settings.TRIAL_ENABLED and not await has_used_trial(db, db_user.id)
    text = f'Привет, {db_user.display_name} 👋\n\nЧто бы вы хотели сделать?'
    return text, get_main_menu_keyboard(db_user, show_trial=show_trial, is_admin=is_admin)


async def cmd_start(
    message: types.Message,
    command: CommandObject,
    state: FSMContext,
    db_user: User,
    db: AsyncSession,
    is_admin: bool = False,
    is_new_user: bool = False,
):
    await state.clear()

    # only the very first /start may carry an invitation
    if is_new_user and command.args and await link_referral(db, db_user, command.args.strip()):
        await message.answer('🤝 Вы зарегистрировались по приглашению друга. Добро пожаловать!')

    text, keyboard = await _render_main_menu(db, db_user, is_admin)
    await message.answer(text, reply_markup=keyboard)


async def show_main_menu(
    callback: types.CallbackQuery,
    state: FSMContext,
    db_user: User,
    db: AsyncSession,
    is_admin: bool = False,
):
    await state.clear()
    text, keyboard = await _render_main_menu(db, db_user, is_admin)
    await safe_edit_text(callback, text, keyboard)
    await callback.answer()


def register_handlers(dp: Dispatcher):
    dp.message.register(cmd_start, CommandStart())
    dp.callback_query.register(show_main_menu, F.data == 'main_menu')
