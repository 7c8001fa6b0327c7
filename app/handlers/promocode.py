import structlog
from aiogram import Dispatcher, F, types
from aiogram.fsm.context import FSMContext
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.models import User
from app.keyboards.inline import get_back_keyboard, get_promocode_keyboard
from app.services.errors import ServiceError
from app.services.promocode_service import describe_effect, redeem_promocode
from app.states import PromoCodeStates
from app.utils.telegram import safe_edit_text


logger = structlog.get_logger(__name__)


async def handle_promocode_menu(callback: types.CallbackQuery, state: FSMContext):
    await state.clear()
    if not settings.PROMO_CODES_ENABLED:
        await callback.answer('Промокоды временно недоступны', show_alert=True)
        return

    text = (
        '🎟️ Промокоды\n\n'
        'Доступные типы промокодов:\n'
        '• 🎁 Бонусные дни подписки\n'
        '• 💸 Скидка на следующую покупку\n'
        '• 💰 Пополнение баланса\n\n'
        'Нажмите кнопку ниже, чтобы ввести промокод.'
    )
    await safe_edit_text(callback, text, get_promocode_keyboard())
    await callback.answer()


async def handle_promocode_input(callback: types.CallbackQuery, state: FSMContext):
    await state.set_state(PromoCodeStates.waiting_for_code)
    await safe_edit_text(
        callback,
        '📝 Отправьте промокод следующим сообщением.\n\n'
        'Пример: PROMO2024 или BONUS50\n\n'
        '⚠️ Каждый промокод можно активировать только один раз.',
        get_back_keyboard('promocode'),
    )
    await callback.answer()


async def process_promocode(message: types.Message, state: FSMContext, db_user: User, db: AsyncSession):
    code = (message.text or '').strip()
    if not code:
        await message.answer('Отправьте промокод текстом.')
        return

    user_id = db_user.id
    try:
        promocode = await redeem_promocode(db, user_id, code)
    except ServiceError as exc:
        logger.info('Промокод не принят', user_id=user_id, code=code.upper(), error_code=exc.detail['error_code'])
        await message.answer(f'❌ {exc.user_message}', reply_markup=get_back_keyboard('promocode'))
        return

    await state.clear()
    await message.answer(
        f'✅ Промокод {promocode.code} активирован!\n\n{describe_effect(promocode)}',
        reply_markup=get_back_keyboard(),
    )


def register_handlers(dp: Dispatcher):
    dp.callback_query.register(handle_promocode_menu, F.data == 'promocode')
    dp.callback_query.register(handle_promocode_input, F.data == 'promocode:input')
    dp.message.register(process_promocode, PromoCodeStates.waiting_for_code, F.text)
