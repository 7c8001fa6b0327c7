from aiogram import Dispatcher, F, types
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.models import User
from app.keyboards.inline import get_back_keyboard
from app.services.referral_service import get_referrals
from app.utils.telegram import safe_edit_text


async def handle_referrals(callback: types.CallbackQuery, db_user: User, db: AsyncSession):
    if not settings.REFERRAL_ENABLED:
        await callback.answer('Реферальная программа временно недоступна', show_alert=True)
        return

    bot_info = await callback.bot.me()
    referrals = await get_referrals(db, db_user.id)
    link = f'https://t.me/{bot_info.username}?start={db_user.referral_code}'
    text = (
        '👥 Реферальная программа\n\n'
        f'За каждого приглашённого друга вы получите {settings.REFERRAL_REFERRER_BONUS_KOPEKS / 100:.0f} ₽ на баланс.\n\n'
        f'Ваша ссылка:\n{link}\n\n'
        f'Приглашено: {len(referrals)}'
    )
    await safe_edit_text(callback, text, get_back_keyboard())
    await callback.answer()


def register_handlers(dp: Dispatcher):
    dp.callback_query.register(handle_referrals, F.data == 'referrals')
