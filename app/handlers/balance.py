from aiogram import Dispatcher, F, types
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.transaction import get_user_transactions
from app.database.models import TransactionType, User
from app.keyboards.inline import get_back_keyboard, get_balance_keyboard
from app.services.balance_service import get_balance
from app.utils.telegram import safe_edit_text


TRANSACTION_TITLES = {
    TransactionType.DEPOSIT.value: 'Пополнение',
    TransactionType.SUBSCRIPTION_PAYMENT.value: 'Оплата подписки',
    TransactionType.REFERRAL_REWARD.value: 'Реферальный бонус',
    TransactionType.PROMO_BONUS.value: 'Промокод',
    TransactionType.ADMIN_ADJUSTMENT.value: 'Корректировка администратором',
}


async def handle_balance(callback: types.CallbackQuery, db_user: User, db: AsyncSession):
    balance_kopeks = await get_balance(db, db_user.id)
    text = f'💰 Ваш баланс: {balance_kopeks / 100:.2f} ₽'
    if db_user.promo_discount_percent:
        text += f'\n🎟 Скидка на следующую покупку: {db_user.promo_discount_percent}%'
    await safe_edit_text(callback, text, get_balance_keyboard())
    await callback.answer()


async def handle_balance_history(callback: types.CallbackQuery, db_user: User, db: AsyncSession):
    transactions, total = await get_user_transactions(db, user_id=db_user.id, limit=10)
    if not transactions:
        text = '📜 Операций пока не было.'
    else:
        lines = [f'📜 Последние операции (всего {total}):\n']
        for transaction in transactions:
            title = TRANSACTION_TITLES.get(transaction.type, transaction.type)
            lines.append(f'{transaction.created_at:%d.%m %H:%M} {title}: {transaction.amount_kopeks / 100:+.2f} ₽')
        text = '\n'.join(lines)
    await safe_edit_text(callback, text, get_back_keyboard('balance'))
    await callback.answer()


def register_handlers(dp: Dispatcher):
    dp.callback_query.register(handle_balance, F.data == 'balance')
    dp.callback_query.register(handle_balance_history, F.data == 'balance:history')
