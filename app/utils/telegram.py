from aiogram import types
from aiogram.exceptions import TelegramBadRequest


async def safe_edit_text(
    callback: types.CallbackQuery,
    text: str,
    reply_markup: types.InlineKeyboardMarkup | None = None,
) -> bool:
    """Edit the callback's message; False when there was nothing to change.

    Pressing the same button twice makes Telegram reject the edit with
    "message is not modified", which is not an error for us.
    """
    if callback.message is None:
        return False
    try:
        await callback.message.edit_text(text, reply_markup=reply_markup)
        return True
    except TelegramBadRequest as exc:
        if 'message is not modified' in str(exc).lower():
            return False
        raise
