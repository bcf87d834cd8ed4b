from __future__ import annotations

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from expense_ledger.bot.callbacks import CloseCb, ConfirmCb


def close_keyboard(*, initiator_user_id: int, text: str = "Close") -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.row(
        InlineKeyboardButton(text=text, callback_data=CloseCb(initiator=initiator_user_id).pack()),
        width=1,
    )
    return kb.as_markup()


def confirm_keyboard(*, initiator_user_id: int, flow: str) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.row(
        InlineKeyboardButton(text="Cancel", callback_data=ConfirmCb(initiator=initiator_user_id, flow=flow, ok=False).pack()),
        InlineKeyboardButton(text="Pay", callback_data=ConfirmCb(initiator=initiator_user_id, flow=flow, ok=True).pack()),
        width=2,
    )
    return kb.as_markup()
