from __future__ import annotations

from aiogram.filters.callback_data import CallbackData


class CloseCb(CallbackData, prefix="close"):
    initiator: int


class ConfirmCb(CallbackData, prefix="confirm"):
    initiator: int
    flow: str  # settleup
    ok: bool
