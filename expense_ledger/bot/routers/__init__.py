from __future__ import annotations

from aiogram import Router

from expense_ledger.bot.routers.common_callbacks import router as common_callbacks_router
from expense_ledger.bot.routers.expenses import router as expenses_router
from expense_ledger.bot.routers.payments import router as payments_router
from expense_ledger.bot.routers.public import router as public_router


def all_routers() -> list[Router]:
    return [
        common_callbacks_router,
        expenses_router,
        payments_router,
        public_router,
    ]
