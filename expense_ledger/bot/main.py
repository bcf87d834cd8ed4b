from __future__ import annotations

import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramUnauthorizedError
from aiogram.fsm.storage.memory import MemoryStorage

from expense_ledger.bot.middlewares import DbSessionMiddleware, UpsertGroupMemberMiddleware
from expense_ledger.bot.routers import all_routers
from expense_ledger.config import settings
from expense_ledger.db.session import SessionMaker
from expense_ledger.logging import configure_logging
from expense_ledger.services.facade import LedgerFacade

logger = logging.getLogger(__name__)


async def main() -> None:
    configure_logging(settings.log_level, sql_echo=settings.sql_echo)

    if not settings.bot_token:
        raise RuntimeError("BOT_TOKEN is not set; add it to .env (BotFather token).")

    bot = Bot(
        token=settings.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    try:
        try:
            me = await bot.get_me()
        except TelegramUnauthorizedError as e:
            logger.error("Telegram Unauthorized. Check BOT_TOKEN in .env (BotFather token). %s", e)
            raise

        ledger = LedgerFacade(sessionmaker=SessionMaker)
        resumed = await ledger.resume_stalled()
        if resumed:
            logger.info("Resumed %s interrupted transactions", len(resumed))

        dp = Dispatcher(storage=MemoryStorage())

        dp.update.middleware(DbSessionMiddleware(SessionMaker))
        dp.message.middleware(UpsertGroupMemberMiddleware())
        dp.callback_query.middleware(UpsertGroupMemberMiddleware())

        dp.workflow_data.update({"ledger": ledger})

        for r in all_routers():
            dp.include_router(r)

        logger.info("Starting bot as @%s (ledger currency %s)", me.username, ledger.currency)
        await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    finally:
        await bot.session.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
