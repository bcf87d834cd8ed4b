from __future__ import annotations

import asyncio
import logging
from html import escape
from typing import Union

from aiogram import Bot
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from aiogram.types import Message

from expense_ledger.bot.parsing import CommandParseError
from expense_ledger.bot.text import format_error
from expense_ledger.core.errors import LedgerError

logger = logging.getLogger(__name__)

# Pending cleanup jobs; the event loop only keeps weak references to tasks.
_cleanup_tasks: set[asyncio.Task] = set()


async def safe_delete_message(bot: Bot, *, chat_id: int, message_id: int) -> bool:
    try:
        await bot.delete_message(chat_id=chat_id, message_id=message_id)
        return True
    except (TelegramBadRequest, TelegramForbiddenError):
        return False


def delete_later(bot: Bot, *, chat_id: int, message_id: int, delay_seconds: float) -> None:
    async def _job() -> None:
        await asyncio.sleep(delay_seconds)
        await safe_delete_message(bot, chat_id=chat_id, message_id=message_id)

    task = asyncio.create_task(_job())
    _cleanup_tasks.add(task)
    task.add_done_callback(_cleanup_tasks.discard)


async def reply_error(message: Message, error: Union[LedgerError, CommandParseError]) -> None:
    """Answer a command with a bad-input or ledger error instead of letting it reach the dispatcher."""
    if isinstance(error, LedgerError):
        logger.info("Command %r rejected: %s %s", message.text, error.kind, error.details)
        await message.reply(format_error(error), parse_mode=ParseMode.HTML)
    else:
        await message.reply(escape(str(error)))
