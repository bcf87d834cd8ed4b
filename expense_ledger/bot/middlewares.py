from __future__ import annotations

from typing import Any, Awaitable, Callable

from aiogram import BaseMiddleware
from aiogram.enums import ChatType
from aiogram.types import CallbackQuery, Message, TelegramObject
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from expense_ledger.services.members import add_member, ensure_group, upsert_user


class DbSessionMiddleware(BaseMiddleware):
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._sessionmaker = sessionmaker

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        async with self._sessionmaker() as session:
            try:
                data["session"] = session
                result = await handler(event, data)
                await session.commit()
                return result
            except Exception:
                await session.rollback()
                raise


class UpsertGroupMemberMiddleware(BaseMiddleware):
    """Registers the chat as a group and the sender as its member, then commits so the ledger sees them."""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        session: AsyncSession = data["session"]

        tg_chat = None
        tg_user = None
        sender_chat = None

        if isinstance(event, Message):
            tg_chat = event.chat
            tg_user = event.from_user
            sender_chat = event.sender_chat
        elif isinstance(event, CallbackQuery) and event.message:
            tg_chat = event.message.chat
            tg_user = event.from_user
            sender_chat = event.message.sender_chat

        # Do NOT auto-add anonymous admins, channels, sender_chat messages.
        if tg_chat is None or tg_user is None or sender_chat is not None:
            return await handler(event, data)
        if tg_user.is_bot:
            return await handler(event, data)

        user_db = await upsert_user(
            session,
            tg_user_id=tg_user.id,
            username=tg_user.username,
            first_name=tg_user.first_name,
        )
        data["user_db"] = user_db
        if tg_chat.type in (ChatType.GROUP, ChatType.SUPERGROUP):
            group_db = await ensure_group(session, tg_chat_id=tg_chat.id, title=tg_chat.title)
            await add_member(session, group_id=group_db.id, user_id=user_db.id)
            data["group_db"] = group_db
        # The ledger works in its own sessions.
        await session.commit()
        return await handler(event, data)
