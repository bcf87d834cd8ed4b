from __future__ import annotations

from typing import Optional

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_ledger.db.models import Group, GroupMember, User
from expense_ledger.db.upsert import dialect_insert


async def ensure_group(session: AsyncSession, *, tg_chat_id: int, title: Optional[str]) -> Group:
    insert_stmt = dialect_insert(session, Group).values(tg_chat_id=tg_chat_id, title=title)
    stmt = (
        insert_stmt.on_conflict_do_update(
            index_elements=[Group.tg_chat_id],
            set_={"title": sa.func.coalesce(insert_stmt.excluded.title, Group.title)},
        )
        .returning(Group)
    )
    res = await session.execute(stmt, execution_options={"populate_existing": True})
    return res.scalar_one()


async def upsert_user(
    session: AsyncSession,
    *,
    tg_user_id: int,
    username: Optional[str],
    first_name: Optional[str],
) -> User:
    insert_stmt = dialect_insert(session, User).values(
        tg_user_id=tg_user_id,
        username=username.lower() if username else None,
        first_name=first_name or None,
    )
    stmt = (
        insert_stmt.on_conflict_do_update(
            index_elements=[User.tg_user_id],
            set_={
                "username": insert_stmt.excluded.username,
                "first_name": insert_stmt.excluded.first_name,
            },
        )
        .returning(User)
    )
    res = await session.execute(stmt, execution_options={"populate_existing": True})
    return res.scalar_one()


async def create_group(session: AsyncSession, *, title: Optional[str] = None) -> Group:
    group = Group(title=title)
    session.add(group)
    await session.flush()
    return group


async def create_user(session: AsyncSession, *, username: Optional[str] = None, first_name: Optional[str] = None) -> User:
    user = User(username=username.lower() if username else None, first_name=first_name)
    session.add(user)
    await session.flush()
    return user


async def add_member(session: AsyncSession, *, group_id: int, user_id: int) -> None:
    insert_stmt = dialect_insert(session, GroupMember).values(group_id=group_id, user_id=user_id, is_active=True)
    await session.execute(
        insert_stmt.on_conflict_do_update(
            index_elements=[GroupMember.group_id, GroupMember.user_id],
            set_={"is_active": True},
        )
    )


async def deactivate_member(session: AsyncSession, *, group_id: int, user_id: int) -> bool:
    res = await session.execute(
        sa.update(GroupMember)
        .where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
        .values(is_active=False)
    )
    return res.rowcount == 1


async def list_members(session: AsyncSession, *, group_id: int, active_only: bool = True) -> list[User]:
    stmt = (
        select(User)
        .join(GroupMember, GroupMember.user_id == User.id)
        .where(GroupMember.group_id == group_id)
        .order_by(User.id.asc())
    )
    if active_only:
        stmt = stmt.where(GroupMember.is_active.is_(True))
    res = await session.scalars(stmt)
    return list(res)


async def get_user(session: AsyncSession, *, user_id: int) -> Optional[User]:
    return await session.get(User, user_id)


async def get_member_by_username(session: AsyncSession, *, group_id: int, username: str) -> Optional[User]:
    return await session.scalar(
        select(User)
        .join(GroupMember, GroupMember.user_id == User.id)
        .where(GroupMember.group_id == group_id, User.username == username.lstrip("@").lower())
    )


class SqlDirectory:
    """Identity and membership checks backed by the users/group_members tables."""

    async def user_exists(self, session: AsyncSession, user_id: int) -> bool:
        found = await session.scalar(select(User.id).where(User.id == user_id))
        return found is not None

    async def is_active_member(self, session: AsyncSession, group_id: int, user_id: int) -> bool:
        found = await session.scalar(
            select(GroupMember.id).where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == user_id,
                GroupMember.is_active.is_(True),
            )
        )
        return found is not None
