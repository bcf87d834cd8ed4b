from __future__ import annotations

import pytest

from expense_ledger.db.models import Base
from expense_ledger.db.session import create_engine, create_sessionmaker
from expense_ledger.services.facade import LedgerFacade
from expense_ledger.services.members import add_member, create_group, create_user


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def ledger(sessionmaker):
    return LedgerFacade(
        sessionmaker=sessionmaker,
        currency="USD",
        max_retries=3,
        auto_retry=True,
        allow_overdraft=False,
    )


@pytest.fixture
def make_group(sessionmaker):
    """Create users (by username) and, unless group=False, a group holding all of them."""

    async def _make(*usernames: str, group: bool = True):
        async with sessionmaker() as session:
            users = [await create_user(session, username=name) for name in usernames]
            group_id = None
            if group:
                g = await create_group(session, title="Trip")
                for u in users:
                    await add_member(session, group_id=g.id, user_id=u.id)
                group_id = g.id
            await session.commit()
        return group_id, [u.id for u in users]

    return _make
