from __future__ import annotations

from html import escape
from typing import Optional

from aiogram import Router
from aiogram.enums import ParseMode
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from expense_ledger.bot.parsing import CommandParseError, parse_amount, parse_id, parse_send
from expense_ledger.bot.text import format_transaction
from expense_ledger.bot.utils import reply_error
from expense_ledger.core.errors import LedgerError
from expense_ledger.db.models import Group, User
from expense_ledger.services import ledger as balance_ledger
from expense_ledger.services.facade import LedgerFacade
from expense_ledger.services.members import get_member_by_username

router = Router(name=__name__)


async def _wallet_id(session: AsyncSession, ledger: LedgerFacade, user: User) -> int:
    acc = await balance_ledger.get_or_create_wallet(session, user_id=user.id, currency=ledger.currency)
    return acc.id


@router.message(Command("send"))
async def send_cmd(
    message: Message,
    command: CommandObject,
    session: AsyncSession,
    ledger: LedgerFacade,
    user_db: User,
    group_db: Optional[Group] = None,
) -> None:
    if group_db is None:
        await message.reply("Use /send inside the group you share with the recipient.")
        return
    try:
        args = parse_send(command.args, ledger.currency)
    except CommandParseError as e:
        await reply_error(message, e)
        return
    recipient = await get_member_by_username(session, group_id=group_db.id, username=args.username)
    if recipient is None:
        await message.reply(f"@{escape(args.username)} has not written in this group yet.")
        return
    try:
        tx = await ledger.transfer(user_db.id, recipient.id, args.amount, args.description)
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.reply(format_transaction(tx), parse_mode=ParseMode.HTML)


@router.message(Command("deposit"))
async def deposit_cmd(message: Message, command: CommandObject, ledger: LedgerFacade, user_db: User) -> None:
    try:
        amount = parse_amount((command.args or "").strip(), ledger.currency)
    except CommandParseError as e:
        await reply_error(message, e)
        return
    try:
        tx = await ledger.deposit(user_db.id, amount)
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.reply(format_transaction(tx), parse_mode=ParseMode.HTML)


@router.message(Command("wallet"))
async def wallet_cmd(message: Message, ledger: LedgerFacade, user_db: User) -> None:
    balance = await ledger.get_wallet_balance(user_db.id)
    recent = await ledger.list_transactions(user_id=user_db.id, limit=5)
    lines = [f"<b>Wallet</b>: {balance.format()}"]
    lines.extend(format_transaction(tx) for tx in recent)
    await message.reply("\n".join(lines), parse_mode=ParseMode.HTML)


async def _own_transaction_cmd(
    message: Message,
    command: CommandObject,
    session: AsyncSession,
    ledger: LedgerFacade,
    user_db: User,
    *,
    action: str,
) -> None:
    try:
        tx_id = parse_id(command.args or "")
    except CommandParseError as e:
        await reply_error(message, e)
        return
    try:
        tx = await ledger.get_transaction(tx_id)
        wallet_id = await _wallet_id(session, ledger, user_db)
        # Retry and cancel belong to the sender, refunds to the receiver.
        owner_account = tx.to_account_id if action == "refund" else tx.from_account_id
        if owner_account != wallet_id:
            await message.reply("This transaction is not yours to change.")
            return
        if action == "retry":
            tx = await ledger.retry_transaction(tx_id)
        elif action == "cancel":
            tx = await ledger.cancel_transaction(tx_id)
        else:
            tx = await ledger.refund_transaction(tx_id)
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.reply(format_transaction(tx), parse_mode=ParseMode.HTML)


@router.message(Command("retry"))
async def retry_cmd(message: Message, command: CommandObject, session: AsyncSession, ledger: LedgerFacade, user_db: User) -> None:
    await _own_transaction_cmd(message, command, session, ledger, user_db, action="retry")


@router.message(Command("cancel"))
async def cancel_cmd(message: Message, command: CommandObject, session: AsyncSession, ledger: LedgerFacade, user_db: User) -> None:
    await _own_transaction_cmd(message, command, session, ledger, user_db, action="cancel")


@router.message(Command("refund"))
async def refund_cmd(message: Message, command: CommandObject, session: AsyncSession, ledger: LedgerFacade, user_db: User) -> None:
    await _own_transaction_cmd(message, command, session, ledger, user_db, action="refund")
