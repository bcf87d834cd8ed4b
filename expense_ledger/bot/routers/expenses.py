from __future__ import annotations

from html import escape
from typing import Optional

from aiogram import Router
from aiogram.enums import ChatType, ParseMode
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from expense_ledger.bot.parsing import CommandParseError, parse_expense, parse_id, parse_id_and_amount
from expense_ledger.bot.text import format_amount, format_transaction, user_label
from expense_ledger.bot.utils import reply_error
from expense_ledger.core.errors import LedgerError
from expense_ledger.core.splits import SplitInput, SplitPolicy, display_percentage
from expense_ledger.db.models import Expense, Group, User
from expense_ledger.services.facade import LedgerFacade
from expense_ledger.services.members import get_member_by_username, get_user, list_members

router = Router(name=__name__)


def _require_group(message: Message) -> bool:
    return message.chat.type in (ChatType.GROUP, ChatType.SUPERGROUP)


async def _render_expense(session: AsyncSession, expense: Expense) -> str:
    payer = await get_user(session, user_id=expense.payer_id)
    lines = [
        f"<b>Expense #{expense.id}</b> {format_amount(expense.total_amount, expense.currency)}"
        f" ({expense.split_policy.value}), paid by {user_label(payer, expense.payer_id)}",
    ]
    if expense.description:
        lines.append(f"<i>{escape(expense.description)}</i>")
    for share in expense.shares:
        u = await get_user(session, user_id=share.user_id)
        mark = "✅" if share.settled else "•"
        lines.append(f"{mark} {user_label(u, share.user_id)}: {format_amount(share.amount, expense.currency)} ({display_percentage(share.amount, expense.total_amount)}%)")
    if expense.is_settled:
        lines.append("Fully settled.")
    return "\n".join(lines)


@router.message(Command("expense"))
async def expense_cmd(
    message: Message,
    command: CommandObject,
    session: AsyncSession,
    ledger: LedgerFacade,
    user_db: User,
    group_db: Optional[Group] = None,
) -> None:
    if not _require_group(message) or group_db is None:
        return
    try:
        args = parse_expense(command.args, ledger.currency)
    except CommandParseError as e:
        await reply_error(message, e)
        return

    if args.participants:
        inputs = []
        for p in args.participants:
            member = await get_member_by_username(session, group_id=group_db.id, username=p.username)
            if member is None:
                await message.reply(f"@{escape(p.username)} has not written in this group yet.")
                return
            value = int(p.value) if args.policy is SplitPolicy.CUSTOM else p.value
            inputs.append(SplitInput(participant_id=member.id, value=value))
    else:
        inputs = [SplitInput(participant_id=m.id) for m in await list_members(session, group_id=group_db.id)]

    try:
        expense = await ledger.create_expense(
            user_db.id,
            args.amount,
            args.policy,
            inputs,
            group_id=group_db.id,
            description=args.description,
        )
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.answer(await _render_expense(session, expense), parse_mode=ParseMode.HTML)


@router.message(Command("amend"))
async def amend_cmd(message: Message, command: CommandObject, session: AsyncSession, ledger: LedgerFacade, user_db: User) -> None:
    try:
        expense_id, amount = parse_id_and_amount(command.args, ledger.currency)
        if amount is None:
            raise CommandParseError("Usage: /amend <expense id> <new amount>")
    except CommandParseError as e:
        await reply_error(message, e)
        return
    try:
        expense = await ledger.get_expense(expense_id)
        if expense.created_by_id != user_db.id:
            await message.reply("Only the creator can change this expense.")
            return
        expense = await ledger.update_expense_amount(expense_id, amount)
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.answer(await _render_expense(session, expense), parse_mode=ParseMode.HTML)


@router.message(Command("share"))
async def share_cmd(message: Message, command: CommandObject, ledger: LedgerFacade, user_db: User) -> None:
    try:
        expense_id, amount = parse_id_and_amount(command.args, ledger.currency)
    except CommandParseError as e:
        await reply_error(message, e)
        return
    try:
        tx = await ledger.settle_expense_share(expense_id, user_db.id, amount)
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.reply(format_transaction(tx), parse_mode=ParseMode.HTML)


@router.message(Command("charge"))
async def charge_cmd(message: Message, command: CommandObject, ledger: LedgerFacade, user_db: User) -> None:
    try:
        expense_id = parse_id(command.args or "")
    except CommandParseError as e:
        await reply_error(message, e)
        return
    try:
        expense = await ledger.get_expense(expense_id)
        if expense.payer_id != user_db.id:
            await message.reply("Only the payer can charge an expense to their wallet.")
            return
        tx = await ledger.charge_expense(expense_id)
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.reply(format_transaction(tx), parse_mode=ParseMode.HTML)


@router.message(Command("pending"))
async def pending_cmd(message: Message, ledger: LedgerFacade, user_db: User) -> None:
    shares = await ledger.list_pending_shares(user_db.id)
    if not shares:
        await message.reply("Nothing to settle.")
        return
    lines = [
        f"Expense #{s.expense_id}: {format_amount(s.outstanding, ledger.currency)} outstanding"
        for s in shares[:30]
    ]
    await message.reply("<b>Your open shares</b>\n" + "\n".join(lines), parse_mode=ParseMode.HTML)
