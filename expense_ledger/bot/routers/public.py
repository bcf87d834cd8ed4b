from __future__ import annotations

from typing import Optional

from aiogram import Bot, F, Router
from aiogram.enums import ChatType, ParseMode
from aiogram.filters import Command, CommandStart
from aiogram.types import CallbackQuery, Message
from sqlalchemy.ext.asyncio import AsyncSession

from expense_ledger.bot.callbacks import ConfirmCb
from expense_ledger.bot.keyboards import close_keyboard, confirm_keyboard
from expense_ledger.bot.text import format_amount, format_error, format_transaction, user_label
from expense_ledger.bot.utils import delete_later, reply_error, safe_delete_message
from expense_ledger.core.errors import LedgerError
from expense_ledger.db.models import Group, User
from expense_ledger.services.facade import LedgerFacade
from expense_ledger.services.members import add_member, deactivate_member, list_members, upsert_user

router = Router(name=__name__)

HELP = (
    "<b>Shared expenses</b>\n"
    "/expense 90.00 [equal|percentage|shares|custom] [@user[=value] ...] [| note]\n"
    "/share &lt;expense&gt; [amount]: pay your share to the payer\n"
    "/amend &lt;expense&gt; &lt;amount&gt;, /charge &lt;expense&gt;, /pending\n"
    "/send @user &lt;amount&gt;, /deposit &lt;amount&gt;, /wallet\n"
    "/retry, /cancel, /refund &lt;transaction&gt;\n"
    "/balance, /suggest, /settleup, /reconcile"
)


def _require_group(message: Message) -> bool:
    return message.chat.type in (ChatType.GROUP, ChatType.SUPERGROUP)


async def _labels(session: AsyncSession, group_id: int) -> dict[int, str]:
    return {u.id: user_label(u) for u in await list_members(session, group_id=group_id, active_only=False)}


@router.message(CommandStart())
@router.message(Command("help"))
async def help_cmd(message: Message) -> None:
    await message.answer(HELP, parse_mode=ParseMode.HTML)


@router.message(Command("balance"))
async def balance_cmd(message: Message, bot: Bot, session: AsyncSession, ledger: LedgerFacade, group_db: Optional[Group] = None) -> None:
    if not _require_group(message) or group_db is None:
        return
    await safe_delete_message(bot, chat_id=message.chat.id, message_id=message.message_id)

    labels = await _labels(session, group_db.id)
    balances = await ledger.get_group_balances(group_db.id)
    balances.sort(key=lambda b: -b.net_balance)

    lines = []
    for b in balances[:30]:
        name = labels.get(b.user_id, str(b.user_id))
        if b.net_balance > 0:
            lines.append(f"{name}: {format_amount(b.net_balance, ledger.currency, signed=True)} (is owed)")
        elif b.net_balance < 0:
            lines.append(f"{name}: {format_amount(b.net_balance, ledger.currency)} (owes)")
        else:
            lines.append(f"{name}: settled")
    if not lines:
        lines = ["No balances yet."]

    msg = await message.answer(
        "<b>Balances</b>\n<pre>" + "\n".join(lines) + "</pre>",
        parse_mode=ParseMode.HTML,
        reply_markup=close_keyboard(initiator_user_id=message.from_user.id),
    )
    delete_later(bot, chat_id=msg.chat.id, message_id=msg.message_id, delay_seconds=120)


@router.message(Command("suggest"))
async def suggest_cmd(message: Message, bot: Bot, session: AsyncSession, ledger: LedgerFacade, group_db: Optional[Group] = None) -> None:
    if not _require_group(message) or group_db is None:
        return
    await safe_delete_message(bot, chat_id=message.chat.id, message_id=message.message_id)

    labels = await _labels(session, group_db.id)
    try:
        transfers = await ledger.suggest_settlements(group_db.id)
    except LedgerError as e:
        await reply_error(message, e)
        return

    lines = [
        f"{labels.get(t.from_id, t.from_id)} → {labels.get(t.to_id, t.to_id)}: {format_amount(t.amount, ledger.currency)}"
        for t in transfers[:30]
    ]
    if not lines:
        lines = ["Nothing to settle."]

    msg = await message.answer(
        "<b>Suggested payments</b>\n<pre>" + "\n".join(lines) + "</pre>",
        parse_mode=ParseMode.HTML,
        reply_markup=close_keyboard(initiator_user_id=message.from_user.id),
    )
    delete_later(bot, chat_id=msg.chat.id, message_id=msg.message_id, delay_seconds=120)


@router.message(Command("settleup"))
async def settleup_cmd(message: Message, session: AsyncSession, ledger: LedgerFacade, user_db: User, group_db: Optional[Group] = None) -> None:
    if not _require_group(message) or group_db is None:
        return
    labels = await _labels(session, group_db.id)
    try:
        mine = [t for t in await ledger.suggest_settlements(group_db.id) if t.from_id == user_db.id]
    except LedgerError as e:
        await reply_error(message, e)
        return
    if not mine:
        await message.reply("You do not owe anyone in this group.")
        return
    lines = [f"→ {labels.get(t.to_id, t.to_id)}: {format_amount(t.amount, ledger.currency)}" for t in mine]
    await message.reply(
        "<b>Settle up from your wallet?</b>\n" + "\n".join(lines),
        parse_mode=ParseMode.HTML,
        reply_markup=confirm_keyboard(initiator_user_id=message.from_user.id, flow="settleup"),
    )


@router.callback_query(ConfirmCb.filter())
async def settleup_confirm_cb(
    callback: CallbackQuery,
    callback_data: ConfirmCb,
    bot: Bot,
    ledger: LedgerFacade,
    user_db: User,
    group_db: Optional[Group] = None,
) -> None:
    if callback_data.flow != "settleup":
        return
    if callback.from_user.id != callback_data.initiator:
        await callback.answer("This button is not for you.", show_alert=True)
        return
    if callback.message:
        await safe_delete_message(bot, chat_id=callback.message.chat.id, message_id=callback.message.message_id)
    if not callback_data.ok or group_db is None:
        await callback.answer("Cancelled.")
        return

    try:
        report = await ledger.settle_group(group_db.id, user_db.id)
    except LedgerError as e:
        await callback.answer(e.message, show_alert=True)
        return

    lines = []
    for a in report.attempts:
        if a.transaction is not None:
            lines.append(format_transaction(a.transaction))
        elif a.error is not None:
            lines.append(format_error(a.error))
    await callback.message.answer(
        f"<b>Settle-up</b>: {len(report.succeeded)} paid, {len(report.failed)} failed\n" + "\n".join(lines),
        parse_mode=ParseMode.HTML,
    )
    await callback.answer()


@router.message(Command("reconcile"))
async def reconcile_cmd(message: Message, ledger: LedgerFacade, group_db: Optional[Group] = None) -> None:
    if not _require_group(message) or group_db is None:
        return
    try:
        report = await ledger.reconcile_group(group_db.id)
    except LedgerError as e:
        await reply_error(message, e)
        return
    await message.reply(f"Balances match the history for {len(report.balances)} members.")


@router.message(F.new_chat_members)
async def members_joined(message: Message, session: AsyncSession, group_db: Optional[Group] = None) -> None:
    if group_db is None:
        return
    for tg_user in message.new_chat_members:
        if tg_user.is_bot:
            continue
        user = await upsert_user(session, tg_user_id=tg_user.id, username=tg_user.username, first_name=tg_user.first_name)
        await add_member(session, group_id=group_db.id, user_id=user.id)


@router.message(F.left_chat_member)
async def member_left(message: Message, session: AsyncSession, group_db: Optional[Group] = None) -> None:
    tg_user = message.left_chat_member
    if group_db is None or tg_user.is_bot:
        return
    user = await upsert_user(session, tg_user_id=tg_user.id, username=tg_user.username, first_name=tg_user.first_name)
    # Balances stay; the member just stops being picked for new equal splits.
    await deactivate_member(session, group_id=group_db.id, user_id=user.id)
