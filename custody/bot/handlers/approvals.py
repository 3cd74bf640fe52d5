from __future__ import annotations

import logging
from typing import Optional

from aiogram import F, Router
from aiogram.filters import Command
from aiogram.types import CallbackQuery, Message

from custody.config import settings
from custody.errors import CustodyError
from custody.services import cheques, overrides
from custody.services.notifications import override_keyboard
from custody.services.security import ROLE_HOD, Operator
from custody.utils.money import format_amount

logger = logging.getLogger(__name__)

router = Router()

PAGE_SIZE = 10
NO_ACCESS = "You are not registered as an override approver."


def _operator_for(tg_user) -> Optional[Operator]:
    if tg_user is None:
        return None
    operator_id = settings.telegram_approvers.get(tg_user.id)
    if not operator_id:
        return None
    return Operator(id=operator_id, role=ROLE_HOD, user_agent="telegram")


def _status_emoji(st: str) -> str:
    return {
        "PENDING": "🕒",
        "APPROVED": "✅",
        "REJECTED": "❌",
    }.get((st or "").upper(), "ℹ️")


@router.message(Command("overrides"))
async def list_pending(message: Message) -> None:
    if _operator_for(message.from_user) is None:
        await message.answer(NO_ACCESS)
        return
    rows, total = await overrides.list_pending_overrides(limit=PAGE_SIZE)
    if not rows:
        await message.answer("No override requests are waiting.")
        return
    await message.answer(f"🕒 {total} pending override request(s)")
    for o in rows:
        text = (
            f"{_status_emoji(o.status)} Override #{o.id} • cheque #{o.cheque_id}\n"
            f"Requested by: {o.requested_by}\n"
            f"Reason: {o.reason}"
        )
        await message.answer(text, reply_markup=override_keyboard(o.id))


@router.callback_query(F.data.startswith("ovr:approve:"))
async def cb_approve(cb: CallbackQuery) -> None:
    actor = _operator_for(cb.from_user)
    if actor is None:
        await cb.answer(NO_ACCESS, show_alert=True)
        return
    try:
        override_id = int(cb.data.split(":")[2]) if cb.data else 0
    except (IndexError, ValueError):
        await cb.answer("Invalid override id", show_alert=True)
        return
    try:
        override = await overrides.approve_override(override_id, actor=actor)
    except CustodyError as e:
        await cb.answer(e.message, show_alert=True)
        return
    logger.info("override approved via bot", extra={"extra": {"override_id": override.id, "by": actor.id}})
    if cb.message:
        await cb.message.answer(f"✅ Override #{override.id} approved for cheque #{override.cheque_id}.")
    await cb.answer("Approved")


@router.callback_query(F.data.startswith("ovr:reject:"))
async def cb_reject(cb: CallbackQuery) -> None:
    if _operator_for(cb.from_user) is None:
        await cb.answer(NO_ACCESS, show_alert=True)
        return
    try:
        override_id = int(cb.data.split(":")[2]) if cb.data else 0
    except (IndexError, ValueError):
        await cb.answer("Invalid override id", show_alert=True)
        return
    # A rejection needs a reason, which a button press cannot carry
    if cb.message:
        await cb.message.answer(f"To reject, send: /reject_override {override_id} <reason>")
    await cb.answer()


@router.message(Command("reject_override"))
async def reject_cmd(message: Message) -> None:
    actor = _operator_for(message.from_user)
    if actor is None:
        await message.answer(NO_ACCESS)
        return
    parts = (message.text or "").split(maxsplit=2)
    if len(parts) < 3 or not parts[1].isdigit():
        await message.answer("Usage: /reject_override <id> <reason>")
        return
    try:
        override = await overrides.reject_override(int(parts[1]), actor=actor, rejected_reason=parts[2])
    except CustodyError as e:
        await message.answer(f"❌ {e.message}")
        return
    await message.answer(f"❌ Override #{override.id} rejected.")


@router.message(Command("cheque"))
async def cheque_status(message: Message) -> None:
    if _operator_for(message.from_user) is None:
        await message.answer(NO_ACCESS)
        return
    parts = (message.text or "").split()
    if len(parts) < 2 or not parts[1].isdigit():
        await message.answer("Usage: /cheque <id>")
        return
    try:
        cheque = await cheques.get_cheque(int(parts[1]))
    except CustodyError as e:
        await message.answer(e.message)
        return
    lines = [
        f"Cheque #{cheque.id} ({cheque.cheque_no})",
        f"Status: {cheque.status}",
        f"Amount: {format_amount(cheque.amount)}",
        f"Payee: {cheque.payee_name}",
        f"Due: {cheque.due_date.isoformat() if cheque.due_date else '-'}",
    ]
    await message.answer("\n".join(lines))
