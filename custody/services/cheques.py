"""Cheque lifecycle: guarded custody status transitions.

SIGNED -> READY_FOR_DISPATCH -> WITH_RECEPTION -> ISSUED, with CANCELLED
reachable from every non-terminal status. Each transition is a conditional
UPDATE on the expected status and shares its transaction with the trail
entries it writes.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from custody.config import settings
from custody.db.models import (
    TERMINAL_STATUSES,
    Cheque,
    ChequeStatus,
    HandoverRecord,
    OverrideRequest,
)
from custody.db.session import session_scope
from custody.errors import Conflict, InvalidState, NotFound, ValidationError
from custody.services.audit import (
    CUSTODY_DISPATCH,
    CUSTODY_RECEPTION,
    CUSTODY_RECIPIENT,
    log_audit,
    log_custody,
)
from custody.services.security import (
    CAP_CHEQUES_CANCEL,
    CAP_CHEQUES_CREATE,
    CAP_CHEQUES_DISPATCH,
    ROLE_ACCOUNTS,
    ROLE_DIRECTOR,
    ROLE_RECEPTION,
    Operator,
    require_capability,
)
from custody.utils.keyed_lock import cheque_locks
from custody.utils.money import parse_amount
from custody.utils.time import utc_now

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = tuple(s.value for s in ChequeStatus if s.value not in TERMINAL_STATUSES)


@dataclass(frozen=True)
class RecipientIdentity:
    name: str
    id_type: str
    id_number: str


def validate_handover_proof(
    identity: Optional[RecipientIdentity],
    photo_ref: Optional[str],
    signature_ref: Optional[str],
) -> None:
    checks = [
        ("recipientName", identity.name if identity else None),
        ("idType", identity.id_type if identity else None),
        ("idNumber", identity.id_number if identity else None),
        ("recipientPhotoPath", photo_ref),
        ("signaturePath", signature_ref),
    ]
    for field_name, value in checks:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field_name} is required for handover", field=field_name)


def _parse_due_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError("dueDate must be an ISO date (YYYY-MM-DD)", field="dueDate") from None


async def load_cheque(session: AsyncSession, cheque_id: int) -> Cheque:
    cheque = await session.get(Cheque, cheque_id)
    if cheque is None:
        raise NotFound("cheque not found", chequeId=cheque_id)
    return cheque


async def _transition(
    session: AsyncSession,
    cheque: Cheque,
    *,
    expected: Iterable[str],
    target: ChequeStatus,
) -> str:
    """Move ``cheque`` to ``target`` only if it is currently in ``expected``.

    Returns the previous status.
    """
    expected = tuple(expected)
    previous = cheque.status
    res = await session.execute(
        update(Cheque)
        .where(Cheque.id == cheque.id, Cheque.status.in_(expected))
        .values(status=target.value, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if (res.rowcount or 0) == 0:
        await session.refresh(cheque)
        raise InvalidState(
            f"invalid status transition to {target.value}; current status: {cheque.status}",
            status=cheque.status,
            expected=list(expected),
        )
    await session.refresh(cheque)
    return previous


async def create_cheque(
    *,
    actor: Operator,
    cheque_no: str,
    amount: int | str | Decimal,
    bank: str,
    branch: str,
    payer_name: str,
    payee_name: str,
    due_date: date | str,
    attachments: Optional[Sequence[str]] = None,
) -> Cheque:
    require_capability(actor, CAP_CHEQUES_CREATE)
    for field_name, value in (
        ("chequeNo", cheque_no),
        ("bank", bank),
        ("branch", branch),
        ("payerName", payer_name),
        ("payeeName", payee_name),
    ):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field_name} is required", field=field_name)
    if due_date is None or due_date == "":
        raise ValidationError("dueDate is required", field="dueDate")
    amount_d = parse_amount(amount)
    due = _parse_due_date(due_date)

    async with session_scope() as session:
        existing = (
            await session.execute(select(Cheque.id).where(Cheque.cheque_no == cheque_no.strip()))
        ).scalar_one_or_none()
        if existing is not None:
            raise Conflict("cheque number already exists", chequeNo=cheque_no.strip())
        cheque = Cheque(
            cheque_no=cheque_no.strip(),
            amount=amount_d,
            bank=bank.strip(),
            branch=branch.strip(),
            payer_name=payer_name.strip(),
            payee_name=payee_name.strip(),
            due_date=due,
            status=ChequeStatus.SIGNED.value,
            initiator_id=actor.id,
            attachments=json.dumps(list(attachments)) if attachments else None,
        )
        session.add(cheque)
        try:
            await session.flush()
        except IntegrityError:
            raise Conflict("cheque number already exists", chequeNo=cheque_no.strip()) from None
        await log_audit(
            session,
            cheque_id=cheque.id,
            action="CHEQUE_CREATED",
            actor=actor,
            details={"chequeNo": cheque.cheque_no, "amount": str(amount_d), "bank": cheque.bank, "payeeName": cheque.payee_name},
        )
        await session.commit()
    logger.info("cheque created", extra={"extra": {"cheque_id": cheque.id, "by": actor.id}})
    return cheque


async def get_cheque(cheque_id: int) -> Cheque:
    async with session_scope() as session:
        return await load_cheque(session, cheque_id)


async def get_handover_record(cheque_id: int) -> Optional[HandoverRecord]:
    async with session_scope() as session:
        return (
            await session.execute(select(HandoverRecord).where(HandoverRecord.cheque_id == cheque_id))
        ).scalar_one_or_none()


async def list_cheques(
    *,
    actor: Optional[Operator] = None,
    status: Optional[str] = None,
    due_date_from: Optional[date | str] = None,
    due_date_to: Optional[date | str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Cheque], int]:
    conds = []
    if status:
        conds.append(Cheque.status == status)
    if due_date_from:
        conds.append(Cheque.due_date >= _parse_due_date(due_date_from))
    if due_date_to:
        conds.append(Cheque.due_date <= _parse_due_date(due_date_to))
    if search:
        like = f"%{search.strip()}%"
        conds.append(
            or_(
                Cheque.cheque_no.like(like),
                Cheque.payee_name.like(like),
                Cheque.payer_name.like(like),
                Cheque.bank.like(like),
            )
        )
    # Role scoping: each desk only sees the cheques it can act on
    role = (actor.role if actor else "").lower()
    if role == ROLE_RECEPTION:
        conds.append(Cheque.status == ChequeStatus.WITH_RECEPTION.value)
    elif role == ROLE_ACCOUNTS:
        conds.append(Cheque.status.in_((ChequeStatus.SIGNED.value, ChequeStatus.READY_FOR_DISPATCH.value)))
    elif role == ROLE_DIRECTOR and actor is not None:
        conds.append(Cheque.initiator_id == actor.id)

    limit = max(1, min(int(limit), 200))
    offset = max(0, int(offset))
    async with session_scope() as session:
        stmt = select(Cheque).where(*conds).order_by(Cheque.created_at.desc(), Cheque.id.desc())
        rows = (await session.execute(stmt.offset(offset).limit(limit))).scalars().all()
        total = (await session.execute(select(func.count(Cheque.id)).where(*conds))).scalar_one()
    return list(rows), int(total)


async def mark_ready(cheque_id: int, *, actor: Operator) -> Cheque:
    require_capability(actor, CAP_CHEQUES_DISPATCH)
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            cheque = await load_cheque(session, cheque_id)
            previous = await _transition(
                session, cheque, expected=(ChequeStatus.SIGNED.value,), target=ChequeStatus.READY_FOR_DISPATCH
            )
            await log_audit(
                session,
                cheque_id=cheque.id,
                action="STATUS_CHANGED",
                actor=actor,
                details={"from": previous, "to": cheque.status},
            )
            await session.commit()
    logger.info("cheque ready for dispatch", extra={"extra": {"cheque_id": cheque_id, "by": actor.id}})
    return cheque


async def forward_to_reception(cheque_id: int, *, actor: Operator, notes: Optional[str] = None) -> Cheque:
    require_capability(actor, CAP_CHEQUES_DISPATCH)
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            cheque = await load_cheque(session, cheque_id)
            previous = await _transition(
                session,
                cheque,
                expected=(ChequeStatus.READY_FOR_DISPATCH.value,),
                target=ChequeStatus.WITH_RECEPTION,
            )
            await log_custody(
                session,
                cheque_id=cheque.id,
                from_role=CUSTODY_DISPATCH,
                to_role=CUSTODY_RECEPTION,
                created_by=actor.id,
                notes=notes,
            )
            await log_audit(
                session,
                cheque_id=cheque.id,
                action="FORWARDED_TO_RECEPTION",
                actor=actor,
                details={"from": previous, "to": cheque.status, "notes": notes},
            )
            await session.commit()
    logger.info("cheque forwarded to reception", extra={"extra": {"cheque_id": cheque_id, "by": actor.id}})
    return cheque


async def complete_handover(
    session: AsyncSession,
    cheque: Cheque,
    *,
    identity: RecipientIdentity,
    photo_ref: str,
    signature_ref: str,
    handed_by: Operator,
    override: Optional[OverrideRequest] = None,
) -> HandoverRecord:
    """WITH_RECEPTION -> ISSUED plus its handover record and trail entries.

    Runs inside the caller's transaction; the caller commits. Only the OTP
    and override services call this.
    """
    validate_handover_proof(identity, photo_ref, signature_ref)
    await _transition(
        session, cheque, expected=(ChequeStatus.WITH_RECEPTION.value,), target=ChequeStatus.ISSUED
    )
    record = HandoverRecord(
        cheque_id=cheque.id,
        recipient_name=identity.name.strip(),
        id_type=identity.id_type.strip(),
        id_number=identity.id_number.strip(),
        recipient_photo_path=photo_ref,
        signature_path=signature_ref,
        handed_by=handed_by.id,
        handed_at=utc_now(),
        is_override=override is not None,
        override_id=override.id if override is not None else None,
        override_approved_by=override.approved_by if override is not None else None,
        override_reason=override.reason if override is not None else None,
    )
    session.add(record)
    await session.flush()
    await log_custody(
        session,
        cheque_id=cheque.id,
        from_role=CUSTODY_RECEPTION,
        to_role=CUSTODY_RECIPIENT,
        created_by=handed_by.id,
        notes=f"Handed to {record.recipient_name} ({record.id_type})",
    )
    await log_audit(
        session,
        cheque_id=cheque.id,
        action="HANDOVER_COMPLETED",
        actor=handed_by,
        details={
            "recipientName": record.recipient_name,
            "idType": record.id_type,
            "isOverride": record.is_override,
            "overrideId": record.override_id,
            "handoverRecordId": record.id,
        },
    )
    return record


async def cancel_cheque(cheque_id: int, *, actor: Operator, reason: str) -> Cheque:
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("a cancellation reason is required", field="reason")
    require_capability(actor, CAP_CHEQUES_CANCEL)
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            cheque = await load_cheque(session, cheque_id)
            previous = await _transition(
                session, cheque, expected=NON_TERMINAL_STATUSES, target=ChequeStatus.CANCELLED
            )
            await log_audit(
                session,
                cheque_id=cheque.id,
                action="CHEQUE_CANCELLED",
                actor=actor,
                details={"previousStatus": previous, "reason": reason.strip()},
            )
            await session.commit()
    logger.info("cheque cancelled", extra={"extra": {"cheque_id": cheque_id, "by": actor.id}})
    return cheque
