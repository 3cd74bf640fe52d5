"""Manual handover override for cheques whose OTP channel is locked.

PENDING -> APPROVED | REJECTED. An approval authorizes exactly one override
handover; ``consumed_at`` marks it spent.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from custody.config import settings
from custody.db.models import Cheque, ChequeStatus, HandoverRecord, OverrideRequest, OverrideStatus
from custody.db.session import session_scope
from custody.errors import Conflict, InvalidState, NotFound, Unauthorized, ValidationError
from custody.services.audit import log_audit
from custody.services.cheques import RecipientIdentity, complete_handover, load_cheque, validate_handover_proof
from custody.services.notifications import notify_approvers
from custody.services.otp import is_channel_exhausted, is_channel_locked
from custody.services.security import CAP_HANDOVER, CAP_OVERRIDE_MODERATE, Operator, has_capability, require_capability
from custody.utils.keyed_lock import cheque_locks
from custody.utils.time import utc_now

logger = logging.getLogger(__name__)


async def _load_override(session: AsyncSession, override_id: int) -> OverrideRequest:
    override = await session.get(OverrideRequest, override_id)
    if override is None:
        raise NotFound("override request not found", overrideId=override_id)
    return override


async def _cheque_id_of(override_id: int) -> int:
    async with session_scope() as session:
        return (await _load_override(session, override_id)).cheque_id


def _check_moderator(override: OverrideRequest, actor: Operator) -> None:
    if not has_capability(actor, CAP_OVERRIDE_MODERATE):
        raise Unauthorized("only approvers can moderate override requests", role=actor.role)
    if actor.id == override.requested_by:
        raise Unauthorized("requesters cannot moderate their own override request")


async def request_override(cheque_id: int, *, actor: Operator, reason: str) -> OverrideRequest:
    require_capability(actor, CAP_HANDOVER)
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("reason is required for an override request", field="reason")
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            cheque = await load_cheque(session, cheque_id)
            if cheque.status != ChequeStatus.WITH_RECEPTION.value:
                raise InvalidState(
                    f"override requires a cheque with reception; current status: {cheque.status}",
                    status=cheque.status,
                )
            # A channel that hit the daily issuance cap is as stuck as a locked one
            if not (await is_channel_locked(session, cheque.id) or await is_channel_exhausted(session, cheque.id)):
                raise InvalidState(
                    "override is only available when the OTP channel is locked or its daily limit is used up",
                    locked=False,
                )
            pending = (
                await session.execute(
                    select(OverrideRequest.id).where(
                        OverrideRequest.cheque_id == cheque.id,
                        OverrideRequest.status == OverrideStatus.PENDING.value,
                    )
                )
            ).scalar_one_or_none()
            if pending is not None:
                raise Conflict("an override request is already pending for this cheque", overrideId=pending)
            override = OverrideRequest(
                cheque_id=cheque.id,
                requested_by=actor.id,
                reason=reason.strip(),
                status=OverrideStatus.PENDING.value,
            )
            session.add(override)
            await session.flush()
            await log_audit(
                session,
                cheque_id=cheque.id,
                action="OVERRIDE_REQUESTED",
                actor=actor,
                details={"overrideId": override.id, "reason": override.reason},
            )
            await session.commit()
            cheque_no = cheque.cheque_no

    logger.info("override requested", extra={"extra": {"cheque_id": cheque_id, "override_id": override.id, "by": actor.id}})
    await notify_approvers(
        f"🔔 Handover override requested\nCheque: {cheque_no}\nBy: {actor.id}\nReason: {override.reason}",
        override_id=override.id,
    )
    return override


async def approve_override(override_id: int, *, actor: Operator) -> OverrideRequest:
    cheque_id = await _cheque_id_of(override_id)
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            override = await _load_override(session, override_id)
            _check_moderator(override, actor)
            now = utc_now()
            res = await session.execute(
                update(OverrideRequest)
                .where(OverrideRequest.id == override.id, OverrideRequest.status == OverrideStatus.PENDING.value)
                .values(status=OverrideStatus.APPROVED.value, approved_by=actor.id, approved_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.refresh(override)
            if (res.rowcount or 0) == 0:
                raise Conflict(f"override request is already {override.status}", status=override.status)
            await log_audit(
                session,
                cheque_id=override.cheque_id,
                action="OVERRIDE_APPROVED",
                actor=actor,
                details={"overrideId": override.id, "requestedBy": override.requested_by, "reason": override.reason},
            )
            await session.commit()
    logger.info("override approved", extra={"extra": {"override_id": override_id, "by": actor.id}})
    return override


async def reject_override(override_id: int, *, actor: Operator, rejected_reason: str) -> OverrideRequest:
    if not isinstance(rejected_reason, str) or not rejected_reason.strip():
        raise ValidationError("rejectedReason is required", field="rejectedReason")
    cheque_id = await _cheque_id_of(override_id)
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            override = await _load_override(session, override_id)
            _check_moderator(override, actor)
            now = utc_now()
            res = await session.execute(
                update(OverrideRequest)
                .where(OverrideRequest.id == override.id, OverrideRequest.status == OverrideStatus.PENDING.value)
                .values(
                    status=OverrideStatus.REJECTED.value,
                    approved_by=actor.id,
                    approved_at=now,
                    rejected_reason=rejected_reason.strip(),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.refresh(override)
            if (res.rowcount or 0) == 0:
                raise Conflict(f"override request is already {override.status}", status=override.status)
            await log_audit(
                session,
                cheque_id=override.cheque_id,
                action="OVERRIDE_REJECTED",
                actor=actor,
                details={
                    "overrideId": override.id,
                    "requestedBy": override.requested_by,
                    "reason": override.reason,
                    "rejectedReason": override.rejected_reason,
                },
            )
            await session.commit()
    logger.info("override rejected", extra={"extra": {"override_id": override_id, "by": actor.id}})
    return override


async def complete_handover_via_override(
    cheque_id: int,
    *,
    identity: Optional[RecipientIdentity],
    photo_ref: Optional[str],
    signature_ref: Optional[str],
    actor: Operator,
) -> Tuple[Cheque, HandoverRecord]:
    require_capability(actor, CAP_HANDOVER)
    validate_handover_proof(identity, photo_ref, signature_ref)
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            cheque = await load_cheque(session, cheque_id)
            override = (
                await session.execute(
                    select(OverrideRequest)
                    .where(
                        OverrideRequest.cheque_id == cheque.id,
                        OverrideRequest.status == OverrideStatus.APPROVED.value,
                        OverrideRequest.consumed_at.is_(None),
                    )
                    .order_by(OverrideRequest.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if override is None:
                raise NotFound("no approved override request is available for this cheque")
            if cheque.status != ChequeStatus.WITH_RECEPTION.value:
                raise InvalidState(
                    f"override handover requires a cheque with reception; current status: {cheque.status}",
                    status=cheque.status,
                )
            res = await session.execute(
                update(OverrideRequest)
                .where(OverrideRequest.id == override.id, OverrideRequest.consumed_at.is_(None))
                .values(consumed_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if (res.rowcount or 0) == 0:
                raise Conflict("override approval has already been used")
            await log_audit(
                session,
                cheque_id=cheque.id,
                action="OVERRIDE_CONSUMED",
                actor=actor,
                details={"overrideId": override.id, "approvedBy": override.approved_by},
            )
            record = await complete_handover(
                session,
                cheque,
                identity=identity,  # type: ignore[arg-type]
                photo_ref=photo_ref,  # type: ignore[arg-type]
                signature_ref=signature_ref,  # type: ignore[arg-type]
                handed_by=actor,
                override=override,
            )
            await session.commit()
    logger.info("handover completed via override", extra={"extra": {"cheque_id": cheque_id, "override_id": override.id}})
    return cheque, record


async def get_override(override_id: int) -> OverrideRequest:
    async with session_scope() as session:
        return await _load_override(session, override_id)


async def list_overrides_for_cheque(cheque_id: int) -> List[OverrideRequest]:
    async with session_scope() as session:
        await load_cheque(session, cheque_id)
        rows = await session.execute(
            select(OverrideRequest)
            .where(OverrideRequest.cheque_id == cheque_id)
            .order_by(OverrideRequest.created_at.desc(), OverrideRequest.id.desc())
        )
        return list(rows.scalars().all())


async def list_pending_overrides(*, limit: int = 50, offset: int = 0) -> Tuple[List[OverrideRequest], int]:
    limit = max(1, min(int(limit), 200))
    offset = max(0, int(offset))
    cond = OverrideRequest.status == OverrideStatus.PENDING.value
    async with session_scope() as session:
        rows = await session.execute(
            select(OverrideRequest)
            .where(cond)
            .order_by(OverrideRequest.created_at.desc(), OverrideRequest.id.desc())
            .offset(offset)
            .limit(limit)
        )
        total = (await session.execute(select(func.count(OverrideRequest.id)).where(cond))).scalar_one()
        return list(rows.scalars().all()), int(total)
