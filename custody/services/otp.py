"""OTP challenge manager for physical cheque handovers.

Each cheque has a single challenge slot: the newest challenge whose status
is PENDING or LOCKED. Generating a new code invalidates the PENDING one;
a LOCKED slot is only cleared by the override workflow.

Codes are stored as HMAC-SHA256 digests keyed by ``OTP_SECRET``; the
cleartext only exists in memory long enough to hand it to the delivery
channel (and, outside production, to the caller who asked for it).
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from custody.config import settings
from custody.db.models import Cheque, ChequeStatus, HandoverRecord, OTP_SLOT_STATUSES, OtpChallenge, OtpChannel, OtpStatus
from custody.db.session import session_scope
from custody.errors import (
    Conflict,
    DeliveryError,
    Expired,
    InvalidCode,
    InvalidState,
    Locked,
    NotFound,
    RateLimited,
    Unauthorized,
    ValidationError,
)
from custody.services.audit import log_audit
from custody.services.cheques import RecipientIdentity, complete_handover, load_cheque, validate_handover_proof
from custody.services.notifications import deliver_otp
from custody.services.security import CAP_HANDOVER, Operator, require_capability
from custody.utils.keyed_lock import cheque_locks
from custody.utils.time import minutes, utc_now

logger = logging.getLogger(__name__)

OtpSender = Callable[..., Awaitable[None]]


@dataclass(frozen=True)
class OtpIssue:
    otp_id: int
    expires_at: datetime
    channel: str
    code: Optional[str] = field(default=None, repr=False)


def hash_code(code: str) -> str:
    return hmac.new(settings.otp_secret.encode("utf-8"), code.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_code(length: int | None = None) -> str:
    n = int(length or settings.otp_code_length)
    return f"{secrets.randbelow(10 ** n):0{n}d}"


def _mask_contact(contact: str) -> str:
    if len(contact) <= 4:
        return "***"
    return "***" + contact[-4:]


async def get_current_challenge(session: AsyncSession, cheque_id: int) -> Optional[OtpChallenge]:
    """The challenge occupying the cheque's slot, if any."""
    return (
        await session.execute(
            select(OtpChallenge)
            .where(OtpChallenge.cheque_id == cheque_id, OtpChallenge.status.in_(OTP_SLOT_STATUSES))
            .order_by(OtpChallenge.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def is_channel_locked(session: AsyncSession, cheque_id: int) -> bool:
    current = await get_current_challenge(session, cheque_id)
    return bool(current is not None and current.status == OtpStatus.LOCKED.value)


async def is_channel_exhausted(session: AsyncSession, cheque_id: int, now: Optional[datetime] = None) -> bool:
    """True once the rolling 24 hour issuance cap is used up."""
    since = (now or utc_now()) - timedelta(hours=24)
    issued = (
        await session.execute(
            select(func.count(OtpChallenge.id)).where(
                OtpChallenge.cheque_id == cheque_id,
                OtpChallenge.issued_at >= since,
            )
        )
    ).scalar_one()
    return issued >= settings.otp_max_per_day


async def generate_otp(
    cheque_id: int,
    channel: str,
    contact: str,
    *,
    actor: Operator,
    reveal_code: bool = False,
    sender: Optional[OtpSender] = None,
) -> OtpIssue:
    require_capability(actor, CAP_HANDOVER)
    if reveal_code and settings.is_production:
        raise Unauthorized("OTP codes are never returned in production")
    channel = (channel or "").strip().lower()
    if channel not in {c.value for c in OtpChannel}:
        raise ValidationError("channel must be one of: sms, whatsapp, email", field="channel")
    contact = (contact or "").strip()
    if not contact:
        raise ValidationError("toContact is required", field="toContact")

    code = generate_code()
    ttl = settings.otp_ttl_minutes
    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            cheque = await load_cheque(session, cheque_id)
            if cheque.status != ChequeStatus.WITH_RECEPTION.value:
                raise InvalidState(
                    f"OTP can only be generated for cheques with reception; current status: {cheque.status}",
                    status=cheque.status,
                )
            current = await get_current_challenge(session, cheque.id)
            if current is not None and current.status == OtpStatus.LOCKED.value:
                raise Locked("OTP channel is locked; request a handover override")

            now = utc_now()
            if await is_channel_exhausted(session, cheque.id, now):
                raise RateLimited(
                    f"OTP generation limit reached: at most {settings.otp_max_per_day} per 24 hours",
                    limit=settings.otp_max_per_day,
                )

            if current is not None:
                await session.execute(
                    update(OtpChallenge)
                    .where(OtpChallenge.id == current.id, OtpChallenge.status == OtpStatus.PENDING.value)
                    .values(status=OtpStatus.SUPERSEDED.value)
                    .execution_options(synchronize_session=False)
                )
                await log_audit(
                    session,
                    cheque_id=cheque.id,
                    action="OTP_SUPERSEDED",
                    actor=actor,
                    details={"otpId": current.id},
                )

            challenge = OtpChallenge(
                cheque_id=cheque.id,
                channel=channel,
                to_contact=contact,
                code_hash=hash_code(code),
                status=OtpStatus.PENDING.value,
                attempts_remaining=settings.otp_max_attempts,
                locked=False,
                issued_at=now,
                expires_at=now + minutes(ttl),
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
            )
            session.add(challenge)
            await session.flush()
            await log_audit(
                session,
                cheque_id=cheque.id,
                action="OTP_GENERATED",
                actor=actor,
                details={"otpId": challenge.id, "channel": channel, "toContact": _mask_contact(contact)},
            )
            await session.commit()
            cheque_no = cheque.cheque_no

    if settings.app_env.strip().lower() == "development":
        logger.info("OTP for cheque %s: %s (expires in %s mins)", cheque_no, code, ttl)

    # Delivery has external latency: no cheque lock is held here
    send = sender or deliver_otp
    try:
        await send(channel, contact, code, cheque_no=cheque_no, ttl_minutes=ttl)
    except DeliveryError:
        logger.exception("otp delivery failed", extra={"extra": {"cheque_id": cheque_id, "otp_id": challenge.id}})
        raise

    logger.info("otp issued", extra={"extra": {"cheque_id": cheque_id, "otp_id": challenge.id, "channel": channel}})
    return OtpIssue(
        otp_id=challenge.id,
        expires_at=challenge.expires_at,
        channel=channel,
        code=code if reveal_code else None,
    )


async def verify_otp(
    cheque_id: int,
    code: str,
    *,
    identity: Optional[RecipientIdentity],
    photo_ref: Optional[str],
    signature_ref: Optional[str],
    actor: Operator,
) -> Tuple[Cheque, HandoverRecord]:
    """Check a submitted code and, on a match, complete the handover.

    The whole check-and-decrement runs under the cheque lock and a guarded
    UPDATE, so concurrent submissions can neither double-spend a code nor
    push attempts below zero.
    """
    require_capability(actor, CAP_HANDOVER)
    submitted = (code or "").strip()
    if not submitted:
        raise ValidationError("otp is required", field="otp")

    async with cheque_locks.hold(cheque_id, settings.cheque_lock_timeout_seconds):
        async with session_scope() as session:
            cheque = await load_cheque(session, cheque_id)
            if cheque.status != ChequeStatus.WITH_RECEPTION.value:
                raise InvalidState(
                    f"cheque is not awaiting handover; current status: {cheque.status}",
                    status=cheque.status,
                )
            challenge = await get_current_challenge(session, cheque.id)
            if challenge is None:
                # The sweep may already have expired the last code
                latest = (
                    await session.execute(
                        select(OtpChallenge)
                        .where(OtpChallenge.cheque_id == cheque.id)
                        .order_by(OtpChallenge.id.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if latest is not None and latest.status == OtpStatus.EXPIRED.value:
                    raise Expired("OTP has expired", otpId=latest.id)
                raise NotFound("no active OTP found for this cheque")
            if challenge.status == OtpStatus.LOCKED.value:
                raise Locked("OTP is locked due to too many failed attempts; manual override required")

            if utc_now() > challenge.expires_at:
                await session.execute(
                    update(OtpChallenge)
                    .where(OtpChallenge.id == challenge.id, OtpChallenge.status == OtpStatus.PENDING.value)
                    .values(status=OtpStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
                await log_audit(session, cheque_id=cheque.id, action="OTP_EXPIRED", actor=actor, details={"otpId": challenge.id})
                await session.commit()
                raise Expired("OTP has expired", otpId=challenge.id)

            if not hmac.compare_digest(hash_code(submitted), challenge.code_hash):
                res = await session.execute(
                    update(OtpChallenge)
                    .where(
                        OtpChallenge.id == challenge.id,
                        OtpChallenge.status == OtpStatus.PENDING.value,
                        OtpChallenge.attempts_remaining > 0,
                    )
                    .values(attempts_remaining=OtpChallenge.attempts_remaining - 1)
                    .execution_options(synchronize_session=False)
                )
                await session.refresh(challenge)
                if (res.rowcount or 0) == 0:
                    if challenge.status == OtpStatus.LOCKED.value:
                        raise Locked("OTP is locked due to too many failed attempts; manual override required")
                    raise Conflict("OTP challenge changed concurrently; retry")
                remaining = challenge.attempts_remaining
                if remaining <= 0:
                    await session.execute(
                        update(OtpChallenge)
                        .where(OtpChallenge.id == challenge.id, OtpChallenge.status == OtpStatus.PENDING.value)
                        .values(status=OtpStatus.LOCKED.value, locked=True)
                        .execution_options(synchronize_session=False)
                    )
                    await log_audit(
                        session,
                        cheque_id=cheque.id,
                        action="OTP_FAILED",
                        actor=actor,
                        details={"otpId": challenge.id, "remainingAttempts": 0, "locked": True},
                    )
                    await log_audit(session, cheque_id=cheque.id, action="OTP_LOCKED", actor=actor, details={"otpId": challenge.id})
                    await session.commit()
                    logger.warning("otp channel locked", extra={"extra": {"cheque_id": cheque.id, "otp_id": challenge.id}})
                    raise Locked("too many failed attempts; OTP locked, manual override required")
                await log_audit(
                    session,
                    cheque_id=cheque.id,
                    action="OTP_FAILED",
                    actor=actor,
                    details={"otpId": challenge.id, "remainingAttempts": remaining, "locked": False},
                )
                await session.commit()
                raise InvalidCode("invalid OTP", remaining_attempts=remaining)

            # Code matches: refuse incomplete proof before consuming anything
            validate_handover_proof(identity, photo_ref, signature_ref)
            res = await session.execute(
                update(OtpChallenge)
                .where(OtpChallenge.id == challenge.id, OtpChallenge.status == OtpStatus.PENDING.value)
                .values(status=OtpStatus.USED.value, used_at=utc_now(), used_by=actor.id)
                .execution_options(synchronize_session=False)
            )
            if (res.rowcount or 0) == 0:
                raise Conflict("OTP has already been used")
            await log_audit(session, cheque_id=cheque.id, action="OTP_VERIFIED", actor=actor, details={"otpId": challenge.id})
            record = await complete_handover(
                session,
                cheque,
                identity=identity,  # type: ignore[arg-type]
                photo_ref=photo_ref,  # type: ignore[arg-type]
                signature_ref=signature_ref,  # type: ignore[arg-type]
                handed_by=actor,
            )
            await session.commit()
    logger.info("handover completed via otp", extra={"extra": {"cheque_id": cheque_id, "by": actor.id}})
    return cheque, record


async def expire_stale_otps() -> int:
    """Mark overdue PENDING challenges EXPIRED. Returns the number updated."""
    async with session_scope() as session:
        res = await session.execute(
            update(OtpChallenge)
            .where(OtpChallenge.status == OtpStatus.PENDING.value, OtpChallenge.expires_at < utc_now())
            .values(status=OtpStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    return int(res.rowcount or 0)
