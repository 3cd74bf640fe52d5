from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from custody.utils.time import utc_now

from .base import Base


class ChequeStatus(str, enum.Enum):
    SIGNED = "SIGNED"
    READY_FOR_DISPATCH = "READY_FOR_DISPATCH"
    WITH_RECEPTION = "WITH_RECEPTION"
    ISSUED = "ISSUED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({ChequeStatus.ISSUED.value, ChequeStatus.CANCELLED.value})


class OtpChannel(str, enum.Enum):
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class OtpStatus(str, enum.Enum):
    PENDING = "PENDING"
    USED = "USED"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"
    SUPERSEDED = "SUPERSEDED"


# statuses that occupy the per-cheque challenge slot
OTP_SLOT_STATUSES = (OtpStatus.PENDING.value, OtpStatus.LOCKED.value)


class OverrideStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Cheque(Base):
    __tablename__ = "cheques"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cheque_no: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    bank: Mapped[str] = mapped_column(String(191))
    branch: Mapped[str] = mapped_column(String(191))
    payer_name: Mapped[str] = mapped_column(String(191))
    payee_name: Mapped[str] = mapped_column(String(191))
    due_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[str] = mapped_column(String(32), index=True, default=ChequeStatus.SIGNED.value)
    initiator_id: Mapped[str] = mapped_column(String(64), index=True)
    attachments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list of paths

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"
    __table_args__ = (Index("ix_otp_challenges_cheque_status", "cheque_id", "status"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cheque_id: Mapped[int] = mapped_column(ForeignKey("cheques.id"), index=True)
    channel: Mapped[str] = mapped_column(String(16))
    to_contact: Mapped[str] = mapped_column(String(191))
    code_hash: Mapped[str] = mapped_column(String(64))  # HMAC-SHA256 hex, never the code
    status: Mapped[str] = mapped_column(String(16), default=OtpStatus.PENDING.value)
    attempts_remaining: Mapped[int] = mapped_column(Integer)
    locked: Mapped[bool] = mapped_column(Boolean, default=False)

    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    used_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class HandoverRecord(Base):
    __tablename__ = "handover_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cheque_id: Mapped[int] = mapped_column(ForeignKey("cheques.id"), unique=True)
    recipient_name: Mapped[str] = mapped_column(String(191))
    id_type: Mapped[str] = mapped_column(String(64))
    id_number: Mapped[str] = mapped_column(String(64))
    recipient_photo_path: Mapped[str] = mapped_column(Text)
    signature_path: Mapped[str] = mapped_column(Text)
    handed_by: Mapped[str] = mapped_column(String(64))
    handed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    is_override: Mapped[bool] = mapped_column(Boolean, default=False)
    override_id: Mapped[Optional[int]] = mapped_column(ForeignKey("override_requests.id"), nullable=True)
    override_approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    override_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class OverrideRequest(Base):
    __tablename__ = "override_requests"
    __table_args__ = (Index("ix_override_requests_cheque_status", "cheque_id", "status"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cheque_id: Mapped[int] = mapped_column(ForeignKey("cheques.id"), index=True)
    requested_by: Mapped[str] = mapped_column(String(64))
    reason: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), index=True, default=OverrideStatus.PENDING.value)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class CustodyLog(Base):
    __tablename__ = "custody_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cheque_id: Mapped[int] = mapped_column(ForeignKey("cheques.id"), index=True)
    from_role: Mapped[str] = mapped_column(String(32))  # dispatch|reception|recipient
    to_role: Mapped[str] = mapped_column(String(32))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cheque_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cheques.id"), index=True, nullable=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


def _refuse_mutation(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise RuntimeError(f"{type(target).__name__} rows are append-only")


for _model in (AuditLog, CustodyLog, HandoverRecord):
    event.listen(_model, "before_update", _refuse_mutation)
    event.listen(_model, "before_delete", _refuse_mutation)
