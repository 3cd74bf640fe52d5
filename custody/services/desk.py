"""Logical API boundary of the custody core.

``HandoverDesk`` mirrors the operations the web client calls (create,
mark-ready, forward, generate/verify OTP, overrides, uploads) and returns the
camelCase shapes the client expects. Every call goes through one shared
``DispatchThrottle``. Protocol failures propagate as ``CustodyError``;
storage faults are logged and re-raised as ``ServiceError``.
"""
from __future__ import annotations

import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from custody.config import settings
from custody.db.models import AuditLog, Cheque, CustodyLog, HandoverRecord, OverrideRequest
from custody.errors import CustodyError, DeliveryError, ServiceError
from custody.services import artifacts, audit, cheques, otp, overrides
from custody.services.cheques import RecipientIdentity
from custody.services.security import CAP_OVERRIDE_MODERATE, Operator, require_capability
from custody.utils.throttle import DispatchThrottle
from custody.utils.time import to_utc_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")


def cheque_to_dict(c: Cheque) -> Dict[str, Any]:
    return {
        "id": c.id,
        "chequeNo": c.cheque_no,
        "amount": str(Decimal(str(c.amount)).quantize(Decimal("0.01"))),
        "bank": c.bank,
        "branch": c.branch,
        "payerName": c.payer_name,
        "payeeName": c.payee_name,
        "dueDate": c.due_date.isoformat() if c.due_date else None,
        "status": c.status,
        "initiatorId": c.initiator_id,
        "attachments": json.loads(c.attachments) if c.attachments else [],
        "createdAt": to_utc_iso(c.created_at),
        "updatedAt": to_utc_iso(c.updated_at),
    }


def handover_to_dict(r: HandoverRecord) -> Dict[str, Any]:
    return {
        "id": r.id,
        "chequeId": r.cheque_id,
        "recipientName": r.recipient_name,
        "idType": r.id_type,
        "idNumber": r.id_number,
        "recipientPhotoPath": r.recipient_photo_path,
        "signaturePath": r.signature_path,
        "handedBy": r.handed_by,
        "handedAt": to_utc_iso(r.handed_at),
        "isOverride": bool(r.is_override),
        "overrideApprovedBy": r.override_approved_by,
        "overrideReason": r.override_reason,
    }


def override_to_dict(o: OverrideRequest) -> Dict[str, Any]:
    return {
        "id": o.id,
        "chequeId": o.cheque_id,
        "requestedBy": o.requested_by,
        "reason": o.reason,
        "status": o.status,
        "approvedBy": o.approved_by,
        "approvedAt": to_utc_iso(o.approved_at),
        "rejectedReason": o.rejected_reason,
        "consumed": o.consumed_at is not None,
        "createdAt": to_utc_iso(o.created_at),
        "updatedAt": to_utc_iso(o.updated_at),
    }


def audit_to_dict(a: AuditLog) -> Dict[str, Any]:
    return {
        "id": a.id,
        "chequeId": a.cheque_id,
        "action": a.action,
        "userId": a.actor_id,
        "details": json.loads(a.details) if a.details else None,
        "ipAddress": a.ip_address,
        "userAgent": a.user_agent,
        "createdAt": to_utc_iso(a.created_at),
    }


def custody_to_dict(e: CustodyLog) -> Dict[str, Any]:
    return {
        "id": e.id,
        "chequeId": e.cheque_id,
        "fromRole": e.from_role,
        "toRole": e.to_role,
        "notes": e.notes,
        "createdBy": e.created_by,
        "createdAt": to_utc_iso(e.created_at),
    }


class HandoverDesk:
    def __init__(
        self,
        throttle: Optional[DispatchThrottle] = None,
        *,
        otp_sender: Optional[otp.OtpSender] = None,
    ) -> None:
        self.throttle = throttle or DispatchThrottle(
            max_concurrent=settings.throttle_max_concurrent,
            min_interval=settings.throttle_min_interval_ms / 1000.0,
        )
        self._otp_sender = otp_sender

    async def _call(self, op: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        try:
            return await self.throttle.submit(fn, *args, **kwargs)
        except CustodyError as e:
            logger.info("%s refused: %s", op, e.code, extra={"extra": {"op": op, "error": e.code}})
            raise
        except DeliveryError:
            raise
        except SQLAlchemyError as e:
            logger.exception("%s: storage failure", op)
            raise ServiceError(f"{op} failed") from e

    # ---- cheques ---------------------------------------------------------

    async def create_cheque(
        self,
        actor: Operator,
        *,
        cheque_no: str,
        amount: int | str | Decimal,
        bank: str,
        branch: str,
        payer_name: str,
        payee_name: str,
        due_date: date | str,
        attachments: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        cheque = await self._call(
            "create_cheque",
            cheques.create_cheque,
            actor=actor,
            cheque_no=cheque_no,
            amount=amount,
            bank=bank,
            branch=branch,
            payer_name=payer_name,
            payee_name=payee_name,
            due_date=due_date,
            attachments=attachments,
        )
        return cheque_to_dict(cheque)

    async def _cheque_detail(self, cheque_id: int) -> Dict[str, Any]:
        cheque = await cheques.get_cheque(cheque_id)
        custody_trail = await audit.get_custody_trail(cheque_id)
        record = await cheques.get_handover_record(cheque_id)
        out = cheque_to_dict(cheque)
        out["custodyLogs"] = [custody_to_dict(e) for e in custody_trail]
        out["handoverRecords"] = [handover_to_dict(record)] if record else []
        return out

    async def get_cheque(self, cheque_id: int) -> Dict[str, Any]:
        return await self._call("get_cheque", self._cheque_detail, cheque_id)

    async def list_cheques(self, actor: Operator, **filters: Any) -> Dict[str, Any]:
        limit = int(filters.pop("limit", 50))
        offset = int(filters.pop("offset", 0))
        rows, total = await self._call(
            "list_cheques", cheques.list_cheques, actor=actor, limit=limit, offset=offset, **filters
        )
        return {"cheques": [cheque_to_dict(c) for c in rows], "total": total, "limit": limit, "offset": offset}

    async def _audit_trail(self, cheque_id: int) -> List[Dict[str, Any]]:
        await cheques.get_cheque(cheque_id)
        return [audit_to_dict(a) for a in await audit.get_audit_trail(cheque_id)]

    async def get_audit_trail(self, cheque_id: int) -> List[Dict[str, Any]]:
        return await self._call("get_audit_trail", self._audit_trail, cheque_id)

    async def get_cheque_overrides(self, cheque_id: int) -> List[Dict[str, Any]]:
        rows = await self._call("get_cheque_overrides", overrides.list_overrides_for_cheque, cheque_id)
        return [override_to_dict(o) for o in rows]

    async def mark_ready(self, cheque_id: int, actor: Operator) -> Dict[str, Any]:
        return cheque_to_dict(await self._call("mark_ready", cheques.mark_ready, cheque_id, actor=actor))

    async def forward_to_reception(self, cheque_id: int, actor: Operator, *, notes: Optional[str] = None) -> Dict[str, Any]:
        cheque = await self._call("forward_to_reception", cheques.forward_to_reception, cheque_id, actor=actor, notes=notes)
        return cheque_to_dict(cheque)

    async def cancel_cheque(self, cheque_id: int, actor: Operator, *, reason: str) -> Dict[str, Any]:
        cheque = await self._call("cancel_cheque", cheques.cancel_cheque, cheque_id, actor=actor, reason=reason)
        return cheque_to_dict(cheque)

    # ---- OTP handover ------------------------------------------------------

    async def generate_otp(self, cheque_id: int, actor: Operator, *, channel: str, to_contact: str) -> Dict[str, Any]:
        reveal = not settings.is_production
        issue = await self._call(
            "generate_otp",
            otp.generate_otp,
            cheque_id,
            channel,
            to_contact,
            actor=actor,
            reveal_code=reveal,
            sender=self._otp_sender,
        )
        out: Dict[str, Any] = {"otpId": issue.otp_id, "expiresAt": to_utc_iso(issue.expires_at)}
        if reveal and issue.code is not None:
            out["otpCode"] = issue.code
        return out

    async def verify_otp(
        self,
        cheque_id: int,
        actor: Operator,
        *,
        otp_code: str,
        recipient_name: Optional[str],
        id_type: Optional[str],
        id_number: Optional[str],
        recipient_photo_path: Optional[str],
        signature_path: Optional[str],
    ) -> Dict[str, Any]:
        cheque, record = await self._call(
            "verify_otp",
            otp.verify_otp,
            cheque_id,
            otp_code,
            identity=RecipientIdentity(recipient_name or "", id_type or "", id_number or ""),
            photo_ref=recipient_photo_path,
            signature_ref=signature_path,
            actor=actor,
        )
        return {"cheque": cheque_to_dict(cheque), "handoverRecord": handover_to_dict(record)}

    # ---- overrides ---------------------------------------------------------

    async def request_override(self, cheque_id: int, actor: Operator, *, reason: str) -> Dict[str, Any]:
        override = await self._call("request_override", overrides.request_override, cheque_id, actor=actor, reason=reason)
        return override_to_dict(override)

    async def list_pending_overrides(self, actor: Operator, *, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        require_capability(actor, CAP_OVERRIDE_MODERATE)
        rows, total = await self._call(
            "list_pending_overrides", overrides.list_pending_overrides, limit=limit, offset=offset
        )
        return {"overrides": [override_to_dict(o) for o in rows], "total": total, "limit": limit, "offset": offset}

    async def approve_override(self, override_id: int, actor: Operator) -> Dict[str, Any]:
        override = await self._call("approve_override", overrides.approve_override, override_id, actor=actor)
        return override_to_dict(override)

    async def reject_override(self, override_id: int, actor: Operator, *, rejected_reason: str) -> Dict[str, Any]:
        override = await self._call(
            "reject_override", overrides.reject_override, override_id, actor=actor, rejected_reason=rejected_reason
        )
        return override_to_dict(override)

    async def complete_handover_via_override(
        self,
        cheque_id: int,
        actor: Operator,
        *,
        recipient_name: Optional[str],
        id_type: Optional[str],
        id_number: Optional[str],
        recipient_photo_path: Optional[str],
        signature_path: Optional[str],
    ) -> Dict[str, Any]:
        cheque, record = await self._call(
            "complete_handover_via_override",
            overrides.complete_handover_via_override,
            cheque_id,
            identity=RecipientIdentity(recipient_name or "", id_type or "", id_number or ""),
            photo_ref=recipient_photo_path,
            signature_ref=signature_path,
            actor=actor,
        )
        return {"cheque": cheque_to_dict(cheque), "handoverRecord": handover_to_dict(record)}

    # ---- uploads -----------------------------------------------------------

    async def upload_artifact(self, data: bytes, *, kind: str, filename: Optional[str] = None) -> Dict[str, str]:
        path = await self._call("upload_artifact", artifacts.store_artifact, data, kind=kind, filename=filename)
        return {"path": path}
