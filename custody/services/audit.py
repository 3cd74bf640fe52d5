from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from custody.db.models import AuditLog, CustodyLog
from custody.db.session import session_scope
from custody.services.security import Operator
from custody.utils.time import utc_now

# Custody roles written to the trail
CUSTODY_DISPATCH = "dispatch"
CUSTODY_RECEPTION = "reception"
CUSTODY_RECIPIENT = "recipient"


def _json_default(value: Any) -> str:
    return str(value)


async def log_audit(
    session: AsyncSession,
    *,
    cheque_id: Optional[int],
    action: str,
    actor: Operator | None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        cheque_id=cheque_id,
        action=action,
        actor_id=actor.id if actor else None,
        details=json.dumps(details, ensure_ascii=False, default=_json_default) if details is not None else None,
        ip_address=actor.ip_address if actor else None,
        user_agent=actor.user_agent if actor else None,
        created_at=utc_now(),
    )
    session.add(entry)
    await session.flush()
    return entry


async def log_custody(
    session: AsyncSession,
    *,
    cheque_id: int,
    from_role: str,
    to_role: str,
    created_by: str,
    notes: Optional[str] = None,
) -> CustodyLog:
    entry = CustodyLog(
        cheque_id=cheque_id,
        from_role=from_role,
        to_role=to_role,
        notes=notes,
        created_by=created_by,
        created_at=utc_now(),
    )
    session.add(entry)
    await session.flush()
    return entry


async def get_audit_trail(cheque_id: int) -> List[AuditLog]:
    async with session_scope() as session:
        rows = await session.execute(
            select(AuditLog).where(AuditLog.cheque_id == cheque_id).order_by(AuditLog.id.asc())
        )
        return list(rows.scalars().all())


async def get_custody_trail(cheque_id: int) -> List[CustodyLog]:
    async with session_scope() as session:
        rows = await session.execute(
            select(CustodyLog).where(CustodyLog.cheque_id == cheque_id).order_by(CustodyLog.id.asc())
        )
        return list(rows.scalars().all())
