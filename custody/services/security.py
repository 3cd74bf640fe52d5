from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional, Set

from custody.errors import Unauthorized

# Capability codes
CAP_CHEQUES_CREATE = "CHEQUES_CREATE"
CAP_CHEQUES_DISPATCH = "CHEQUES_DISPATCH"
CAP_CHEQUES_CANCEL = "CHEQUES_CANCEL"
CAP_HANDOVER = "HANDOVER"
CAP_OVERRIDE_MODERATE = "OVERRIDE_MODERATE"

ROLE_ADMIN = "admin"
ROLE_DIRECTOR = "director"
ROLE_ACCOUNTS = "accounts"
ROLE_RECEPTION = "reception"
ROLE_HOD = "hod"

_DEFAULT_ROLE_CAPS: Dict[str, Set[str]] = {
    ROLE_ADMIN: {"*"},
    ROLE_DIRECTOR: {CAP_CHEQUES_CREATE, CAP_CHEQUES_CANCEL},
    ROLE_ACCOUNTS: {CAP_CHEQUES_CREATE, CAP_CHEQUES_DISPATCH, CAP_CHEQUES_CANCEL},
    ROLE_RECEPTION: {CAP_HANDOVER},
    ROLE_HOD: {CAP_OVERRIDE_MODERATE},
}


@dataclass(frozen=True)
class Operator:
    """The authenticated caller of a custody operation."""

    id: str
    role: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _parse_csv(s: str) -> Set[str]:
    return {x.strip().upper() for x in s.split(",") if x.strip()}


def role_capabilities(role: str) -> Set[str]:
    # ENV override: ROLE_CAPS_<ROLE>="*" or CSV of capability codes
    role_key = (role or "").strip().lower()
    raw = os.getenv(f"ROLE_CAPS_{role_key.upper()}")
    if raw is not None:
        raw = raw.strip()
        return {"*"} if raw == "*" else _parse_csv(raw)
    return set(_DEFAULT_ROLE_CAPS.get(role_key, set()))


def has_capability(actor: Operator | None, code: str) -> bool:
    if actor is None or not actor.id:
        return False
    caps = role_capabilities(actor.role)
    return ("*" in caps) or (code.strip().upper() in caps)


def require_capability(actor: Operator | None, code: str) -> Operator:
    if not has_capability(actor, code):
        role = actor.role if actor else None
        raise Unauthorized("operation not permitted for this role", required=code, role=role)
    return actor  # type: ignore[return-value]
