from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict


def _parse_approvers(raw: str) -> Dict[int, str]:
    """Parse TELEGRAM_APPROVERS ("<tg_id>:<operator_id>,...") into a mapping."""
    out: Dict[int, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        tg_raw, operator_id = part.split(":", 1)
        try:
            out[int(tg_raw.strip())] = operator_id.strip()
        except ValueError:
            pass
    return out


@dataclass
class Settings:
    app_env: str = os.getenv("APP_ENV", "production")
    tz: str = os.getenv("TZ", "UTC")

    db_url: str = os.getenv("DB_URL", "")

    otp_secret: str = os.getenv("OTP_SECRET", "change-me-in-production")
    otp_ttl_minutes: int = int(os.getenv("OTP_TTL_MINUTES", "5"))
    otp_code_length: int = int(os.getenv("OTP_CODE_LENGTH", "6"))
    otp_max_attempts: int = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))
    otp_max_per_day: int = int(os.getenv("OTP_MAX_PER_DAY", "3"))
    otp_sweep_interval_seconds: int = int(os.getenv("OTP_SWEEP_INTERVAL_SECONDS", "60"))

    throttle_max_concurrent: int = int(os.getenv("THROTTLE_MAX_CONCURRENT", "3"))
    throttle_min_interval_ms: int = int(os.getenv("THROTTLE_MIN_INTERVAL_MS", "200"))
    cheque_lock_timeout_seconds: float = float(os.getenv("CHEQUE_LOCK_TIMEOUT_SECONDS", "5"))

    upload_dir: str = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
    upload_max_bytes: int = int(os.getenv("UPLOAD_MAX_BYTES", str(5 * 1024 * 1024)))

    notify_gateway_url: str = os.getenv("NOTIFY_GATEWAY_URL", "")
    notify_gateway_token: str = os.getenv("NOTIFY_GATEWAY_TOKEN", "")

    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    approver_chat_id: str = os.getenv("APPROVER_CHAT_ID", "")
    telegram_approvers: Dict[int, str] = field(
        default_factory=lambda: _parse_approvers(os.getenv("TELEGRAM_APPROVERS", ""))
    )
    rate_limit_user_msg_per_min: int = int(os.getenv("RATE_LIMIT_USER_MSG_PER_MIN", "20"))

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"


settings = Settings()
