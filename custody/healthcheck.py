import asyncio
import os
import sys

import httpx
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from custody.gateway.client import NotifyGatewayClient

# Healthcheck: validate ENV, DB connectivity (SELECT 1) and optional
# notification gateway reachability.
#
# Skip the gateway probe with HEALTHCHECK_SKIP_GATEWAY=1 (staging, or while
# the gateway is under maintenance).


async def _check_db() -> bool:
    db_url = os.getenv("DB_URL", "")
    if not db_url:
        return False
    try:
        engine = create_async_engine(db_url, pool_pre_ping=True)
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await engine.dispose()
        return True
    except Exception:
        return False


async def _check_gateway() -> bool:
    base = (os.getenv("NOTIFY_GATEWAY_URL", "") or "").rstrip("/")
    if not base:
        return False
    client = NotifyGatewayClient(base, os.getenv("NOTIFY_GATEWAY_TOKEN", ""))
    try:
        return await client.ping()
    except httpx.HTTPError:
        return False
    finally:
        await client.aclose()


def main() -> int:
    if os.getenv("APP_ENV", "production").lower() == "production" and not os.getenv("OTP_SECRET"):
        print("missing OTP_SECRET", file=sys.stderr)
        return 1

    ok_db = asyncio.run(_check_db())
    if not ok_db:
        print("db not ready", file=sys.stderr)
        return 1

    skip_gw = os.getenv("HEALTHCHECK_SKIP_GATEWAY", "0").strip().lower() in {"1", "true", "yes", "on"}
    if not skip_gw:
        ok_gw = asyncio.run(_check_gateway())
        if not ok_gw:
            print("notify gateway not ready", file=sys.stderr)
            return 1

    print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
