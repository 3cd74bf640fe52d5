from __future__ import annotations

import os
import subprocess
import sys
import types
from pathlib import Path


def test_healthcheck_import() -> None:
    import custody.healthcheck as hc
    assert isinstance(hc, types.ModuleType)


def test_main_builds_dispatcher() -> None:
    from custody.main import build_dispatcher

    dp = build_dispatcher()
    assert dp is not None


def test_env_example_keys_present() -> None:
    # Ensure critical env keys exist in example template for documentation correctness
    example = open('.env.example', 'r', encoding='utf-8').read()
    for key in [
        'DB_URL',
        'OTP_SECRET',
        'NOTIFY_GATEWAY_URL',
        'TELEGRAM_BOT_TOKEN',
        'TELEGRAM_APPROVERS',
    ]:
        assert key in example


def test_main_loads_dotenv_before_settings(tmp_path) -> None:
    (tmp_path / ".env").write_text("OTP_SECRET=from-dotenv\nAPP_ENV=staging\n", encoding="utf-8")
    root = Path(__file__).resolve().parents[1]
    env = {k: v for k, v in os.environ.items() if k not in {"OTP_SECRET", "APP_ENV"}}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(root), env.get("PYTHONPATH", "")]))
    out = subprocess.run(
        [
            sys.executable,
            "-c",
            "import custody.main; from custody.config import settings; print(settings.otp_secret, settings.app_env)",
        ],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=True,
    )
    assert out.stdout.split() == ["from-dotenv", "staging"]
