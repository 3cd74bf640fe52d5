from __future__ import annotations

import logging

import pytest

from custody.logging_config import SensitiveDataFilter, _sanitize_obj, _sanitize_str, setup_logging


def test_sanitize_authorization_bearer_masked() -> None:
    s = "Authorization: Bearer ABCDEFGHIJKLMNOP"
    out = _sanitize_str(s)
    assert "Bearer [REDACTED]" in out


def test_sanitize_otp_in_text_masked() -> None:
    assert "123456" not in _sanitize_str('{"otp_code": "123456", "chequeId": 4}')
    assert "987654" not in _sanitize_str("Your OTP for cheque 000123 handover is: 987654. Valid for 5 minutes.")


def test_sanitize_nested_objects() -> None:
    obj = {
        "authorization": "Authorization: Bearer VERYSECRETTOKEN",
        "nested": [
            {"otp": "123456"},
            {"id_number": "1234-5678-9012"},
        ],
    }
    out = _sanitize_obj(obj)
    assert out["nested"][0]["otp"] == "[REDACTED]"
    assert out["nested"][1]["id_number"] == "***9012"
    assert "[REDACTED]" in out["authorization"]


def test_filter_masks_args_outside_development(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "production")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "sent %s", ({"code": "654321"},), None)
    SensitiveDataFilter().filter(record)
    assert "654321" not in record.getMessage()


def test_httpx_logger_level_warning_in_production(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("LOG_TO_FILE", "0")
    setup_logging()
    logger = logging.getLogger("httpx")
    assert logger.level == logging.WARNING or logger.getEffectiveLevel() == logging.WARNING
