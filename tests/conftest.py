from __future__ import annotations

import io
from typing import List, Tuple

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import create_async_engine

from custody.config import settings
from custody.db import session as db_session
from custody.services import cheques
from custody.services.security import Operator


@pytest.fixture(autouse=True)
def _test_settings(tmp_path, monkeypatch):
    # Keep every test off real gateways, bots and the shared upload dir
    monkeypatch.setattr(settings, "app_env", "development")
    monkeypatch.setattr(settings, "otp_secret", "test-otp-secret")
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "notify_gateway_url", "")
    monkeypatch.setattr(settings, "telegram_bot_token", "")
    monkeypatch.setattr(settings, "approver_chat_id", "")
    monkeypatch.setattr(settings, "otp_max_per_day", 3)
    monkeypatch.setattr(settings, "otp_max_attempts", 3)
    monkeypatch.setattr(settings, "otp_ttl_minutes", 5)


@pytest.fixture
async def db(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'custody.db'}")
    db_session.configure(engine)
    await db_session.create_all()
    yield engine
    await db_session.dispose()


@pytest.fixture
def director() -> Operator:
    return Operator(id="u-director", role="director", ip_address="10.0.0.1", user_agent="pytest")


@pytest.fixture
def accounts() -> Operator:
    return Operator(id="u-accounts", role="accounts", ip_address="10.0.0.2", user_agent="pytest")


@pytest.fixture
def reception() -> Operator:
    return Operator(id="u-reception", role="reception", ip_address="10.0.0.3", user_agent="pytest")


@pytest.fixture
def hod() -> Operator:
    return Operator(id="u-hod", role="hod", ip_address="10.0.0.4", user_agent="pytest")


class FakeSender:
    """Stands in for the notification gateway and remembers what was sent."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, str]] = []

    async def __call__(self, channel, to_contact, code, *, cheque_no, ttl_minutes):  # type: ignore[no-untyped-def]
        self.sent.append((channel, to_contact, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


def wrong_code_for(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def make_cheque(db, director, accounts):
    counter = {"n": 0}

    async def _make(*, forward: bool = True, amount: str = "50000"):
        counter["n"] += 1
        cheque = await cheques.create_cheque(
            actor=director,
            cheque_no=f"CHQ-{counter['n']:04d}",
            amount=amount,
            bank="State Bank",
            branch="MG Road",
            payer_name="Acme Pvt Ltd",
            payee_name="Ravi Kumar",
            due_date="2026-11-01",
        )
        if forward:
            await cheques.mark_ready(cheque.id, actor=accounts)
            cheque = await cheques.forward_to_reception(cheque.id, actor=accounts, notes="front desk")
        return cheque

    return _make


@pytest.fixture
def proof():
    return {
        "identity": cheques.RecipientIdentity("Ravi Kumar", "aadhaar", "1234-5678-9012"),
        "photo_ref": "photo/recipient.png",
        "signature_ref": "signature/recipient.png",
    }


def png_bytes(size=(8, 8), fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buf, format=fmt)
    return buf.getvalue()
