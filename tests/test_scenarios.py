from __future__ import annotations

import pytest

from conftest import png_bytes, wrong_code_for
from custody.config import settings
from custody.errors import InvalidCode, Locked, ServiceError, Unauthorized
from custody.services.desk import HandoverDesk
from custody.utils.throttle import DispatchThrottle


@pytest.fixture
def desk(db, sender):
    return HandoverDesk(DispatchThrottle(max_concurrent=3, min_interval=0.0), otp_sender=sender)


async def _cheque_at_reception(desk, director, accounts):
    created = await desk.create_cheque(
        director,
        cheque_no="000123",
        amount=50000,
        bank="State Bank",
        branch="MG Road",
        payer_name="Acme Pvt Ltd",
        payee_name="Ravi Kumar",
        due_date="2026-11-01",
    )
    assert created["status"] == "SIGNED"
    assert created["amount"] == "50000.00"
    await desk.mark_ready(created["id"], accounts)
    forwarded = await desk.forward_to_reception(created["id"], accounts, notes="counter 2")
    assert forwarded["status"] == "WITH_RECEPTION"
    return created["id"]


async def _upload_proofs(desk):
    photo = await desk.upload_artifact(png_bytes(), kind="photo", filename="face.png")
    signature = await desk.upload_artifact(png_bytes(), kind="signature", filename="sig.png")
    return photo["path"], signature["path"]


@pytest.mark.asyncio
async def test_otp_handover_end_to_end(desk, director, accounts, reception, sender):
    cheque_id = await _cheque_at_reception(desk, director, accounts)
    photo, signature = await _upload_proofs(desk)

    issued = await desk.generate_otp(cheque_id, reception, channel="sms", to_contact="+911234567890")
    assert set(issued) == {"otpId", "expiresAt", "otpCode"}
    assert issued["otpCode"] == sender.last_code

    out = await desk.verify_otp(
        cheque_id,
        reception,
        otp_code=issued["otpCode"],
        recipient_name="Ravi Kumar",
        id_type="aadhaar",
        id_number="1234-5678-9012",
        recipient_photo_path=photo,
        signature_path=signature,
    )
    assert out["cheque"]["status"] == "ISSUED"
    assert out["handoverRecord"]["isOverride"] is False
    assert out["handoverRecord"]["recipientPhotoPath"] == photo

    detail = await desk.get_cheque(cheque_id)
    assert [(e["fromRole"], e["toRole"]) for e in detail["custodyLogs"]] == [
        ("dispatch", "reception"),
        ("reception", "recipient"),
    ]
    assert len(detail["handoverRecords"]) == 1

    trail = await desk.get_audit_trail(cheque_id)
    assert [a["action"] for a in trail][-3:] == ["OTP_GENERATED", "OTP_VERIFIED", "HANDOVER_COMPLETED"]
    assert trail[-3]["details"]["toContact"].endswith("7890")
    assert "+911234567890" not in str(trail)


@pytest.mark.asyncio
async def test_locked_channel_override_end_to_end(desk, director, accounts, reception, hod, sender):
    cheque_id = await _cheque_at_reception(desk, director, accounts)
    photo, signature = await _upload_proofs(desk)
    await desk.generate_otp(cheque_id, reception, channel="sms", to_contact="+911234567890")
    wrong = wrong_code_for(sender.last_code)

    answers = []
    for _ in range(3):
        try:
            await desk.verify_otp(
                cheque_id, reception, otp_code=wrong, recipient_name="Ravi Kumar", id_type="aadhaar",
                id_number="1234", recipient_photo_path=photo, signature_path=signature,
            )
        except (InvalidCode, Locked) as e:
            answers.append(e.to_dict())
    assert [a["remainingAttempts"] for a in answers] == [2, 1, 0]
    assert answers[-1]["locked"] is True
    assert answers[-1]["error"] == "locked"

    req = await desk.request_override(cheque_id, reception, reason="recipient phone lost")
    assert req["status"] == "PENDING"

    pending = await desk.list_pending_overrides(hod)
    assert [o["id"] for o in pending["overrides"]] == [req["id"]]

    approved = await desk.approve_override(req["id"], hod)
    assert approved["status"] == "APPROVED"
    assert approved["consumed"] is False

    out = await desk.complete_handover_via_override(
        cheque_id, reception, recipient_name="Ravi Kumar", id_type="aadhaar", id_number="1234-5678-9012",
        recipient_photo_path=photo, signature_path=signature,
    )
    assert out["cheque"]["status"] == "ISSUED"
    assert out["handoverRecord"]["isOverride"] is True
    assert out["handoverRecord"]["overrideApprovedBy"] == hod.id

    history = await desk.get_cheque_overrides(cheque_id)
    assert history[0]["consumed"] is True


@pytest.mark.asyncio
async def test_production_never_returns_the_code(desk, director, accounts, reception, monkeypatch):
    cheque_id = await _cheque_at_reception(desk, director, accounts)
    monkeypatch.setattr(settings, "app_env", "production")
    issued = await desk.generate_otp(cheque_id, reception, channel="email", to_contact="ravi@example.com")
    assert "otpCode" not in issued


@pytest.mark.asyncio
async def test_pending_list_requires_moderator(desk, reception):
    with pytest.raises(Unauthorized):
        await desk.list_pending_overrides(reception)


@pytest.mark.asyncio
async def test_list_cheques_shape(desk, director, accounts, reception):
    cheque_id = await _cheque_at_reception(desk, director, accounts)
    page = await desk.list_cheques(reception, limit=10)
    assert page["total"] == 1
    assert page["cheques"][0]["id"] == cheque_id
    assert page["limit"] == 10 and page["offset"] == 0


@pytest.mark.asyncio
async def test_storage_faults_become_service_errors(desk, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from custody.services import cheques

    async def broken(cheque_id):
        raise OperationalError("SELECT 1", {}, Exception("db gone"))

    monkeypatch.setattr(cheques, "get_cheque", broken)
    with pytest.raises(ServiceError) as ei:
        await desk.get_cheque(1)
    assert ei.value.to_dict() == {"error": "service_error", "message": "internal error, please retry later"}
