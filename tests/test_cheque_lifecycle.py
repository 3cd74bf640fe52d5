from __future__ import annotations

import json

import pytest

from custody.db.models import AuditLog, ChequeStatus
from custody.db.session import session_scope
from custody.errors import Conflict, InvalidState, NotFound, Unauthorized, ValidationError
from custody.services import audit, cheques
from custody.utils.keyed_lock import KeyedLocks


@pytest.mark.asyncio
async def test_create_cheque_starts_signed_with_audit(make_cheque):
    cheque = await make_cheque(forward=False)
    assert cheque.status == ChequeStatus.SIGNED.value
    assert str(cheque.amount) in {"50000.00", "50000"}
    trail = await audit.get_audit_trail(cheque.id)
    assert [a.action for a in trail] == ["CHEQUE_CREATED"]
    assert trail[0].ip_address == "10.0.0.1"
    assert json.loads(trail[0].details)["chequeNo"] == cheque.cheque_no


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, "-5", "12.345", 10.5, "abc"])
async def test_create_cheque_rejects_bad_amounts(db, director, amount):
    with pytest.raises(ValidationError) as ei:
        await cheques.create_cheque(
            actor=director, cheque_no="X-1", amount=amount, bank="B", branch="b",
            payer_name="P", payee_name="Q", due_date="2026-12-01",
        )
    assert ei.value.field == "amount"


@pytest.mark.asyncio
async def test_duplicate_cheque_number_conflicts(db, director):
    kwargs = dict(
        actor=director, cheque_no="DUP-1", amount="10", bank="B", branch="b",
        payer_name="P", payee_name="Q", due_date="2026-12-01",
    )
    await cheques.create_cheque(**kwargs)
    with pytest.raises(Conflict):
        await cheques.create_cheque(**kwargs)


@pytest.mark.asyncio
async def test_reception_cannot_create(db, reception):
    with pytest.raises(Unauthorized):
        await cheques.create_cheque(
            actor=reception, cheque_no="R-1", amount="10", bank="B", branch="b",
            payer_name="P", payee_name="Q", due_date="2026-12-01",
        )


@pytest.mark.asyncio
async def test_transitions_follow_the_graph(make_cheque, accounts):
    cheque = await make_cheque(forward=False)
    with pytest.raises(InvalidState):
        await cheques.forward_to_reception(cheque.id, actor=accounts)

    ready = await cheques.mark_ready(cheque.id, actor=accounts)
    assert ready.status == ChequeStatus.READY_FOR_DISPATCH.value
    with pytest.raises(InvalidState) as ei:
        await cheques.mark_ready(cheque.id, actor=accounts)
    assert ei.value.detail["status"] == ChequeStatus.READY_FOR_DISPATCH.value

    forwarded = await cheques.forward_to_reception(cheque.id, actor=accounts, notes="envelope 7")
    assert forwarded.status == ChequeStatus.WITH_RECEPTION.value

    custody_trail = await audit.get_custody_trail(cheque.id)
    assert [(e.from_role, e.to_role) for e in custody_trail] == [("dispatch", "reception")]
    assert custody_trail[0].notes == "envelope 7"

    actions = [a.action for a in await audit.get_audit_trail(cheque.id)]
    assert actions == ["CHEQUE_CREATED", "STATUS_CHANGED", "FORWARDED_TO_RECEPTION"]


@pytest.mark.asyncio
async def test_missing_cheque_is_not_found(db, accounts):
    with pytest.raises(NotFound):
        await cheques.mark_ready(9999, actor=accounts)


@pytest.mark.asyncio
async def test_cancel_requires_reason_and_is_terminal(make_cheque, accounts):
    cheque = await make_cheque()
    with pytest.raises(ValidationError):
        await cheques.cancel_cheque(cheque.id, actor=accounts, reason="   ")

    cancelled = await cheques.cancel_cheque(cheque.id, actor=accounts, reason="payee deceased")
    assert cancelled.status == ChequeStatus.CANCELLED.value
    with pytest.raises(InvalidState):
        await cheques.cancel_cheque(cheque.id, actor=accounts, reason="again")
    with pytest.raises(InvalidState):
        await cheques.mark_ready(cheque.id, actor=accounts)

    last = (await audit.get_audit_trail(cheque.id))[-1]
    assert last.action == "CHEQUE_CANCELLED"
    assert json.loads(last.details) == {"previousStatus": "WITH_RECEPTION", "reason": "payee deceased"}


@pytest.mark.asyncio
async def test_complete_handover_requires_with_reception(make_cheque, reception, proof):
    cheque = await make_cheque(forward=False)
    async with session_scope() as session:
        loaded = await cheques.load_cheque(session, cheque.id)
        with pytest.raises(InvalidState):
            await cheques.complete_handover(session, loaded, handed_by=reception, **proof)


@pytest.mark.asyncio
async def test_list_cheques_is_scoped_by_role(make_cheque, director, accounts, reception):
    signed = await make_cheque(forward=False)
    at_desk = await make_cheque()

    rows, total = await cheques.list_cheques(actor=reception)
    assert [c.id for c in rows] == [at_desk.id] and total == 1

    rows, _ = await cheques.list_cheques(actor=accounts)
    assert [c.id for c in rows] == [signed.id]

    rows, total = await cheques.list_cheques(actor=director)
    assert total == 2

    rows, total = await cheques.list_cheques(actor=director, search="CHQ-0002")
    assert [c.id for c in rows] == [at_desk.id]


@pytest.mark.asyncio
async def test_audit_rows_are_append_only(make_cheque):
    cheque = await make_cheque(forward=False)
    entry_id = (await audit.get_audit_trail(cheque.id))[0].id
    async with session_scope() as session:
        entry = await session.get(AuditLog, entry_id)
        entry.action = "TAMPERED"
        with pytest.raises(RuntimeError):
            await session.flush()


@pytest.mark.asyncio
async def test_keyed_lock_fails_fast_when_busy():
    locks = KeyedLocks()
    async with locks.hold(1):
        assert locks.locked(1)
        with pytest.raises(Conflict) as ei:
            async with locks.hold(1, timeout=0.01):
                pass
        assert ei.value.detail == {"busy": True}
        # other keys never contend
        async with locks.hold(2, timeout=0.01):
            pass
    assert not locks.locked(1)
    assert locks._locks == {}
