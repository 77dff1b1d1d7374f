"""Credit reservation tests.

A reservation deducts credits once for a batch; generations draw from it and
the unused remainder goes back to the pools it came from.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from genflow.core.timezone import utcnow
from genflow.models.credit_reservation import CreditReservation
from genflow.models.credit_transaction import CreditTransactionKind
from genflow.services.exceptions import InsufficientCredits, InvalidReservation
from genflow.services.ledger import CreditLedger
from genflow.workers.reconciliation_worker import run_sweep


@pytest.fixture
def ledger():
    return CreditLedger()


async def expire(uow_factory, reservation_id):
    async with await uow_factory() as uow:
        await uow.session.execute(
            update(CreditReservation)
            .where(CreditReservation.id == reservation_id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )


@pytest.mark.asyncio
async def test_reserve_consume_release(ledger, uow_factory, make_account, get_account):
    """Test the full reservation lifecycle.

    Scenario:
    1. Reserve 30 from 20 subscription + 20 extras (split 20/10)
    2. Consume 25 (subscription part first)
    3. Release: the 5 left are extras and go back to extras
    """
    await make_account(subscription=20, extras=20)

    async with await uow_factory() as uow:
        reservation = await ledger.reserve(uow, "user_1", 30, reason="batch of 2")
    assert (reservation.subscription_remaining, reservation.extras_remaining) == (20, 10)
    account = await get_account()
    assert (account.subscription_credits, account.extra_credits) == (0, 10)

    async with await uow_factory() as uow:
        split = await ledger.consume_reservation(uow, reservation.id, "user_1", 25)
    assert (split.subscription, split.extras) == (20, 5)

    async with await uow_factory() as uow:
        released = await ledger.release_reservation(uow, reservation.id, account_id="user_1")
    assert released == 5

    account = await get_account()
    assert (account.subscription_credits, account.extra_credits) == (0, 15)

    async with await uow_factory() as uow:
        kinds = {e.kind for e in await uow.credit_transactions.list_for_account("user_1")}
    assert kinds == {CreditTransactionKind.RESERVE, CreditTransactionKind.RELEASE}


@pytest.mark.asyncio
async def test_reserve_insufficient(ledger, uow_factory, make_account):
    await make_account(subscription=10)

    with pytest.raises(InsufficientCredits):
        async with await uow_factory() as uow:
            await ledger.reserve(uow, "user_1", 11, reason="too big")


@pytest.mark.asyncio
async def test_consume_rejects_foreign_account(ledger, uow_factory, make_account):
    await make_account("user_1")
    await make_account("user_2")
    async with await uow_factory() as uow:
        reservation = await ledger.reserve(uow, "user_1", 20, reason="batch")

    with pytest.raises(InvalidReservation):
        async with await uow_factory() as uow:
            await ledger.consume_reservation(uow, reservation.id, "user_2", 5)


@pytest.mark.asyncio
async def test_consume_rejects_overdraw(ledger, uow_factory, make_account):
    await make_account()
    async with await uow_factory() as uow:
        reservation = await ledger.reserve(uow, "user_1", 20, reason="batch")

    with pytest.raises(InvalidReservation):
        async with await uow_factory() as uow:
            await ledger.consume_reservation(uow, reservation.id, "user_1", 21)


@pytest.mark.asyncio
async def test_consume_rejects_expired(ledger, uow_factory, make_account):
    await make_account()
    async with await uow_factory() as uow:
        reservation = await ledger.reserve(uow, "user_1", 20, reason="batch")
    await expire(uow_factory, reservation.id)

    with pytest.raises(InvalidReservation):
        async with await uow_factory() as uow:
            await ledger.consume_reservation(uow, reservation.id, "user_1", 5)


@pytest.mark.asyncio
async def test_release_twice_returns_zero(ledger, uow_factory, make_account, get_account):
    await make_account(subscription=50)
    async with await uow_factory() as uow:
        reservation = await ledger.reserve(uow, "user_1", 20, reason="batch")

    async with await uow_factory() as uow:
        assert await ledger.release_reservation(uow, reservation.id) == 20
    async with await uow_factory() as uow:
        assert await ledger.release_reservation(uow, reservation.id) == 0

    assert (await get_account()).subscription_credits == 50


@pytest.mark.asyncio
async def test_consume_after_release_rejected(ledger, uow_factory, make_account):
    await make_account()
    async with await uow_factory() as uow:
        reservation = await ledger.reserve(uow, "user_1", 20, reason="batch")
    async with await uow_factory() as uow:
        await ledger.release_reservation(uow, reservation.id)

    with pytest.raises(InvalidReservation):
        async with await uow_factory() as uow:
            await ledger.consume_reservation(uow, reservation.id, "user_1", 5)


@pytest.mark.asyncio
async def test_sweep_releases_expired_reservations(
    orchestrator, uow_factory, make_account, get_account
):
    """Expired reservations are returned to the account by the sweep."""
    await make_account(subscription=40)
    async with await uow_factory() as uow:
        reservation = await orchestrator.ledger.reserve(uow, "user_1", 30, reason="abandoned")
    await expire(uow_factory, reservation.id)

    stats = await run_sweep(orchestrator)

    assert stats.reservations_released == 1
    assert (await get_account()).subscription_credits == 40
