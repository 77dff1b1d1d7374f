"""Unit of Work: one transaction spanning the ledger and generation repositories."""

from typing import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.repositories.account import AccountRepository
from genflow.repositories.credit_reservation import CreditReservationRepository
from genflow.repositories.credit_transaction import CreditTransactionRepository
from genflow.repositories.generation import GenerationRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction boundary for a balance change and the generation rows it pays for.

    A deduction and the generation row it funds, or a failure transition and
    its refund, are written through the same unit so they commit or roll back
    together. The session is closed on exit; entities returned from inside are
    detached snapshots afterwards.

    Example:
        async with await uow_factory() as uow:
            deduction = await ledger.deduct(uow, account_id, 12, reason="sora2")
            await uow.generations.add(generation)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.accounts = AccountRepository(session)
        self.generations = GenerationRepository(session)
        self.credit_transactions = CreditTransactionRepository(session)
        self.reservations = CreditReservationRepository(session)

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Commit on a clean exit, roll back otherwise. Exceptions propagate."""
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("uow.committed")
            else:
                await self.session.rollback()
                logger.info("uow.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], Awaitable[UnitOfWork]]:
    """Bind a session factory into an awaitable UnitOfWork constructor.

    Each call opens a fresh session, so concurrent reconciliations never share
    a transaction:

        uow_factory = create_uow_factory(setup_db_session(settings.database_url))
        async with await uow_factory() as uow:
            await uow.accounts.add(account)
    """

    async def _create_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _create_uow
