"""CreditTransaction repository - append-only ledger journal."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.models.credit_transaction import CreditTransaction


class CreditTransactionRepository:
    """Repository for CreditTransaction entities. Rows are never updated or deleted."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, entry: CreditTransaction) -> CreditTransaction:
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_account(self, account_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Most recent journal entries for an account."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_generation(self, generation_id: UUID) -> list[CreditTransaction]:
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.generation_id == generation_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())
