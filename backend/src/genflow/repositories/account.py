"""Account repository.

Balance writes are single conditional UPDATE statements so concurrent
requests on independent instances cannot interleave a read-then-write.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.core.timezone import utcnow
from genflow.models.account import Account


class AccountRepository:
    """Repository for Account entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, account_id: str) -> Account | None:
        """Retrieve account by identifier, always reloading current column values.

        Args:
            account_id: Identity provider account identifier

        Returns:
            Account if found, None otherwise
        """
        result = await self.session.execute(
            select(Account)
            .where(Account.id == account_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, account: Account) -> Account:
        """Persist new account to database."""
        self.session.add(account)
        await self.session.flush()
        return account

    async def compare_and_set_balance(
        self,
        account_id: str,
        expected_version: int,
        subscription_credits: int,
        extra_credits: int,
    ) -> bool:
        """Write new pool values only if the row still has the expected version.

        Returns:
            True if the row was updated, False if another writer got there first
        """
        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id)  # type: ignore[arg-type]
            .where(Account.version == expected_version)  # type: ignore[arg-type]
            .values(
                subscription_credits=subscription_credits,
                extra_credits=extra_credits,
                version=Account.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def increment_balance(self, account_id: str, subscription: int, extras: int) -> bool:
        """Atomically add credits to both pools.

        Returns:
            True if the account exists and was updated
        """
        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id)  # type: ignore[arg-type]
            .values(
                subscription_credits=Account.subscription_credits + subscription,
                extra_credits=Account.extra_credits + extras,
                version=Account.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
