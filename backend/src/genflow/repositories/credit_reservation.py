"""CreditReservation repository."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.models.credit_reservation import CreditReservation


class CreditReservationRepository:
    """Repository for CreditReservation entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, reservation: CreditReservation) -> CreditReservation:
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def get_by_id(self, reservation_id: UUID) -> CreditReservation | None:
        """Retrieve reservation, reloading current column values."""
        result = await self.session.execute(
            select(CreditReservation)
            .where(CreditReservation.id == reservation_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def compare_and_set_remaining(
        self,
        reservation_id: UUID,
        expected_version: int,
        subscription_remaining: int,
        extras_remaining: int,
        released_at: datetime | None = None,
    ) -> bool:
        """Write remaining pool values only if nobody else touched the reservation.

        Returns:
            True if the row was updated
        """
        values: dict = {
            "subscription_remaining": subscription_remaining,
            "extras_remaining": extras_remaining,
            "version": CreditReservation.version + 1,
        }
        if released_at is not None:
            values["released_at"] = released_at

        result = await self.session.execute(
            update(CreditReservation)
            .where(CreditReservation.id == reservation_id)  # type: ignore[arg-type]
            .where(CreditReservation.version == expected_version)  # type: ignore[arg-type]
            .where(CreditReservation.released_at.is_(None))  # type: ignore[union-attr]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def get_expired_open(self, now: datetime, limit: int = 20) -> list[CreditReservation]:
        """Expired reservations that still hold unreleased credits.

        Uses FOR UPDATE SKIP LOCKED so concurrent sweeps pick disjoint rows.
        """
        result = await self.session.execute(
            select(CreditReservation)
            .where(CreditReservation.released_at.is_(None))  # type: ignore[union-attr]
            .where(CreditReservation.expires_at <= now)  # type: ignore[arg-type]
            .order_by(CreditReservation.expires_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())
