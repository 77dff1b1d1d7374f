"""Generation repository for genflow.

Terminal transitions are compare-and-set writes conditioned on the persisted
status, so concurrent sweeps and duplicate triggers cannot double-complete
or double-refund a generation.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.core.timezone import utcnow
from genflow.models.generation import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    Generation,
    GenerationStatus,
    VendorTool,
)

# Columns written by a state transition
TRANSITION_FIELDS = (
    "status",
    "external_task_handle",
    "request_parameters",
    "progress",
    "result_url",
    "original_result_url",
    "result_metadata",
    "last_error",
    "updated_at",
    "completed_at",
    "failed_at",
)


class GenerationRepository:
    """Repository for Generation entities.

    State changes go through compare-and-set methods (save_transition,
    mark_refunded), which is what keeps concurrent sweeps from applying a
    transition or refund twice.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, generation_id: UUID) -> Generation | None:
        """Retrieve generation by UUID, reloading current column values.

        Args:
            generation_id: Generation's unique identifier

        Returns:
            Generation if found, None otherwise
        """
        result = await self.session.execute(
            select(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, generation: Generation) -> Generation:
        """Persist new generation to database.

        Args:
            generation: Generation entity to persist

        Returns:
            Persisted generation with generated ID
        """
        self.session.add(generation)
        await self.session.flush()
        return generation

    async def list_for_owner(
        self,
        owner_id: str,
        tool: VendorTool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Generation]:
        """List an owner's generations, newest first.

        Args:
            owner_id: Account identifier
            tool: Optional tool filter
            limit: Maximum number of rows (default: 50)
            offset: Number of rows to skip (default: 0)
        """
        query = select(Generation).where(Generation.owner_id == owner_id)  # type: ignore[arg-type]
        if tool is not None:
            query = query.where(Generation.tool == tool)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(Generation.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_in_flight(self, limit: int = 20, owner_id: str | None = None) -> list[Generation]:
        """Retrieve pending/processing generations with row-level locking.

        FOR UPDATE SKIP LOCKED only keeps concurrent reads of the batch apart
        while this session is open. Callers reconcile after it closes, so two
        sweeps can still receive the same row; save_transition and
        mark_refunded are what make that safe. Orders by created_at ASC so
        the oldest (closest to the stale threshold) are reconciled first.

        Args:
            limit: Maximum number of generations to retrieve (default: 20)
            owner_id: Restrict to one owner's generations

        Returns:
            Detached snapshots once the session closes
        """
        query = select(Generation).where(Generation.status.in_(IN_FLIGHT_STATUSES))  # type: ignore[attr-defined]
        if owner_id is not None:
            query = query.where(Generation.owner_id == owner_id)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.order_by(Generation.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def save_transition(
        self, generation: Generation, expected_status: GenerationStatus
    ) -> bool:
        """Persist an in-memory transition only if the stored status still matches.

        The generation must have been mutated through one of its mark_* methods
        and must not be attached to this session.

        Args:
            generation: Detached generation carrying the new state
            expected_status: Status the row must currently have

        Returns:
            True if this call performed the transition, False if the row had
            already moved on (another sweep or trigger won)
        """
        values = {field: getattr(generation, field) for field in TRANSITION_FIELDS}
        result = await self.session.execute(
            update(Generation)
            .where(Generation.id == generation.id)  # type: ignore[arg-type]
            .where(Generation.status == expected_status)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_refunded(self, generation_id: UUID) -> bool:
        """Stamp refunded_at once. Returns False if the generation was already refunded."""
        result = await self.session.execute(
            update(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .where(Generation.refunded_at.is_(None))  # type: ignore[union-attr]
            .values(refunded_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def update_progress(self, generation_id: UUID, progress: int | None) -> None:
        """Record vendor progress on a generation that is still processing."""
        await self.session.execute(
            update(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .where(Generation.status == GenerationStatus.PROCESSING)  # type: ignore[arg-type]
            .values(progress=progress, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def delete_terminal(self, generation_id: UUID, owner_id: str) -> bool:
        """Delete a completed or failed generation owned by owner_id.

        Returns:
            True if a row was deleted
        """
        result = await self.session.execute(
            delete(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .where(Generation.owner_id == owner_id)  # type: ignore[arg-type]
            .where(Generation.status.in_(TERMINAL_STATUSES))  # type: ignore[attr-defined]
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def delete_failed_before(self, cutoff: datetime) -> int:
        """Delete failed generations whose failure is older than cutoff.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(Generation)
            .where(Generation.status == GenerationStatus.FAILED)  # type: ignore[arg-type]
            .where(Generation.failed_at < cutoff)  # type: ignore[operator]
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]
