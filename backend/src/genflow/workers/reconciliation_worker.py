"""Reconciliation sweep over in-flight generations.

One sweep:
1. Reads a bounded batch of pending/processing generations (oldest first).
   The row locks end with that read, so concurrent sweeps and manual
   triggers may be handed the same generations.
2. Reconciles each detached snapshot concurrently. Every write is a
   compare-and-set on the expected status, so of two sweeps working the
   same generation only one transition (and one refund) lands.
3. Releases expired credit reservations
4. Deletes failed generations past the retention grace period

The same sweep backs the background worker, the cron endpoint, the
on-demand endpoint and the CLI.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from genflow.core.config import Settings
from genflow.core.timezone import utcnow
from genflow.services.generation.orchestrator import GenerationOrchestrator

logger = structlog.get_logger(__name__)


@dataclass
class SweepStats:
    examined: int = 0
    outcomes: Counter = field(default_factory=Counter)
    errors: int = 0
    reservations_released: int = 0
    failed_deleted: int = 0

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "outcomes": dict(self.outcomes),
            "errors": self.errors,
            "reservations_released": self.reservations_released,
            "failed_deleted": self.failed_deleted,
        }


async def run_sweep(
    orchestrator: GenerationOrchestrator,
    batch_size: int = 20,
    failed_retention_seconds: int | None = 60,
    owner_id: str | None = None,
) -> SweepStats:
    """Run one reconciliation sweep.

    Args:
        orchestrator: Generation orchestrator (provides UoW factory and ledger)
        batch_size: Maximum generations reconciled in this sweep (default: 20)
        failed_retention_seconds: Delete failed generations older than this;
            None disables cleanup
        owner_id: Restrict to one account's generations. Housekeeping
            (reservations, retention) only runs on unrestricted sweeps.

    Returns:
        Sweep statistics
    """
    stats = SweepStats()
    uow_factory = orchestrator.uow_factory

    # Locks are released when this unit of work closes; the CAS writes below settle overlaps
    async with await uow_factory() as uow:
        generations = await uow.generations.get_in_flight(limit=batch_size, owner_id=owner_id)

    now = utcnow()
    stats.examined = len(generations)
    results = await asyncio.gather(
        *(orchestrator.reconcile_generation(generation, now) for generation in generations),
        return_exceptions=True,
    )

    for generation, result in zip(generations, results):
        if isinstance(result, BaseException):
            stats.errors += 1
            logger.error(
                "sweep.generation_error",
                generation_id=str(generation.id),
                error=str(result),
                error_type=type(result).__name__,
            )
        else:
            stats.outcomes[result] += 1

    if owner_id is None:
        async with await uow_factory() as uow:
            expired = await uow.reservations.get_expired_open(now, limit=batch_size)
            for reservation in expired:
                released = await orchestrator.ledger.release_reservation(uow, reservation.id)
                stats.reservations_released += 1 if released else 0

        if failed_retention_seconds is not None:
            cutoff = now - timedelta(seconds=failed_retention_seconds)
            async with await uow_factory() as uow:
                stats.failed_deleted = await uow.generations.delete_failed_before(cutoff)

    logger.info("sweep.finished", owner_id=owner_id, **stats.as_dict())
    return stats


async def run_reconciliation_worker(
    orchestrator: GenerationOrchestrator,
    settings: Settings,
) -> None:
    """Main worker loop for reconciliation.

    Sweeps every SWEEP_INTERVAL_SECONDS and handles graceful shutdown.

    Args:
        orchestrator: Generation orchestrator
        settings: Application settings (interval, batch size, retention)
    """
    logger.info(
        "worker.started",
        worker_type="reconciliation",
        poll_interval=settings.sweep_interval_seconds,
        batch_size=settings.sweep_batch_size,
    )

    try:
        while True:
            try:
                await run_sweep(
                    orchestrator,
                    batch_size=settings.sweep_batch_size,
                    failed_retention_seconds=settings.failed_retention_seconds,
                )

                # Wait for next sweep interval
                await asyncio.sleep(settings.sweep_interval_seconds)

            except asyncio.CancelledError:
                # Propagate cancellation for graceful shutdown
                raise

            except Exception as e:
                # Unexpected error in sweep loop - log and continue with backoff
                logger.error(
                    "worker.error",
                    worker_type="reconciliation",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        # Graceful shutdown
        logger.info("worker.stopped", worker_type="reconciliation")
        raise
