"""Periodic reconciliation trigger.

- GET/POST /api/cron/reconcile - Run one sweep (scheduler entry point)

Protected by "Authorization: Bearer <CRON_SECRET>".
"""

import structlog
from fastapi import APIRouter, Depends

from genflow.api.dependencies import get_orchestrator, get_settings, verify_cron_secret
from genflow.core.config import Settings
from genflow.services.generation.orchestrator import GenerationOrchestrator
from genflow.workers.reconciliation_worker import run_sweep

logger = structlog.get_logger()
router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.api_route("/reconcile", methods=["GET", "POST"])
async def reconcile(
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Run one bounded reconciliation sweep over all accounts.

    Safe to call while the background sweeper runs: every state write is a
    compare-and-set and the batch query skips rows locked by another sweep.
    """
    stats = await run_sweep(
        orchestrator,
        batch_size=settings.sweep_batch_size,
        failed_retention_seconds=settings.failed_retention_seconds,
    )
    logger.info("cron.reconcile_completed", examined=stats.examined, errors=stats.errors)
    return {"success": True, **stats.as_dict()}
