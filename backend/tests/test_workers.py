"""Background worker loop and supervisor tests."""

import asyncio

import pytest

from conftest import LAOZHANG
from genflow.app import create_resilient_worker
from genflow.models.generation import GenerationStatus
from genflow.workers.reconciliation_worker import run_reconciliation_worker


async def wait_for(predicate, timeout: float = 5.0):
    """Poll an async predicate until it holds or the timeout expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.05)
    return False


@pytest.mark.asyncio
async def test_worker_loop_sweeps_until_cancelled(
    orchestrator, settings, vendor, make_account, make_generation, get_generation, get_account
):
    """
    Scenario: Background worker picks up a vendor failure
    Given a processing generation whose vendor task failed
    When the reconciliation worker runs
    Then the generation is failed and refunded without any caller request
    And cancelling the worker stops the loop
    """
    await make_account(subscription=85)
    generation = await make_generation(credits_used=15)
    vendor.on("GET", f"{LAOZHANG}/v1/videos/video_123", json={"status": "failed"})

    task = asyncio.create_task(
        run_reconciliation_worker(
            orchestrator, settings.model_copy(update={"sweep_interval_seconds": 60})
        )
    )

    async def generation_failed():
        return (await get_generation(generation.id)).status == GenerationStatus.FAILED

    try:
        assert await wait_for(generation_failed)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert (await get_account()).subscription_credits == 100


@pytest.mark.asyncio
async def test_resilient_worker_restarts_after_crash():
    """
    Scenario: Worker crashes and is restarted
    Given a worker coroutine that raises on its first run
    When it is started under the supervisor
    Then a fresh run is started after the restart delay
    """
    runs = []
    restarted = asyncio.Event()
    shutdown_event = asyncio.Event()

    async def flaky_worker():
        runs.append(len(runs) + 1)
        if len(runs) == 1:
            raise RuntimeError("worker crashed")
        restarted.set()
        await shutdown_event.wait()

    create_resilient_worker(flaky_worker, "flaky", shutdown_event, restart_delay=0.01)

    await asyncio.wait_for(restarted.wait(), timeout=5)
    shutdown_event.set()
    await asyncio.sleep(0.05)
    assert runs == [1, 2]


@pytest.mark.asyncio
async def test_resilient_worker_not_restarted_after_shutdown():
    runs = []
    shutdown_event = asyncio.Event()

    async def short_worker():
        runs.append(1)

    shutdown_event.set()
    task = create_resilient_worker(short_worker, "short", shutdown_event, restart_delay=0.01)
    await task
    await asyncio.sleep(0.1)

    assert runs == [1]
