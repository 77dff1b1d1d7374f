"""CLI reconciliation command tests."""

import pytest

from conftest import LAOZHANG
from genflow.cli import reconcile
from genflow.models.generation import GenerationStatus


@pytest.fixture
def patched_cli(monkeypatch, session_factory, settings, blob_store, vendor):
    """Point the CLI at the test database and vendor stubs."""
    from genflow.services import bootstrap

    monkeypatch.setattr(reconcile, "setup_db_session", lambda *args, **kwargs: session_factory)
    monkeypatch.setattr(reconcile, "Settings", lambda: settings)
    monkeypatch.setattr(
        reconcile,
        "create_orchestrator",
        lambda settings, uow_factory: bootstrap.create_orchestrator(
            settings, uow_factory, blob_store=blob_store, transport=vendor.transport
        ),
    )
    monkeypatch.setattr(reconcile, "configure_logging", lambda settings: None)


def test_parse_args():
    args = reconcile.parse_args(["--limit", "50", "--account", "user_9", "-v"])

    assert args.limit == 50
    assert args.account == "user_9"
    assert args.verbose


@pytest.mark.asyncio
async def test_reconcile_command(patched_cli, vendor, make_account, make_generation, capsys):
    await make_account()
    await make_generation()
    vendor.on("GET", f"{LAOZHANG}/v1/videos/video_123", json={"status": "failed"})

    exit_code = await reconcile.async_main(["--limit", "5"])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert "Generations examined: 1" in output
    assert "failed: 1" in output


@pytest.mark.asyncio
async def test_reconcile_command_nothing_to_do(patched_cli, make_account):
    await make_account()

    assert await reconcile.async_main([]) == 0


@pytest.mark.asyncio
async def test_reconcile_command_reports_errors(
    patched_cli, monkeypatch, make_account, make_generation, get_generation
):
    await make_account()
    generation = await make_generation()

    async def explode(self, generation, now=None):
        raise RuntimeError("boom")

    from genflow.services.generation.orchestrator import GenerationOrchestrator

    monkeypatch.setattr(GenerationOrchestrator, "reconcile_generation", explode)

    assert await reconcile.async_main([]) == 2
    assert (await get_generation(generation.id)).status == GenerationStatus.PROCESSING
