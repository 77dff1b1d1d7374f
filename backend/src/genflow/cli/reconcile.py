"""CLI command for running one reconciliation sweep.

Usage:
    python -m genflow.cli [OPTIONS]
    python -m genflow.cli.reconcile [OPTIONS]

Examples:
    # Sweep with the configured batch size
    python -m genflow.cli

    # Sweep at most 100 generations
    python -m genflow.cli --limit 100

    # Only one account's generations (skips reservation and retention housekeeping)
    python -m genflow.cli --account user_123

    # Verbose logging
    python -m genflow.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from genflow.core import timezone  # noqa: F401
from genflow.core.config import Settings, configure_logging
from genflow.core.database import setup_db_session
from genflow.services.bootstrap import create_orchestrator
from genflow.services.exceptions import ServiceError
from genflow.uow import create_uow_factory
from genflow.workers.reconciliation_worker import run_sweep

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Reconcile in-flight generations with their vendors",
        epilog="Same sweep as the background worker and the cron endpoint",
    )

    parser.add_argument(
        "--limit",
        type=int,
        help="Maximum number of generations to reconcile (default: SWEEP_BATCH_SIZE)",
    )

    parser.add_argument(
        "--account",
        type=str,
        help="Restrict the sweep to one account's generations",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (some generations errored)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    batch_size = args.limit or settings.sweep_batch_size
    logger.info("cli.started", limit=batch_size, account=args.account)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    orchestrator = create_orchestrator(settings, uow_factory)

    try:
        stats = await run_sweep(
            orchestrator,
            batch_size=batch_size,
            failed_retention_seconds=settings.failed_retention_seconds,
            owner_id=args.account,
        )

    except ServiceError as e:
        logger.error("cli.sweep_error", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nSweep interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    print("\n" + "=" * 60)
    print("Reconciliation Summary")
    print("=" * 60)
    print(f"Generations examined: {stats.examined}")
    for outcome, count in sorted(stats.outcomes.items()):
        print(f"  {outcome}: {count}")
    print(f"Errors: {stats.errors}")
    print(f"Reservations released: {stats.reservations_released}")
    print(f"Failed generations deleted: {stats.failed_deleted}")
    print("=" * 60 + "\n")

    if stats.errors:
        logger.warning("cli.partial_success", errors=stats.errors)
        return 2

    logger.info("cli.success")
    return 0


def main() -> int:
    """Synchronous entry point for CLI."""
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
