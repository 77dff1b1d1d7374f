"""FastAPI dependencies for request identity and shared services.

This module provides reusable FastAPI dependencies for:
- Caller identity (set by the upstream identity provider)
- Per-account rate limits
- Cron trigger authorization
- Access to services created in the app lifespan
"""

import hmac
from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from genflow.api.rate_limit import AccountRateLimiter
from genflow.core.config import Settings
from genflow.services.generation.orchestrator import GenerationOrchestrator
from genflow.services.ledger import CreditLedger


def get_settings(request: Request) -> Settings:
    """Get application settings loaded in the app lifespan."""
    return request.app.state.settings


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.orchestrator.ledger


async def get_account_id(
    x_account_id: Annotated[str | None, Header()] = None,
) -> str:
    """Authenticated account identifier.

    The identity provider (or the gateway in front of this service) sets
    X-Account-Id after verifying the session. Account ids in request bodies
    are never used as a charge target.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing
    """
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Account-Id header"
        )
    return x_account_id.strip()


def get_rate_limiter(request: Request) -> AccountRateLimiter:
    return request.app.state.rate_limiter


def rate_limit(category: str) -> Callable[..., Awaitable[None]]:
    """Dependency counting the request against the caller's allowance for category.

    Usage:
        @router.post("/{tool}", dependencies=[Depends(rate_limit(GENERATION))])

    Raises:
        RateLimited: Mapped to 429 with Retry-After
    """

    async def _check(
        account_id: str = Depends(get_account_id),
        limiter: AccountRateLimiter = Depends(get_rate_limiter),
    ) -> None:
        limiter.hit(category, account_id)

    return _check


async def verify_cron_secret(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Authorize the periodic reconciliation trigger.

    Requires "Authorization: Bearer <CRON_SECRET>". Without a configured
    secret the trigger is open outside production only.

    Raises:
        HTTPException: 401 Unauthorized if the secret does not match
    """
    if not settings.cron_secret:
        if settings.is_production:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Cron secret not configured"
            )
        return

    expected = f"Bearer {settings.cron_secret}".encode()
    # Constant-time comparison
    if not authorization or not hmac.compare_digest(authorization.encode(), expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
