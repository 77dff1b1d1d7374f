"""Request-scoped unit of work."""

from typing import AsyncGenerator

from fastapi import Request

from genflow.uow import UnitOfWork


async def get_uow(request: Request) -> AsyncGenerator[UnitOfWork, None]:
    """Open one unit of work per request.

    Commits when the route returns, rolls back when it raises. Routes that
    drive the orchestrator do not take this dependency: the orchestrator
    opens its own units of work around each vendor call.
    """
    async with await request.app.state.uow_factory() as uow:
        yield uow
