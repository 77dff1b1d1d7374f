"""Mapping of service errors onto HTTP responses."""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from genflow.services.exceptions import (
    AccountNotFound,
    GenerationFailed,
    GenerationInFlight,
    GenerationNotFound,
    InsufficientCredits,
    InvalidGenerationRequest,
    InvalidReservation,
    LedgerContention,
    RateLimited,
    UnknownTool,
)

logger = structlog.get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers translating service errors into status codes."""

    @app.exception_handler(InvalidGenerationRequest)
    async def invalid_request_handler(request: Request, exc: InvalidGenerationRequest):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(UnknownTool)
    async def unknown_tool_handler(request: Request, exc: UnknownTool):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(AccountNotFound)
    async def account_not_found_handler(request: Request, exc: AccountNotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(GenerationNotFound)
    async def generation_not_found_handler(request: Request, exc: GenerationNotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(InsufficientCredits)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCredits):
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "detail": "Insufficient credits",
                "required": exc.required,
                "available": exc.available,
            },
        )

    @app.exception_handler(InvalidReservation)
    async def invalid_reservation_handler(request: Request, exc: InvalidReservation):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(GenerationInFlight)
    async def generation_in_flight_handler(request: Request, exc: GenerationInFlight):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(LedgerContention)
    async def contention_handler(request: Request, exc: LedgerContention):
        logger.warning("api.ledger_contention", path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Balance is busy, retry shortly"},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": str(exc), "retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(GenerationFailed)
    async def generation_failed_handler(request: Request, exc: GenerationFailed):
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "detail": exc.detail,
                "generation_id": str(exc.generation_id),
                "status": "failed",
            },
        )
