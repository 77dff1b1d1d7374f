"""Generation endpoints.

- POST   /api/generations/reconcile     - Reconcile the caller's in-flight generations now
- POST   /api/generations/{tool}        - Submit a generation (sora2, veo3, lipsync,
                                          infinitetalk, nanobanana)
- GET    /api/generations               - List caller's generations, newest first
- GET    /api/generations/{id}          - Persisted state of one generation (pure read)
- DELETE /api/generations/{id}          - Delete a completed or failed generation

Reads never advance state; the reconciliation sweep does.
Submit and reconcile count against the "generation" rate limit, reads against
"status" and delete against "general".
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from genflow.api.dependencies import get_account_id, get_orchestrator, get_settings, rate_limit
from genflow.api.rate_limit import GENERAL, GENERATION, STATUS
from genflow.core.config import Settings
from genflow.core.dependencies import get_uow
from genflow.models.generation import Generation, VendorTool
from genflow.services.exceptions import InvalidGenerationRequest
from genflow.services.generation.orchestrator import GenerationOrchestrator
from genflow.uow import UnitOfWork
from genflow.workers.reconciliation_worker import run_sweep

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])


class SubmitResponse(BaseModel):
    generation_id: UUID
    status: str
    credits_used: int
    task_handle: str | None


class GenerationDTO(BaseModel):
    """Data Transfer Object for generation information in API responses."""

    id: UUID
    tool: str
    status: str = Field(..., description="pending, processing, completed or failed")
    credits_used: int
    progress: int | None = None
    result_url: str | None = Field(default=None, description="Set only once completed")
    last_error: str | None = Field(default=None, description="Set only once failed")
    refunded: bool
    request_parameters: dict
    created_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    @classmethod
    def from_model(cls, generation: Generation) -> "GenerationDTO":
        return cls(
            id=generation.id,
            tool=generation.tool.value,
            status=generation.status.value,
            credits_used=generation.credits_used,
            progress=generation.progress,
            result_url=generation.result_url,
            last_error=generation.last_error,
            refunded=generation.refunded_at is not None,
            request_parameters=generation.request_parameters,
            created_at=generation.created_at,
            completed_at=generation.completed_at,
            failed_at=generation.failed_at,
        )


class ReconcileResponse(BaseModel):
    examined: int
    outcomes: dict[str, int]
    errors: int


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(rate_limit(GENERATION))],
)
async def reconcile_own_generations(
    account_id: str = Depends(get_account_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
) -> ReconcileResponse:
    """Run the reconciliation sweep over the caller's in-flight generations."""
    stats = await run_sweep(
        orchestrator, batch_size=settings.sweep_batch_size, owner_id=account_id
    )
    return ReconcileResponse(
        examined=stats.examined, outcomes=dict(stats.outcomes), errors=stats.errors
    )


@router.post(
    "/{tool}",
    response_model=SubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit(GENERATION))],
)
async def submit_generation(
    tool: str,
    body: dict[str, Any] = Body(...),
    account_id: str = Depends(get_account_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> SubmitResponse:
    """Charge credits and dispatch a generation to the tool's vendor.

    The body holds the tool's parameters plus an optional reservation_id
    when credits were reserved up front for a batch.

    Returns:
        202: Accepted, poll GET /api/generations/{id} for progress
        400: Invalid parameters
        402: Insufficient credits
        404: Unknown tool
        409: Reservation unusable
        502: Vendor rejected the task (credits refunded)
    """
    params = dict(body)
    reservation_id = params.pop("reservation_id", None)
    if reservation_id is not None:
        try:
            reservation_id = UUID(str(reservation_id))
        except ValueError as e:
            raise InvalidGenerationRequest("reservation_id must be a UUID") from e

    result = await orchestrator.submit(account_id, tool, params, reservation_id=reservation_id)
    return SubmitResponse(
        generation_id=result.generation_id,
        status=result.status.value,
        credits_used=result.credits_used,
        task_handle=result.task_handle,
    )


@router.get(
    "", response_model=list[GenerationDTO], dependencies=[Depends(rate_limit(STATUS))]
)
async def list_generations(
    tool: VendorTool | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    account_id: str = Depends(get_account_id),
    uow: UnitOfWork = Depends(get_uow),
) -> list[GenerationDTO]:
    generations = await uow.generations.list_for_owner(
        account_id, tool=tool, limit=limit, offset=offset
    )
    return [GenerationDTO.from_model(generation) for generation in generations]


@router.get(
    "/{generation_id}",
    response_model=GenerationDTO,
    dependencies=[Depends(rate_limit(STATUS))],
)
async def get_generation(
    generation_id: UUID,
    account_id: str = Depends(get_account_id),
    uow: UnitOfWork = Depends(get_uow),
) -> GenerationDTO:
    generation = await uow.generations.get_by_id(generation_id)
    if generation is None or generation.owner_id != account_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found")
    return GenerationDTO.from_model(generation)


@router.delete(
    "/{generation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(rate_limit(GENERAL))],
)
async def delete_generation(
    generation_id: UUID,
    account_id: str = Depends(get_account_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Delete a terminal generation. 409 while it is still in flight."""
    await orchestrator.delete_generation(account_id, generation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
