"""Credit balance and batch reservation endpoints.

- GET    /api/credits/balance                 - Caller's balance
- GET    /api/credits/transactions            - Caller's credit journal
- POST   /api/credits/reservations            - Pre-deduct credits for a batch of generations
- DELETE /api/credits/reservations/{id}       - Release what a reservation still holds

All routes share the per-account "credits" rate limit.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from genflow.api.dependencies import get_account_id, get_ledger, rate_limit
from genflow.api.rate_limit import CREDITS
from genflow.core.dependencies import get_uow
from genflow.services.ledger import CreditLedger
from genflow.uow import UnitOfWork

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/credits", tags=["credits"], dependencies=[Depends(rate_limit(CREDITS))]
)


class BalanceResponse(BaseModel):
    subscription_credits: int
    extra_credits: int
    total: int = Field(..., description="Spendable credits (extras only count while subscribed)")
    subscription_active: bool


class ReserveRequest(BaseModel):
    amount: int = Field(..., gt=0, le=100_000)
    reason: str = Field(default="batch generation", max_length=255)


class ReservationResponse(BaseModel):
    id: UUID
    amount: int
    remaining: int
    expires_at: datetime
    released: bool


class ReleaseResponse(BaseModel):
    released: int


class CreditTransactionDTO(BaseModel):
    id: UUID
    kind: str
    amount: int
    subscription_delta: int
    extras_delta: int
    reason: str
    generation_id: UUID | None
    reservation_id: UUID | None
    created_at: datetime


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    account_id: str = Depends(get_account_id),
    uow: UnitOfWork = Depends(get_uow),
    ledger: CreditLedger = Depends(get_ledger),
) -> BalanceResponse:
    """Return the caller's subscription and extra credit pools."""
    balance = await ledger.get_balance(uow, account_id)
    return BalanceResponse(
        subscription_credits=balance.subscription_credits,
        extra_credits=balance.extra_credits,
        total=balance.total,
        subscription_active=balance.subscription_active,
    )


@router.get("/transactions", response_model=list[CreditTransactionDTO])
async def list_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    account_id: str = Depends(get_account_id),
    uow: UnitOfWork = Depends(get_uow),
) -> list[CreditTransactionDTO]:
    entries = await uow.credit_transactions.list_for_account(account_id, limit=limit)
    return [
        CreditTransactionDTO(
            id=entry.id,
            kind=entry.kind.value,
            amount=entry.amount,
            subscription_delta=entry.subscription_delta,
            extras_delta=entry.extras_delta,
            reason=entry.reason,
            generation_id=entry.generation_id,
            reservation_id=entry.reservation_id,
            created_at=entry.created_at,
        )
        for entry in entries
    ]


@router.post(
    "/reservations", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED
)
async def create_reservation(
    request: ReserveRequest,
    account_id: str = Depends(get_account_id),
    uow: UnitOfWork = Depends(get_uow),
    ledger: CreditLedger = Depends(get_ledger),
) -> ReservationResponse:
    """Deduct credits once for a batch; pass the id as reservation_id on each generation.

    Returns:
        201: Reservation created
        402: Insufficient credits (nothing deducted)
    """
    reservation = await ledger.reserve(uow, account_id, request.amount, request.reason)
    return ReservationResponse(
        id=reservation.id,
        amount=reservation.amount,
        remaining=reservation.remaining,
        expires_at=reservation.expires_at,
        released=False,
    )


@router.delete("/reservations/{reservation_id}", response_model=ReleaseResponse)
async def release_reservation(
    reservation_id: UUID,
    account_id: str = Depends(get_account_id),
    uow: UnitOfWork = Depends(get_uow),
    ledger: CreditLedger = Depends(get_ledger),
) -> ReleaseResponse:
    """Refund whatever the reservation still holds to the pools it came from."""
    released = await ledger.release_reservation(uow, reservation_id, account_id=account_id)
    return ReleaseResponse(released=released)
