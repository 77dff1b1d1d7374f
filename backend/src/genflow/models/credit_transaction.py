"""CreditTransaction entity - append-only journal of ledger movements."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from genflow.core.timezone import utcnow


class CreditTransactionKind(str, Enum):
    DEDUCT = "deduct"
    REFUND = "refund"
    RESERVE = "reserve"
    RELEASE = "release"


class CreditTransaction(SQLModel, table=True):
    """One ledger movement. Deltas are signed: negative for debits, positive for credits."""

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True, max_length=64)
    kind: CreditTransactionKind
    amount: int = Field(ge=0)
    subscription_delta: int = Field(default=0)
    extras_delta: int = Field(default=0)
    reason: str = Field(default="", max_length=255)
    generation_id: Optional[UUID] = Field(default=None, index=True)
    reservation_id: Optional[UUID] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
