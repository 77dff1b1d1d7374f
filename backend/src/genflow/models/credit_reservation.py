"""CreditReservation entity - credits deducted up front for a batch of generations."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from genflow.core.timezone import utcnow


class CreditReservation(SQLModel, table=True):
    """Pre-deducted credits that generations draw from instead of the balance.

    The pool split of what is left is tracked so releasing the remainder
    restores the pools the credits came from. Subscription credits are
    consumed first, mirroring the deduction policy.
    """

    __tablename__ = "credit_reservations"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True, max_length=64)
    amount: int = Field(gt=0)
    subscription_remaining: int = Field(default=0, ge=0)
    extras_remaining: int = Field(default=0, ge=0)
    reason: str = Field(default="", max_length=255)
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)
    released_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    @property
    def remaining(self) -> int:
        return self.subscription_remaining + self.extras_remaining

    def is_open(self, now: datetime) -> bool:
        return self.released_at is None and self.expires_at > now
