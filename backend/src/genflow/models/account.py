"""Account entity - dual-pool credit balance."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from genflow.core.timezone import utcnow

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


class Account(SQLModel, table=True):
    """Account holds the subscription and extra credit pools of one user.

    Balances are only mutated through the ledger. The billing provider owns
    subscription_status and replenishes subscription_credits.
    """

    __tablename__ = "accounts"  # type: ignore[assignment]

    id: str = Field(primary_key=True, max_length=64)
    subscription_credits: int = Field(default=0, ge=0)
    extra_credits: int = Field(default=0, ge=0)
    subscription_status: Optional[str] = Field(default=None, max_length=32)
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def subscription_active(self) -> bool:
        return self.subscription_status in ACTIVE_SUBSCRIPTION_STATUSES

    @property
    def spendable_extras(self) -> int:
        """Extra credits only count while the subscription is active."""
        return self.extra_credits if self.subscription_active else 0

    @property
    def total_credits(self) -> int:
        return self.subscription_credits + self.spendable_extras
