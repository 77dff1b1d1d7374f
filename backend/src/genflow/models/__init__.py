"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genflow.models.account import Account
from genflow.models.credit_reservation import CreditReservation
from genflow.models.credit_transaction import CreditTransaction, CreditTransactionKind
from genflow.models.generation import (
    Generation,
    GenerationStatus,
    InvalidStateTransition,
    VendorTool,
)

__all__ = [
    "Account",
    "Generation",
    "GenerationStatus",
    "VendorTool",
    "InvalidStateTransition",
    "CreditTransaction",
    "CreditTransactionKind",
    "CreditReservation",
]
