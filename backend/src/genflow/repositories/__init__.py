"""Repository layer for genflow.

Provides data access abstractions for all domain entities.
Each repository is self-contained; there is no base class.
"""

from genflow.repositories.account import AccountRepository
from genflow.repositories.credit_reservation import CreditReservationRepository
from genflow.repositories.credit_transaction import CreditTransactionRepository
from genflow.repositories.generation import GenerationRepository

__all__ = [
    "AccountRepository",
    "GenerationRepository",
    "CreditTransactionRepository",
    "CreditReservationRepository",
]
