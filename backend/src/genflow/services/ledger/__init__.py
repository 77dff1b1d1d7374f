"""Dual-pool credit ledger."""

from genflow.services.ledger.ledger import Balance, CreditLedger, Deduction, PoolSplit

__all__ = ["Balance", "CreditLedger", "Deduction", "PoolSplit"]
