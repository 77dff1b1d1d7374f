"""Credit ledger: atomic deduct/refund over the subscription and extra pools.

Subscription credits are consumed first; extra credits only count while the
subscription is active. Deductions are optimistic compare-and-set writes on
the account version, retried a bounded number of times. Every movement is
journaled as a CreditTransaction in the caller's unit of work.
"""

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

import structlog

from genflow.core.timezone import utcnow
from genflow.models.account import Account
from genflow.models.credit_reservation import CreditReservation
from genflow.models.credit_transaction import CreditTransaction, CreditTransactionKind
from genflow.services.exceptions import (
    AccountNotFound,
    InsufficientCredits,
    InvalidReservation,
    LedgerContention,
)
from genflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Balance:
    subscription_credits: int
    extra_credits: int
    total: int
    subscription_active: bool

    @classmethod
    def of(cls, account: Account) -> "Balance":
        return cls(
            subscription_credits=account.subscription_credits,
            extra_credits=account.extra_credits,
            total=account.total_credits,
            subscription_active=account.subscription_active,
        )


@dataclass(frozen=True)
class PoolSplit:
    """How many credits came from (or go back to) each pool."""

    subscription: int
    extras: int

    @property
    def total(self) -> int:
        return self.subscription + self.extras


@dataclass(frozen=True)
class Deduction:
    deducted: int
    from_subscription: int
    from_extras: int
    new_balance: Balance

    @property
    def split(self) -> PoolSplit:
        return PoolSplit(self.from_subscription, self.from_extras)


def split_subscription_first(amount: int, subscription: int) -> PoolSplit:
    """Draw from subscription credits first, the rest from extras."""
    from_subscription = min(amount, subscription)
    return PoolSplit(subscription=from_subscription, extras=amount - from_subscription)


class CreditLedger:
    """Owns every mutation of account balances.

    Methods take the caller's UnitOfWork so a deduction can commit atomically
    with the generation row that consumes it.
    """

    def __init__(self, max_cas_attempts: int = 8, reservation_ttl_seconds: int = 3600):
        self.max_cas_attempts = max_cas_attempts
        self.reservation_ttl_seconds = reservation_ttl_seconds

    async def get_balance(self, uow: UnitOfWork, account_id: str) -> Balance:
        """Current balance.

        Raises:
            AccountNotFound: If no account record exists
        """
        account = await uow.accounts.get_by_id(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return Balance.of(account)

    async def deduct(
        self,
        uow: UnitOfWork,
        account_id: str,
        amount: int,
        reason: str,
        generation_id: UUID | None = None,
    ) -> Deduction:
        """Deduct amount, subscription pool first.

        Raises:
            ValueError: If amount is not positive
            AccountNotFound: If no account record exists
            InsufficientCredits: If the spendable total is below amount (nothing deducted)
            LedgerContention: If every compare-and-set attempt lost a race
        """
        return await self._debit(
            uow,
            account_id,
            amount,
            reason,
            kind=CreditTransactionKind.DEDUCT,
            generation_id=generation_id,
        )

    async def refund(
        self,
        uow: UnitOfWork,
        account_id: str,
        amount: int,
        to_subscription: int | None = None,
        to_extras: int | None = None,
        reason: str = "",
        generation_id: UUID | None = None,
        kind: CreditTransactionKind = CreditTransactionKind.REFUND,
    ) -> bool:
        """Credit amount back to the pools it was drawn from.

        When the split is unknown the whole amount goes to the subscription
        pool. This does not restore extras that were originally spent.

        Raises:
            ValueError: If amount is negative or the split does not add up
            AccountNotFound: If no account record exists
        """
        if amount < 0:
            raise ValueError("Refund amount must not be negative")
        if to_subscription is None and to_extras is None:
            split = PoolSplit(subscription=amount, extras=0)
            logger.info(
                "ledger.refund_split_unknown",
                account_id=account_id,
                amount=amount,
                generation_id=str(generation_id) if generation_id else None,
            )
        else:
            split = PoolSplit(subscription=to_subscription or 0, extras=to_extras or 0)
        if split.total != amount or split.subscription < 0 or split.extras < 0:
            raise ValueError(
                f"Refund split {split.subscription}+{split.extras} does not match amount {amount}"
            )
        if amount == 0:
            return True

        updated = await uow.accounts.increment_balance(account_id, split.subscription, split.extras)
        if not updated:
            raise AccountNotFound(account_id)

        await uow.credit_transactions.add(
            CreditTransaction(
                account_id=account_id,
                kind=kind,
                amount=amount,
                subscription_delta=split.subscription,
                extras_delta=split.extras,
                reason=reason[:255],
                generation_id=generation_id,
            )
        )
        logger.info(
            "ledger.refunded",
            account_id=account_id,
            amount=amount,
            to_subscription=split.subscription,
            to_extras=split.extras,
            reason=reason,
        )
        return True

    async def reserve(
        self, uow: UnitOfWork, account_id: str, amount: int, reason: str
    ) -> CreditReservation:
        """Deduct amount up front into a reservation that generations draw from.

        Raises:
            Same as deduct()
        """
        reservation = CreditReservation(
            account_id=account_id,
            amount=amount,
            reason=reason[:255],
            expires_at=utcnow() + timedelta(seconds=self.reservation_ttl_seconds),
        )
        deduction = await self._debit(
            uow,
            account_id,
            amount,
            reason,
            kind=CreditTransactionKind.RESERVE,
            reservation_id=reservation.id,
        )
        reservation.subscription_remaining = deduction.from_subscription
        reservation.extras_remaining = deduction.from_extras
        await uow.reservations.add(reservation)

        logger.info(
            "ledger.reserved",
            account_id=account_id,
            reservation_id=str(reservation.id),
            amount=amount,
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    async def consume_reservation(
        self, uow: UnitOfWork, reservation_id: UUID, account_id: str, amount: int
    ) -> PoolSplit:
        """Take amount out of a reservation instead of the live balance.

        The reservation is re-validated on every call: it must belong to
        account_id, be unreleased, unexpired and hold enough credits.

        Returns:
            Pool split of the consumed credits

        Raises:
            InvalidReservation: If any of the checks above fails
            LedgerContention: If every compare-and-set attempt lost a race
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        for _ in range(self.max_cas_attempts):
            reservation = await uow.reservations.get_by_id(reservation_id)
            if reservation is None or reservation.account_id != account_id:
                raise InvalidReservation("Reservation not found")
            if not reservation.is_open(utcnow()):
                raise InvalidReservation("Reservation is expired or released")
            if reservation.remaining < amount:
                raise InvalidReservation(
                    f"Reservation holds {reservation.remaining} credits, {amount} required"
                )

            split = split_subscription_first(amount, reservation.subscription_remaining)
            swapped = await uow.reservations.compare_and_set_remaining(
                reservation_id,
                reservation.version,
                reservation.subscription_remaining - split.subscription,
                reservation.extras_remaining - split.extras,
            )
            if swapped:
                logger.info(
                    "ledger.reservation_consumed",
                    reservation_id=str(reservation_id),
                    amount=amount,
                    remaining=reservation.remaining - amount,
                )
                return split

            logger.info("ledger.reservation_cas_conflict", reservation_id=str(reservation_id))

        raise LedgerContention(f"Reservation {reservation_id} is under heavy contention")

    async def release_reservation(
        self, uow: UnitOfWork, reservation_id: UUID, account_id: str | None = None
    ) -> int:
        """Return whatever a reservation still holds to the account pools.

        Args:
            reservation_id: Reservation to release
            account_id: If given, the reservation must belong to this account

        Returns:
            Number of credits released (0 if the reservation was already released)

        Raises:
            InvalidReservation: If the reservation does not exist or is foreign
        """
        for _ in range(self.max_cas_attempts):
            reservation = await uow.reservations.get_by_id(reservation_id)
            if reservation is None or (
                account_id is not None and reservation.account_id != account_id
            ):
                raise InvalidReservation("Reservation not found")
            if reservation.released_at is not None:
                return 0

            remaining = PoolSplit(reservation.subscription_remaining, reservation.extras_remaining)
            swapped = await uow.reservations.compare_and_set_remaining(
                reservation_id, reservation.version, 0, 0, released_at=utcnow()
            )
            if not swapped:
                continue

            await self.refund(
                uow,
                reservation.account_id,
                remaining.total,
                to_subscription=remaining.subscription,
                to_extras=remaining.extras,
                reason=f"reservation released: {reservation.reason}",
                kind=CreditTransactionKind.RELEASE,
            )
            logger.info(
                "ledger.reservation_released",
                reservation_id=str(reservation_id),
                released=remaining.total,
            )
            return remaining.total

        raise LedgerContention(f"Reservation {reservation_id} is under heavy contention")

    async def _debit(
        self,
        uow: UnitOfWork,
        account_id: str,
        amount: int,
        reason: str,
        kind: CreditTransactionKind,
        generation_id: UUID | None = None,
        reservation_id: UUID | None = None,
    ) -> Deduction:
        if amount <= 0:
            raise ValueError("Amount must be positive")

        for attempt in range(1, self.max_cas_attempts + 1):
            account = await uow.accounts.get_by_id(account_id)
            if account is None:
                raise AccountNotFound(account_id)

            available = account.total_credits
            if available < amount:
                logger.info(
                    "ledger.insufficient_credits",
                    account_id=account_id,
                    required=amount,
                    available=available,
                )
                raise InsufficientCredits(required=amount, available=available)

            split = split_subscription_first(amount, account.subscription_credits)
            new_subscription = account.subscription_credits - split.subscription
            new_extras = account.extra_credits - split.extras

            swapped = await uow.accounts.compare_and_set_balance(
                account_id, account.version, new_subscription, new_extras
            )
            if not swapped:
                logger.info("ledger.cas_conflict", account_id=account_id, attempt=attempt)
                continue

            await uow.credit_transactions.add(
                CreditTransaction(
                    account_id=account_id,
                    kind=kind,
                    amount=amount,
                    subscription_delta=-split.subscription,
                    extras_delta=-split.extras,
                    reason=reason[:255],
                    generation_id=generation_id,
                    reservation_id=reservation_id,
                )
            )
            new_balance = Balance(
                subscription_credits=new_subscription,
                extra_credits=new_extras,
                total=new_subscription + (new_extras if account.subscription_active else 0),
                subscription_active=account.subscription_active,
            )
            logger.info(
                "ledger.deducted",
                account_id=account_id,
                amount=amount,
                from_subscription=split.subscription,
                from_extras=split.extras,
                kind=kind.value,
                reason=reason,
            )
            return Deduction(
                deducted=amount,
                from_subscription=split.subscription,
                from_extras=split.extras,
                new_balance=new_balance,
            )

        logger.warning("ledger.contention_exhausted", account_id=account_id, amount=amount)
        raise LedgerContention(f"Could not deduct from account {account_id}, retry later")
