"""Service error hierarchy for the credit ledger and generation lifecycle.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts, contention)
- PermanentError: Non-retryable errors (validation, balance, vendor rejection)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts and connection resets
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    - Ledger compare-and-set contention
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Insufficient credits
    - Invalid request parameters (400)
    - Vendor content policy rejections
    """

    pass


class InvalidGenerationRequest(PermanentError, ValueError):
    """Generation parameters failed validation."""

    pass


class UnknownTool(PermanentError):
    """No adapter is registered for the requested tool."""

    pass


# Generation lifecycle errors
class GenerationError(ServiceError):
    """Base exception for generation lifecycle errors."""

    pass


class GenerationNotFound(GenerationError, PermanentError):
    """Generation does not exist or belongs to another account."""

    pass


class GenerationInFlight(GenerationError, PermanentError):
    """Operation requires a terminal generation."""

    pass


class GenerationFailed(GenerationError, PermanentError):
    """Dispatch failed after the generation row was created. Credits were refunded."""

    def __init__(self, generation_id, detail: str):
        super().__init__(detail)
        self.generation_id = generation_id
        self.detail = detail


# Ledger errors
class LedgerError(ServiceError):
    """Base exception for credit ledger errors."""

    pass


class AccountNotFound(LedgerError, PermanentError):
    """No account record exists for the identifier."""

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class InsufficientCredits(LedgerError, PermanentError):
    """Available balance is lower than the requested amount. Nothing was deducted."""

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available


class LedgerContention(LedgerError, TransientError):
    """Compare-and-set attempts exhausted under concurrent balance updates."""

    pass


class InvalidReservation(LedgerError, PermanentError):
    """Reservation is unknown, foreign, expired, released or exhausted."""

    pass


# Vendor errors
class VendorError(ServiceError):
    """Base exception for vendor task adapter errors."""

    pass


class VendorRejected(VendorError, PermanentError):
    """Vendor declined the task (bad input, quota, content policy)."""

    pass


class VendorUnavailable(VendorError, TransientError):
    """Vendor unreachable, timed out or returned 5xx/429.

    status_code is None for network-level failures (timeout, connection reset).
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# Materializer errors
class MaterializeError(ServiceError):
    """Base exception for result materialization errors."""

    pass


class FetchFailed(MaterializeError):
    """Vendor-hosted artifact could not be downloaded."""

    pass


class TooLarge(MaterializeError):
    """Artifact exceeds the size ceiling."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Artifact exceeds size limit: {size} > {limit} bytes")
        self.size = size
        self.limit = limit


class UploadFailed(MaterializeError):
    """Artifact was fetched but could not be written to blob storage."""

    def __init__(self, message: str, source_url: str):
        super().__init__(message)
        self.source_url = source_url


class StaleTimeout(PermanentError):
    """Generation stayed non-terminal past the stale threshold."""

    pass


# Blob storage errors
class BlobStoreError(TransientError):
    """Object storage write failed."""

    pass


# Request limits
class RateLimited(TransientError):
    """Account exceeded its request allowance for an endpoint category."""

    def __init__(self, category: str, retry_after: int):
        super().__init__(f"Too many {category} requests, retry in {retry_after}s")
        self.category = category
        self.retry_after = retry_after
