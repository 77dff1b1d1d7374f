"""Generation entity - one media generation request with lifecycle status."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from genflow.core.timezone import utcnow


class GenerationStatus(str, Enum):
    """Generation lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES = (GenerationStatus.PENDING, GenerationStatus.PROCESSING)
TERMINAL_STATUSES = (GenerationStatus.COMPLETED, GenerationStatus.FAILED)


class VendorTool(str, Enum):
    """Generation tools, one vendor adapter each."""

    SORA2 = "sora2"
    VEO3 = "veo3"
    LIPSYNC = "lipsync"
    INFINITETALK = "infinitetalk"
    NANOBANANA = "nanobanana"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid generation state transition."""

    pass


class Generation(SQLModel, table=True):
    """Generation tracks a single vendor task from intake to a terminal state."""

    __tablename__ = "generations"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(foreign_key="accounts.id", index=True, max_length=64)
    tool: VendorTool = Field(index=True)
    status: GenerationStatus = Field(default=GenerationStatus.PENDING, index=True)

    # Credits (fixed at dispatch time)
    credits_used: int = Field(default=0, ge=0)
    debited_subscription: Optional[int] = Field(default=None)
    debited_extras: Optional[int] = Field(default=None)
    reservation_id: Optional[UUID] = Field(default=None, foreign_key="credit_reservations.id")
    refunded_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    # Vendor task
    external_task_handle: Optional[str] = Field(default=None, max_length=255, index=True)
    request_parameters: dict = Field(default_factory=dict, sa_column=Column(JSON))
    progress: Optional[int] = Field(default=None)

    # Result
    result_url: Optional[str] = Field(default=None)
    original_result_url: Optional[str] = Field(default=None)
    result_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    last_error: Optional[str] = Field(default=None, max_length=1000)

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    failed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def split_known(self) -> bool:
        return self.debited_subscription is not None and self.debited_extras is not None

    def mark_processing(self, task_handle: str) -> None:
        """Transition from pending to processing.

        Raises:
            InvalidStateTransition: If current status is not pending
            ValueError: If task_handle is empty
        """
        if self.status != GenerationStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. "
                "Generation must be in pending state."
            )
        if not task_handle:
            raise ValueError("task_handle is required")
        self.external_task_handle = task_handle
        self.status = GenerationStatus.PROCESSING
        self.updated_at = utcnow()

    def mark_completed(self, result_url: str) -> None:
        """Transition from processing to completed.

        Raises:
            InvalidStateTransition: If current status is not processing
            ValueError: If result_url is empty
        """
        if self.status != GenerationStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Generation must be in processing state."
            )
        if not result_url:
            raise ValueError("result_url is required")
        now = utcnow()
        self.result_url = result_url
        self.status = GenerationStatus.COMPLETED
        self.progress = 100
        self.completed_at = now
        self.updated_at = now

    def mark_failed(self, error: str) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        now = utcnow()
        self.last_error = (error or "Generation failed")[:1000]
        self.status = GenerationStatus.FAILED
        self.failed_at = now
        self.updated_at = now
