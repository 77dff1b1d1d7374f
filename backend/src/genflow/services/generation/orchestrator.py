"""Generation orchestrator: intake, dispatch, reconciliation and refunds.

State machine:
    pending --dispatch ok--> processing --vendor completed--> completed
    pending --dispatch fails--> failed
    processing --vendor failed--> failed
    any non-terminal --stale timeout--> failed

Every write of a new state is a compare-and-set on the persisted status, and
the refund for a failure happens in the same transaction as the transition
that won, so a generation is refunded at most once no matter how many sweeps
race over it. No transaction is held open across a vendor or storage call.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID

import structlog

from genflow.core.timezone import utcnow
from genflow.models.generation import Generation, GenerationStatus, VendorTool
from genflow.services.exceptions import (
    BlobStoreError,
    FetchFailed,
    GenerationFailed,
    GenerationInFlight,
    GenerationNotFound,
    InvalidGenerationRequest,
    MaterializeError,
    StaleTimeout,
    TooLarge,
    UnknownTool,
    UploadFailed,
    VendorError,
    VendorUnavailable,
)
from genflow.services.ledger import CreditLedger, PoolSplit
from genflow.services.storage.materializer import ResultMaterializer
from genflow.services.vendors.base import TaskContext, TaskState, VendorAdapter
from genflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)

UowFactory = Callable[[], Awaitable[UnitOfWork]]

# Failures while dispatching that end the generation and refund it
DISPATCH_ERRORS = (VendorError, MaterializeError, BlobStoreError, InvalidGenerationRequest)

TIMED_OUT_ERROR = "Generation timed out"


@dataclass(frozen=True)
class SubmitResult:
    generation_id: UUID
    status: GenerationStatus
    credits_used: int
    task_handle: str | None


class GenerationOrchestrator:
    """Drives generations through their lifecycle."""

    def __init__(
        self,
        uow_factory: UowFactory,
        ledger: CreditLedger,
        adapters: dict[VendorTool, VendorAdapter],
        materializer: ResultMaterializer,
        stale_timeout_seconds: int = 600,
    ):
        """Initialize orchestrator.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            ledger: Credit ledger
            adapters: Vendor adapter per tool
            materializer: Copies finished artifacts into owned storage
            stale_timeout_seconds: Age after which a non-terminal generation is failed
        """
        self.uow_factory = uow_factory
        self.ledger = ledger
        self.adapters = adapters
        self.materializer = materializer
        self.stale_timeout = timedelta(seconds=stale_timeout_seconds)

    def adapter_for(self, tool: VendorTool | str) -> VendorAdapter:
        try:
            return self.adapters[VendorTool(tool)]
        except (KeyError, ValueError) as e:
            raise UnknownTool(f"Unknown tool: {tool}") from e

    def quote(self, tool: VendorTool | str, raw_params: dict[str, Any]) -> int:
        """Credits a request would cost. Same formula as the charge in submit().

        Audio-priced tools need audio_duration_seconds in raw_params here;
        submit() measures it from the audio instead.
        """
        adapter = self.adapter_for(tool)
        return adapter.quote(adapter.parse_params(raw_params))

    def quote_stored(self, generation: Generation) -> int:
        """Recompute the cost of a persisted generation from its request_parameters."""
        adapter = self.adapter_for(generation.tool)
        return adapter.quote(adapter.parse_params(generation.request_parameters, stored=True))

    async def submit(
        self,
        owner_id: str,
        tool: VendorTool | str,
        raw_params: dict[str, Any],
        reservation_id: UUID | None = None,
    ) -> SubmitResult:
        """Validate, charge, persist and dispatch one generation.

        Returns as soon as the vendor accepted the task; completion is picked
        up by the reconciliation sweep.

        Args:
            owner_id: Authenticated account identifier (charge target)
            tool: Generation tool
            raw_params: Tool parameters from the request body
            reservation_id: Draw credits from this batch reservation instead
                of the live balance. Re-validated against owner_id.

        Raises:
            UnknownTool: No adapter for tool
            InvalidGenerationRequest: Parameters failed validation, or a priced
                input (audio length) could not be measured or contradicts them
            AccountNotFound, InsufficientCredits, LedgerContention: Nothing was charged
            InvalidReservation: Reservation unusable, nothing was charged
            GenerationFailed: Dispatch failed; the generation is failed and refunded
        """
        adapter = self.adapter_for(tool)
        params = await adapter.measure_inputs(adapter.parse_params(raw_params))
        credits = adapter.quote(params)

        generation = Generation(
            owner_id=owner_id,
            tool=adapter.tool,
            credits_used=credits,
            request_parameters=params.storable(),
            reservation_id=reservation_id,
        )

        async with await self.uow_factory() as uow:
            if reservation_id is not None:
                split = await self.ledger.consume_reservation(uow, reservation_id, owner_id, credits)
            else:
                deduction = await self.ledger.deduct(
                    uow,
                    owner_id,
                    credits,
                    reason=f"{adapter.tool.value} generation",
                    generation_id=generation.id,
                )
                split = deduction.split
            generation.debited_subscription = split.subscription
            generation.debited_extras = split.extras
            await uow.generations.add(generation)

        logger.info(
            "generation.submitted",
            generation_id=str(generation.id),
            owner_id=owner_id,
            tool=adapter.tool.value,
            credits_used=credits,
            reservation_id=str(reservation_id) if reservation_id else None,
        )

        context = TaskContext(owner_id=owner_id, generation_id=generation.id)
        try:
            prepared = await adapter.prepare(params, context)
            task_handle = await adapter.create_task(prepared, context)
        except DISPATCH_ERRORS as e:
            detail = str(e) or type(e).__name__
            logger.warning(
                "generation.dispatch_failed",
                generation_id=str(generation.id),
                tool=adapter.tool.value,
                error=detail,
                error_type=type(e).__name__,
            )
            await self._fail(generation, detail)
            raise GenerationFailed(generation.id, detail) from e

        generation.request_parameters = prepared.storable()
        generation.mark_processing(task_handle)
        async with await self.uow_factory() as uow:
            moved = await uow.generations.save_transition(generation, GenerationStatus.PENDING)

        if not moved:
            # A sweep failed the row while dispatch was in flight; that sweep refunded it
            logger.warning(
                "generation.dispatch_superseded",
                generation_id=str(generation.id),
                task_handle=task_handle,
            )
            raise GenerationFailed(generation.id, TIMED_OUT_ERROR)

        logger.info(
            "generation.dispatched",
            generation_id=str(generation.id),
            tool=adapter.tool.value,
            task_handle=task_handle,
        )
        return SubmitResult(
            generation_id=generation.id,
            status=GenerationStatus.PROCESSING,
            credits_used=credits,
            task_handle=task_handle,
        )

    async def reconcile_generation(self, generation: Generation, now: datetime | None = None) -> str:
        """Advance one in-flight generation from a detached snapshot.

        Returns:
            Outcome label: timed_out, completed, degraded, failed, processing,
            unavailable, waiting or skipped (already terminal)
        """
        if generation.is_terminal:
            return "skipped"

        now = now or utcnow()
        log = logger.bind(generation_id=str(generation.id), tool=generation.tool.value)

        # The stale threshold dominates whatever the vendor would report
        if now - generation.created_at > self.stale_timeout:
            timeout = StaleTimeout(TIMED_OUT_ERROR)
            failed = await self._fail(generation, str(timeout))
            if failed:
                log.warning(
                    "generation.timed_out",
                    age_seconds=int((now - generation.created_at).total_seconds()),
                    had_task_handle=bool(generation.external_task_handle),
                )
            return "timed_out" if failed else "skipped"

        if generation.status == GenerationStatus.PENDING or not generation.external_task_handle:
            # Dispatch still in progress; the stale threshold covers a crashed dispatch
            return "waiting"

        adapter = self.adapter_for(generation.tool)
        task_handle = generation.external_task_handle
        try:
            status = await adapter.get_status(task_handle)
        except VendorError as e:
            log.warning("generation.poll_failed", error=str(e), error_type=type(e).__name__)
            return "unavailable"

        if status.state == TaskState.PROCESSING:
            async with await self.uow_factory() as uow:
                await uow.generations.update_progress(generation.id, status.progress_percent)
            return "processing"

        if status.state == TaskState.FAILED:
            failed = await self._fail(generation, status.error_message or "Generation failed")
            return "failed" if failed else "skipped"

        location = status.result_location
        if not location:
            try:
                location = await adapter.fetch_result_location(task_handle)
            except VendorUnavailable as e:
                log.warning("generation.result_location_unavailable", error=str(e))
                return "unavailable"
        if not location:
            failed = await self._fail(generation, "Vendor reported completion without a result")
            return "failed" if failed else "skipped"

        return await self._complete(generation, adapter, location)

    async def delete_generation(self, owner_id: str, generation_id: UUID) -> None:
        """Delete a terminal generation owned by owner_id.

        Raises:
            GenerationNotFound: Unknown id or another owner's generation
            GenerationInFlight: Generation is still pending or processing
        """
        async with await self.uow_factory() as uow:
            generation = await uow.generations.get_by_id(generation_id)
            if generation is None or generation.owner_id != owner_id:
                raise GenerationNotFound(f"Generation not found: {generation_id}")
            if not generation.is_terminal:
                raise GenerationInFlight("Only completed or failed generations can be deleted")
            deleted = await uow.generations.delete_terminal(generation_id, owner_id)

        if deleted:
            logger.info("generation.deleted", generation_id=str(generation_id), owner_id=owner_id)

    async def _complete(self, generation: Generation, adapter: VendorAdapter, location: str) -> str:
        log = logger.bind(generation_id=str(generation.id), tool=generation.tool.value)
        outcome = "completed"
        try:
            result = await self.materializer.materialize(
                location,
                generation.owner_id,
                generation.id,
                default_content_type=adapter.result_content_type,
            )
        except UploadFailed as e:
            # Fetched but not stored: keep the vendor URL rather than lose the artifact
            log.warning(
                "materializer.fallback_to_vendor_url",
                source_url=e.source_url,
                storage_error=str(e),
            )
            generation.mark_completed(location)
            generation.result_metadata = {"degraded": True, "storage_error": str(e)}
            outcome = "degraded"
        except (FetchFailed, TooLarge) as e:
            failed = await self._fail(generation, str(e))
            return "failed" if failed else "skipped"
        else:
            generation.mark_completed(result.storage_url)
            generation.result_metadata = {
                "content_type": result.content_type,
                "size_bytes": result.size_bytes,
            }
        generation.original_result_url = location

        async with await self.uow_factory() as uow:
            moved = await uow.generations.save_transition(generation, GenerationStatus.PROCESSING)

        if not moved:
            log.info("generation.completion_discarded")
            return "skipped"

        log.info(
            "generation.completed",
            result_url=generation.result_url,
            degraded=outcome == "degraded",
        )
        return outcome

    async def _fail(self, generation: Generation, error: str) -> bool:
        """Fail a detached generation and refund it in the same transaction.

        Returns:
            True if this call performed the transition
        """
        expected = generation.status
        generation.mark_failed(error)

        async with await self.uow_factory() as uow:
            moved = await uow.generations.save_transition(generation, expected)
            if moved:
                await self._refund(uow, generation)

        if moved:
            logger.info(
                "generation.failed",
                generation_id=str(generation.id),
                tool=generation.tool.value,
                error=generation.last_error,
            )
        else:
            logger.info("generation.failure_discarded", generation_id=str(generation.id))
        return moved

    async def _refund(self, uow: UnitOfWork, generation: Generation) -> None:
        if generation.credits_used <= 0:
            return
        if not await uow.generations.mark_refunded(generation.id):
            logger.warning("generation.refund_already_done", generation_id=str(generation.id))
            return

        if generation.split_known:
            split = PoolSplit(generation.debited_subscription or 0, generation.debited_extras or 0)
            await self.ledger.refund(
                uow,
                generation.owner_id,
                generation.credits_used,
                to_subscription=split.subscription,
                to_extras=split.extras,
                reason=f"{generation.tool.value} generation failed",
                generation_id=generation.id,
            )
        else:
            await self.ledger.refund(
                uow,
                generation.owner_id,
                generation.credits_used,
                reason=f"{generation.tool.value} generation failed",
                generation_id=generation.id,
            )
        logger.info(
            "generation.refunded",
            generation_id=str(generation.id),
            amount=generation.credits_used,
        )
