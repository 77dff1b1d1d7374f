"""State transition tests for the Generation model.

Tests focus on validating the generation lifecycle state machine:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- Failed state is reachable from any non-terminal state
- Persisted transitions are compare-and-set on the stored status
"""

import pytest

from genflow.models.generation import (
    Generation,
    GenerationStatus,
    InvalidStateTransition,
    VendorTool,
)


def new_generation(**fields) -> Generation:
    return Generation(owner_id="user_1", tool=VendorTool.SORA2, credits_used=15, **fields)


def test_valid_state_transitions():
    """Happy path: pending -> processing -> completed."""
    generation = new_generation()
    assert generation.status == GenerationStatus.PENDING

    generation.mark_processing("video_abc")
    assert generation.status == GenerationStatus.PROCESSING
    assert generation.external_task_handle == "video_abc"

    generation.mark_completed("https://cdn.genflow.test/generations/user_1/x.mp4")
    assert generation.status == GenerationStatus.COMPLETED
    assert generation.progress == 100
    assert generation.completed_at is not None
    assert generation.is_terminal


def test_invalid_state_transition_raises_exception():
    """Cannot complete a generation that was never dispatched."""
    generation = new_generation()

    with pytest.raises(InvalidStateTransition) as exc_info:
        generation.mark_completed("https://cdn.genflow.test/x.mp4")

    assert "pending" in str(exc_info.value)
    assert generation.status == GenerationStatus.PENDING


@pytest.mark.parametrize("status", [GenerationStatus.PENDING, GenerationStatus.PROCESSING])
def test_failed_reachable_from_non_terminal(status):
    generation = new_generation(status=status)

    generation.mark_failed("Vendor said no")

    assert generation.status == GenerationStatus.FAILED
    assert generation.last_error == "Vendor said no"
    assert generation.failed_at is not None


@pytest.mark.parametrize("status", [GenerationStatus.COMPLETED, GenerationStatus.FAILED])
def test_terminal_states_are_final(status):
    generation = new_generation(status=status)

    with pytest.raises(InvalidStateTransition):
        generation.mark_failed("late failure")
    with pytest.raises(InvalidStateTransition):
        generation.mark_processing("late_task")


def test_failure_message_is_capped():
    generation = new_generation()

    generation.mark_failed("x" * 5000)

    assert len(generation.last_error) == 1000


def test_mark_processing_requires_task_handle():
    generation = new_generation()

    with pytest.raises(ValueError):
        generation.mark_processing("")
    assert generation.status == GenerationStatus.PENDING


@pytest.mark.asyncio
async def test_save_transition_only_first_writer_wins(uow_factory, make_account, make_generation):
    """Test concurrent transitions from the same snapshot.

    Scenario:
    1. Two sweeps load the same processing generation
    2. Sweep A marks it completed and saves
    3. Sweep B marks it failed and saves with the same expected status
    4. Only A's write lands; B is told it lost
    """
    await make_account()
    stored = await make_generation()

    async with await uow_factory() as uow:
        snapshot_a = await uow.generations.get_by_id(stored.id)
    async with await uow_factory() as uow:
        snapshot_b = await uow.generations.get_by_id(stored.id)
    assert snapshot_a is not None and snapshot_b is not None

    snapshot_a.mark_completed("https://cdn.genflow.test/a.mp4")
    async with await uow_factory() as uow:
        assert await uow.generations.save_transition(snapshot_a, GenerationStatus.PROCESSING)

    snapshot_b.mark_failed("timed out")
    async with await uow_factory() as uow:
        assert not await uow.generations.save_transition(snapshot_b, GenerationStatus.PROCESSING)

    async with await uow_factory() as uow:
        current = await uow.generations.get_by_id(stored.id)
    assert current is not None
    assert current.status == GenerationStatus.COMPLETED
    assert current.last_error is None
