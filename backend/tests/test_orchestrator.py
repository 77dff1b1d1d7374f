"""Generation orchestrator tests: intake, charging and dispatch.

Tests focus on the money path:
- A successful submit charges once and records the pool split
- Rejected requests charge nothing
- A failed dispatch leaves a failed generation and refunds it
- Batch reservations fund generations instead of the live balance
"""

import asyncio
import base64
import json
from datetime import timedelta

import pytest

from conftest import BLOB_PUBLIC_URL, LAOZHANG, NEWPORTAI, WAVESPEED, wav_bytes, wav_data_url
from genflow.core.timezone import utcnow
from genflow.models.credit_transaction import CreditTransactionKind
from genflow.models.generation import GenerationStatus, VendorTool
from genflow.services.exceptions import (
    GenerationFailed,
    GenerationInFlight,
    GenerationNotFound,
    InsufficientCredits,
    InvalidGenerationRequest,
    InvalidReservation,
    UnknownTool,
)
from genflow.services.generation.orchestrator import SubmitResult

VIDEOS = f"{LAOZHANG}/v1/videos"


@pytest.mark.asyncio
async def test_submit_charges_and_dispatches(
    orchestrator, vendor, make_account, get_account, get_generation, uow_factory
):
    """Test the happy path of a Sora2 submission.

    Scenario:
    1. Account holds 5 subscription + 20 extra credits
    2. Submit a 12 second video
    3. 12 credits are charged (5 subscription, 7 extras)
    4. Generation is processing with the vendor task id
    """
    await make_account(subscription=5, extras=20)
    vendor.on("POST", VIDEOS, json={"id": "video_abc", "status": "queued"})

    result = await orchestrator.submit("user_1", "sora2", {"prompt": "a cat", "seconds": 12})

    assert result.status == GenerationStatus.PROCESSING
    assert result.credits_used == 12
    assert result.task_handle == "video_abc"

    account = await get_account()
    assert (account.subscription_credits, account.extra_credits) == (0, 13)

    generation = await get_generation(result.generation_id)
    assert generation.status == GenerationStatus.PROCESSING
    assert generation.external_task_handle == "video_abc"
    assert (generation.debited_subscription, generation.debited_extras) == (5, 7)
    assert generation.request_parameters["seconds"] == 12

    async with await uow_factory() as uow:
        entries = await uow.credit_transactions.list_for_generation(result.generation_id)
    assert [e.kind for e in entries] == [CreditTransactionKind.DEDUCT]


@pytest.mark.asyncio
async def test_quote_matches_charge(orchestrator, vendor, make_account, get_generation):
    """The stored request parameters recompute to exactly what was charged."""
    await make_account()
    vendor.on("POST", VIDEOS, json={"id": "video_abc"})
    params = {"prompt": "waves", "speed": "standard", "aspect_ratio": "landscape"}

    result = await orchestrator.submit("user_1", VendorTool.VEO3, params)

    generation = await get_generation(result.generation_id)
    assert orchestrator.quote(VendorTool.VEO3, params) == result.credits_used == 35
    assert orchestrator.quote_stored(generation) == 35


@pytest.mark.asyncio
async def test_submit_insufficient_credits_creates_nothing(
    orchestrator, vendor, make_account, uow_factory
):
    await make_account(subscription=10)

    with pytest.raises(InsufficientCredits):
        await orchestrator.submit("user_1", "sora2", {"prompt": "a cat", "seconds": 12})

    assert vendor.requests == []
    async with await uow_factory() as uow:
        assert await uow.generations.list_for_owner("user_1") == []


@pytest.mark.asyncio
async def test_submit_invalid_params_charges_nothing(orchestrator, make_account, get_account):
    await make_account(subscription=50)

    with pytest.raises(InvalidGenerationRequest):
        await orchestrator.submit("user_1", "sora2", {"prompt": "", "seconds": 12})

    assert (await get_account()).subscription_credits == 50


@pytest.mark.asyncio
async def test_submit_unknown_tool(orchestrator, make_account):
    await make_account()

    with pytest.raises(UnknownTool):
        await orchestrator.submit("user_1", "dalle", {"prompt": "a cat"})


@pytest.mark.asyncio
async def test_vendor_rejection_refunds(
    orchestrator, vendor, make_account, get_account, get_generation, uow_factory
):
    """Test a dispatch the vendor declines.

    Scenario:
    1. Vendor answers the create call with 400
    2. submit raises GenerationFailed carrying the generation id
    3. Generation is failed with the vendor message and refunded exactly once
    4. Balance is back to the starting value
    """
    await make_account(subscription=5, extras=20)
    vendor.on("POST", VIDEOS, status_code=400, json={"error": {"message": "prompt blocked"}})

    with pytest.raises(GenerationFailed) as exc_info:
        await orchestrator.submit("user_1", "sora2", {"prompt": "a cat", "seconds": 12})

    generation = await get_generation(exc_info.value.generation_id)
    assert generation.status == GenerationStatus.FAILED
    assert generation.last_error == "prompt blocked"
    assert generation.refunded_at is not None

    account = await get_account()
    assert (account.subscription_credits, account.extra_credits) == (5, 20)

    async with await uow_factory() as uow:
        entries = await uow.credit_transactions.list_for_generation(generation.id)
    assert sorted(e.kind for e in entries) == [
        CreditTransactionKind.DEDUCT,
        CreditTransactionKind.REFUND,
    ]


@pytest.mark.asyncio
async def test_vendor_outage_on_create_refunds(orchestrator, vendor, make_account, get_account):
    await make_account(subscription=30)
    vendor.on("POST", VIDEOS, status_code=503, json={"message": "maintenance"})

    with pytest.raises(GenerationFailed):
        await orchestrator.submit("user_1", "sora2", {"prompt": "a cat"})

    assert (await get_account()).subscription_credits == 30
    assert len(vendor.calls("POST", VIDEOS)) == 1


@pytest.mark.asyncio
async def test_inline_media_never_persisted(
    orchestrator, vendor, make_account, blob_store, get_generation
):
    """Inline uploads are hosted before dispatch; only URLs reach the database."""
    await make_account()
    vendor.on("POST", f"{NEWPORTAI}/async/lipsync", json={"code": 0, "data": {"taskId": "t1"}})
    audio = wav_data_url(6)

    result = await orchestrator.submit(
        "user_1",
        "lipsync",
        {
            "video": "https://media.example.com/face.mp4",
            "audio": audio,
            "audio_duration_seconds": 6,
        },
    )

    generation = await get_generation(result.generation_id)
    stored_audio = generation.request_parameters["audio"]
    assert stored_audio.startswith(f"{BLOB_PUBLIC_URL}/inputs/user_1/{generation.id}/audio")
    assert "base64" not in json.dumps(generation.request_parameters)
    assert any(key.startswith("inputs/user_1/") for key in blob_store.objects)

    create_body = json.loads(vendor.calls("POST", f"{NEWPORTAI}/async/lipsync")[0].content)
    assert create_body["audioUrl"] == stored_audio
    assert orchestrator.quote_stored(generation) == result.credits_used == 6


@pytest.mark.asyncio
async def test_understated_audio_duration_rejected(orchestrator, vendor, make_account, get_account):
    """Test that a stated duration cannot undercut the real track length.

    Scenario:
    1. Account holds 400 credits
    2. Submit a five minute track declared as 0.01 seconds
    3. The request is rejected before any charge or vendor call
    """
    await make_account(subscription=400)

    with pytest.raises(InvalidGenerationRequest, match="audio_duration_seconds"):
        await orchestrator.submit(
            "user_1",
            "lipsync",
            {
                "video": "https://media.example.com/face.mp4",
                "audio": wav_data_url(300),
                "audio_duration_seconds": 0.01,
            },
        )

    assert (await get_account()).subscription_credits == 400
    assert vendor.requests == []


@pytest.mark.asyncio
async def test_audio_priced_from_measured_length(
    orchestrator, vendor, make_account, get_account, get_generation
):
    """Test that an undeclared duration is measured from the downloaded track.

    Scenario:
    1. InfiniteTalk audio is an https URL serving a 3.2 second WAV
    2. Submit without audio_duration_seconds
    3. 26 credits are charged (3.2s at 8 credits per second, rounded up)
    4. The measured length is stored, so the stored quote matches the charge
    """
    await make_account(subscription=100)
    vendor.on(
        "GET",
        "https://media.example.com/voice.wav",
        content=wav_bytes(3.2),
        headers={"content-type": "audio/wav"},
    )
    vendor.on(
        "POST",
        f"{WAVESPEED}/wavespeed-ai/wan-2.2/speech-to-video",
        json={"code": 200, "data": {"id": "pred_1"}},
    )

    result = await orchestrator.submit(
        "user_1",
        "infinitetalk",
        {
            "image": "https://media.example.com/face.png",
            "audio": "https://media.example.com/voice.wav",
        },
    )

    assert result.credits_used == 26
    assert (await get_account()).subscription_credits == 74
    generation = await get_generation(result.generation_id)
    assert generation.request_parameters["audio_duration_seconds"] == 3.2
    assert orchestrator.quote_stored(generation) == 26


@pytest.mark.asyncio
async def test_unreadable_audio_rejected(orchestrator, vendor, make_account, get_account):
    await make_account(subscription=50)
    garbage = f"data:audio/mpeg;base64,{base64.b64encode(b'not really audio').decode()}"

    with pytest.raises(InvalidGenerationRequest, match="audio"):
        await orchestrator.submit(
            "user_1",
            "lipsync",
            {"video": "https://media.example.com/face.mp4", "audio": garbage},
        )

    assert (await get_account()).subscription_credits == 50
    assert vendor.requests == []


@pytest.mark.asyncio
async def test_concurrent_submits_charge_once(
    orchestrator, vendor, make_account, get_account, uow_factory
):
    """Test simultaneous submits against a balance that funds only one.

    Scenario:
    1. Account holds 15 credits
    2. Four 12 second videos are submitted at once
    3. Exactly one is accepted, the other three fail with InsufficientCredits
    4. One deduction is journaled and 3 credits remain
    """
    await make_account(subscription=15)
    vendor.on("POST", VIDEOS, json={"id": "video_race"})

    results = await asyncio.gather(
        *(
            orchestrator.submit("user_1", "sora2", {"prompt": f"cat {i}", "seconds": 12})
            for i in range(4)
        ),
        return_exceptions=True,
    )

    accepted = [r for r in results if isinstance(r, SubmitResult)]
    rejected = [r for r in results if isinstance(r, InsufficientCredits)]
    assert len(accepted) == 1
    assert len(rejected) == 3
    assert (await get_account()).subscription_credits == 3
    assert len(vendor.calls("POST", VIDEOS)) == 1

    async with await uow_factory() as uow:
        entries = await uow.credit_transactions.list_for_generation(accepted[0].generation_id)
        generations = await uow.generations.list_for_owner("user_1")
    assert [e.kind for e in entries] == [CreditTransactionKind.DEDUCT]
    assert len(generations) == 1


@pytest.mark.asyncio
async def test_sweep_during_dispatch_refunds_once(
    orchestrator, vendor, make_account, get_account, get_generation, uow_factory, monkeypatch
):
    """Test a sweep timing out a generation while its create call is in flight.

    Scenario:
    1. Submit a 12 second video
    2. While the vendor create call runs, a sweep finds the pending row stale and fails it
    3. The create call then returns a task id
    4. submit raises GenerationFailed; the row stays failed with one refund
    """
    await make_account(subscription=20)
    adapter = orchestrator.adapters[VendorTool.SORA2]

    async def create_task_overtaken_by_sweep(params, context):
        async with await uow_factory() as uow:
            pending = await uow.generations.get_by_id(context.generation_id)
        assert pending.status == GenerationStatus.PENDING
        outcome = await orchestrator.reconcile_generation(
            pending, now=utcnow() + timedelta(days=1)
        )
        assert outcome == "timed_out"
        return "video_late"

    monkeypatch.setattr(adapter, "create_task", create_task_overtaken_by_sweep)

    with pytest.raises(GenerationFailed) as exc_info:
        await orchestrator.submit("user_1", "sora2", {"prompt": "a cat", "seconds": 12})

    generation = await get_generation(exc_info.value.generation_id)
    assert generation.status == GenerationStatus.FAILED
    assert generation.external_task_handle is None
    assert generation.refunded_at is not None
    assert (await get_account()).subscription_credits == 20

    async with await uow_factory() as uow:
        entries = await uow.credit_transactions.list_for_generation(generation.id)
    assert sorted(e.kind for e in entries) == [
        CreditTransactionKind.DEDUCT,
        CreditTransactionKind.REFUND,
    ]


@pytest.mark.asyncio
async def test_submit_from_reservation(
    orchestrator, vendor, make_account, get_account, get_generation, uow_factory
):
    """Test generations funded by a batch reservation.

    Scenario:
    1. Reserve 30 credits
    2. Submit two 12 second videos against the reservation
    3. A third submission exceeds what is left and is rejected
    4. The live balance only moved once, at reservation time
    """
    await make_account(subscription=100)
    vendor.on("POST", VIDEOS, json={"id": "video_batch"})
    async with await uow_factory() as uow:
        reservation = await orchestrator.ledger.reserve(uow, "user_1", 30, reason="batch")

    first = await orchestrator.submit(
        "user_1", "sora2", {"prompt": "a", "seconds": 12}, reservation_id=reservation.id
    )
    await orchestrator.submit(
        "user_1", "sora2", {"prompt": "b", "seconds": 12}, reservation_id=reservation.id
    )
    with pytest.raises(InvalidReservation):
        await orchestrator.submit(
            "user_1", "sora2", {"prompt": "c", "seconds": 12}, reservation_id=reservation.id
        )

    assert (await get_account()).subscription_credits == 70
    generation = await get_generation(first.generation_id)
    assert generation.reservation_id == reservation.id
    assert generation.debited_subscription == 12


@pytest.mark.asyncio
async def test_reservation_of_another_account_rejected(orchestrator, make_account, uow_factory):
    await make_account("user_1")
    await make_account("user_2")
    async with await uow_factory() as uow:
        reservation = await orchestrator.ledger.reserve(uow, "user_1", 30, reason="batch")

    with pytest.raises(InvalidReservation):
        await orchestrator.submit(
            "user_2", "sora2", {"prompt": "a", "seconds": 5}, reservation_id=reservation.id
        )


@pytest.mark.asyncio
async def test_delete_generation(orchestrator, make_account, make_generation, get_generation):
    await make_account()
    failed = await make_generation(status=GenerationStatus.FAILED)
    running = await make_generation(status=GenerationStatus.PROCESSING)

    await orchestrator.delete_generation("user_1", failed.id)
    assert await get_generation(failed.id) is None

    with pytest.raises(GenerationInFlight):
        await orchestrator.delete_generation("user_1", running.id)
    with pytest.raises(GenerationNotFound):
        await orchestrator.delete_generation("user_2", running.id)
