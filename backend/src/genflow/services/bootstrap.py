"""Construction of the service graph from settings.

Shared by the FastAPI lifespan and the CLI so both run the same sweep with
the same adapters.
"""

import httpx

from genflow.core.config import Settings
from genflow.services.generation.orchestrator import GenerationOrchestrator, UowFactory
from genflow.services.ledger import CreditLedger
from genflow.services.storage.blob_store import BlobStore, S3BlobStore
from genflow.services.storage.materializer import ResultMaterializer
from genflow.services.vendors.registry import build_adapters


def create_blob_store(settings: Settings) -> BlobStore:
    return S3BlobStore(
        bucket=settings.blob_bucket,
        endpoint_url=settings.blob_endpoint_url or None,
        access_key_id=settings.blob_access_key_id,
        secret_access_key=settings.blob_secret_access_key,
        region=settings.blob_region,
        public_base_url=settings.blob_public_url,
    )


def create_ledger(settings: Settings) -> CreditLedger:
    return CreditLedger(
        max_cas_attempts=settings.ledger_max_cas_attempts,
        reservation_ttl_seconds=settings.reservation_ttl_seconds,
    )


def create_orchestrator(
    settings: Settings,
    uow_factory: UowFactory,
    blob_store: BlobStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GenerationOrchestrator:
    """Wire ledger, adapters and materializer into an orchestrator.

    Args:
        settings: Application settings
        uow_factory: Factory producing UnitOfWork instances
        blob_store: Storage override (defaults to the configured S3 bucket)
        transport: Optional httpx transport for every outbound call (tests)
    """
    blob_store = blob_store or create_blob_store(settings)
    materializer = ResultMaterializer(
        blob_store,
        max_bytes=settings.max_artifact_bytes,
        timeout=settings.transfer_timeout_seconds,
        transport=transport,
    )
    return GenerationOrchestrator(
        uow_factory=uow_factory,
        ledger=create_ledger(settings),
        adapters=build_adapters(settings, blob_store, transport=transport),
        materializer=materializer,
        stale_timeout_seconds=settings.stale_timeout_seconds,
    )
