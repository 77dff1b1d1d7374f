"""Adapter registry: one configured VendorAdapter per tool."""

import httpx

from genflow.core.config import Settings
from genflow.models.generation import VendorTool
from genflow.services.storage.blob_store import BlobStore
from genflow.services.vendors.base import RetryPolicy, VendorAdapter
from genflow.services.vendors.laozhang import NanoBananaAdapter, Sora2Adapter, Veo3Adapter
from genflow.services.vendors.newportai import LipSyncAdapter
from genflow.services.vendors.params import MediaPolicy
from genflow.services.vendors.wavespeed import InfiniteTalkAdapter


def media_policy_from_settings(settings: Settings, blob_store: BlobStore) -> MediaPolicy:
    """Allowed caller media hosts always include our own blob store."""
    domains = list(settings.allowed_media_domains_list)
    if blob_store.public_host and blob_store.public_host not in domains:
        domains.append(blob_store.public_host)
    return MediaPolicy(allowed_domains=domains, max_inline_bytes=settings.max_inline_media_bytes)


def build_adapters(
    settings: Settings,
    blob_store: BlobStore,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[VendorTool, VendorAdapter]:
    """Create every tool adapter from settings.

    Args:
        settings: Application settings (credentials, prices, timeouts)
        blob_store: Storage for hosted inputs and synchronous results
        transport: Optional httpx transport shared by all adapters (tests)
    """
    common = {
        "blob_store": blob_store,
        "media_policy": media_policy_from_settings(settings, blob_store),
        "timeout": settings.control_timeout_seconds,
        "retry_policy": RetryPolicy(
            max_attempts=settings.vendor_max_attempts,
            initial_delay=settings.vendor_retry_initial_delay,
            max_delay=settings.vendor_retry_max_delay,
        ),
        "transport": transport,
    }
    laozhang = {"api_key": settings.laozhang_api_key, "base_url": settings.laozhang_base_url}

    adapters: list[VendorAdapter] = [
        Sora2Adapter(
            **laozhang, **common, credits_per_second=settings.sora2_credits_per_second
        ),
        Veo3Adapter(
            **laozhang,
            **common,
            credits_fast=settings.veo3_credits_fast,
            credits_standard=settings.veo3_credits_standard,
        ),
        NanoBananaAdapter(
            **laozhang,
            **common,
            credits=settings.nanobanana_credits,
            generation_timeout=settings.transfer_timeout_seconds,
        ),
        LipSyncAdapter(
            api_key=settings.newportai_api_key,
            base_url=settings.newportai_base_url,
            **common,
            credits_per_second=settings.lipsync_credits_per_second,
        ),
        InfiniteTalkAdapter(
            api_key=settings.wavespeed_api_key,
            base_url=settings.wavespeed_base_url,
            **common,
            credits_per_second=settings.infinitetalk_credits_per_second,
        ),
    ]
    return {adapter.tool: adapter for adapter in adapters}
