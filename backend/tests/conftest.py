"""pytest fixtures for genflow backend tests.

Provides:
- engine: Function-scoped file-backed SQLite database with all tables created
- session_factory / uow_factory: Session and UnitOfWork factories on that database
- blob_store: In-memory BlobStore double
- vendor: Stubbed vendor HTTP endpoints (httpx.MockTransport)
- settings / orchestrator: Service graph wired to the doubles above
- make_account / make_generation: Row factories
"""

import os

# Settings are read at import time by genflow.app
os.environ["APP_ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./genflow-test.db")
os.environ["TZ"] = "UTC"

import base64  # noqa: E402
import io  # noqa: E402
import wave  # noqa: E402
from collections import defaultdict  # noqa: E402
from datetime import timedelta  # noqa: E402
from typing import Any, BinaryIO, Callable  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import genflow.models  # noqa: E402, F401
from genflow.core.config import Settings  # noqa: E402
from genflow.core.timezone import utcnow  # noqa: E402
from genflow.models.account import Account  # noqa: E402
from genflow.models.generation import Generation, GenerationStatus, VendorTool  # noqa: E402
from genflow.services.bootstrap import create_orchestrator  # noqa: E402
from genflow.services.exceptions import BlobStoreError  # noqa: E402
from genflow.services.storage.blob_store import BlobStore  # noqa: E402
from genflow.uow import create_uow_factory  # noqa: E402

BLOB_PUBLIC_URL = "https://cdn.genflow.test"
LAOZHANG = "https://api.laozhang.ai"
NEWPORTAI = "https://api.newportai.com/api"
WAVESPEED = "https://api.wavespeed.ai/api/v3"


def wav_bytes(seconds: float, framerate: int = 1000) -> bytes:
    """Silent mono 8-bit WAV of the given length."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(1)
        wav.setframerate(framerate)
        wav.writeframes(b"\x80" * int(seconds * framerate))
    return buffer.getvalue()


def wav_data_url(seconds: float) -> str:
    return f"data:audio/wav;base64,{base64.b64encode(wav_bytes(seconds)).decode()}"


class InMemoryBlobStore(BlobStore):
    """BlobStore keeping objects in a dict. Set fail_writes to simulate an outage."""

    def __init__(self, public_base_url: str = BLOB_PUBLIC_URL):
        super().__init__(public_base_url)
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_writes = False

    async def put_file(self, key: str, fileobj: BinaryIO, content_type: str) -> str:
        if self.fail_writes:
            raise BlobStoreError(f"Upload of {key} failed: bucket unavailable")
        self.objects[key] = (fileobj.read(), content_type)
        return self.public_url(key)


class VendorStub:
    """Scripted HTTP endpoints served through httpx.MockTransport.

    Each route holds a queue of responses; the last one repeats. A queued
    item is either response kwargs for httpx.Response, an exception to raise,
    or a callable taking the request.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[Any]] = defaultdict(list)
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handler)

    @staticmethod
    def _key(method: str, url: httpx.URL | str) -> tuple[str, str]:
        url = httpx.URL(url)
        return method.upper(), f"{url.host}{url.path}"

    def on(self, method: str, url: str, status_code: int = 200, **kwargs: Any) -> "VendorStub":
        self.routes[self._key(method, url)].append({"status_code": status_code, **kwargs})
        return self

    def raise_on(self, method: str, url: str, exc: Exception) -> "VendorStub":
        self.routes[self._key(method, url)].append(exc)
        return self

    def respond_with(self, method: str, url: str, func: Callable) -> "VendorStub":
        self.routes[self._key(method, url)].append(func)
        return self

    def calls(self, method: str, url: str) -> list[httpx.Request]:
        key = self._key(method, url)
        return [r for r in self.requests if self._key(r.method, r.url) == key]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(self._key(request.method, request.url))
        if not queue:
            return httpx.Response(404, json={"error": f"no stub for {request.url}"})

        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return httpx.Response(**item)


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Provide a file-backed SQLite database with all tables created.

    Transactions start with BEGIN IMMEDIATE so concurrent units of work
    serialize on the write lock, as conditional updates do on PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'genflow.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def vendor():
    return VendorStub()


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        APP_ENV="test",
        LAOZHANG_API_KEY="lz-test",
        NEWPORTAI_API_KEY="np-test",
        WAVESPEED_API_KEY="ws-test",
        BLOB_PUBLIC_URL=BLOB_PUBLIC_URL,
        CRON_SECRET="cron-test-secret",
        VENDOR_RETRY_INITIAL_DELAY=0,
        VENDOR_RETRY_MAX_DELAY=0,
        ALLOWED_MEDIA_DOMAINS="supabase.co,media.example.com",
        RUN_BACKGROUND_SWEEPER=False,
    )


@pytest.fixture
def orchestrator(settings, uow_factory, blob_store, vendor):
    return create_orchestrator(
        settings, uow_factory, blob_store=blob_store, transport=vendor.transport
    )


@pytest.fixture
def make_account(uow_factory):
    """Factory creating an account row and returning it detached."""

    async def _make(
        account_id: str = "user_1",
        subscription: int = 100,
        extras: int = 0,
        status: str | None = "active",
    ) -> Account:
        async with await uow_factory() as uow:
            return await uow.accounts.add(
                Account(
                    id=account_id,
                    subscription_credits=subscription,
                    extra_credits=extras,
                    subscription_status=status,
                )
            )

    return _make


@pytest.fixture
def make_generation(uow_factory):
    """Factory creating a generation row directly, bypassing dispatch."""

    async def _make(
        owner_id: str = "user_1",
        tool: VendorTool = VendorTool.SORA2,
        status: GenerationStatus = GenerationStatus.PROCESSING,
        task_handle: str | None = "video_123",
        credits_used: int = 15,
        debited_subscription: int | None = None,
        debited_extras: int | None = None,
        age: timedelta = timedelta(minutes=1),
        request_parameters: dict | None = None,
        split_known: bool = True,
        **fields: Any,
    ) -> Generation:
        created_at = utcnow() - age
        if split_known and debited_subscription is None and debited_extras is None:
            debited_subscription, debited_extras = credits_used, 0
        generation = Generation(
            owner_id=owner_id,
            tool=tool,
            status=status,
            external_task_handle=task_handle,
            credits_used=credits_used,
            debited_subscription=debited_subscription,
            debited_extras=debited_extras,
            request_parameters=request_parameters or {"prompt": "a cat", "seconds": 15},
            created_at=created_at,
            updated_at=created_at,
            **fields,
        )
        async with await uow_factory() as uow:
            return await uow.generations.add(generation)

    return _make


@pytest.fixture
def get_account(uow_factory):
    async def _get(account_id: str = "user_1") -> Account:
        async with await uow_factory() as uow:
            account = await uow.accounts.get_by_id(account_id)
        assert account is not None
        return account

    return _get


@pytest.fixture
def get_generation(uow_factory):
    async def _get(generation_id) -> Generation | None:
        async with await uow_factory() as uow:
            return await uow.generations.get_by_id(generation_id)

    return _get
