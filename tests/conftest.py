from __future__ import annotations

import os

os.environ.setdefault('DATABASE_URL', 'sqlite+aiosqlite:///:memory:')

from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from studio.config import get_settings
from studio.db.base import Base
from studio.services.generation import GenerationService
from studio.services.poller_runtime import set_poller
from studio.services.provider import (
    POLL_PROCESSING,
    AsyncHandle,
    GenerationRequest,
    PollStatus,
    ProviderOutput,
    SyncResult,
)
from studio.services.storage import AssetStorage


PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 32


class FakeSyncAdapter:
    is_async = False

    def __init__(self, name: str = 'fal_sync') -> None:
        self.name = name
        self.calls: List[GenerationRequest] = []
        self.outputs: List[ProviderOutput] = [ProviderOutput(url='https://provider.test/out/1.png')]
        self.error: Optional[BaseException] = None

    async def submit(self, request: GenerationRequest) -> SyncResult:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return SyncResult(outputs=list(self.outputs))

    async def poll_status(self, handle: AsyncHandle) -> PollStatus:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class FakeQueueAdapter:
    is_async = True

    def __init__(self, name: str = 'fal_queue') -> None:
        self.name = name
        self.calls: List[GenerationRequest] = []
        self.polls: List[AsyncHandle] = []
        self.statuses: List[PollStatus] = []
        self.error: Optional[BaseException] = None
        self.poll_error: Optional[BaseException] = None

    async def submit(self, request: GenerationRequest) -> AsyncHandle:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return AsyncHandle(request_id=f'req-{len(self.calls)}', endpoint=request.endpoint)

    async def poll_status(self, handle: AsyncHandle) -> PollStatus:
        self.polls.append(handle)
        if self.poll_error is not None:
            raise self.poll_error
        if self.statuses:
            return self.statuses.pop(0)
        return PollStatus(POLL_PROCESSING)

    async def close(self) -> None:
        return None


def asset_transport(request: httpx.Request) -> httpx.Response:
    if 'broken' in request.url.path:
        return httpx.Response(500, text='storage gone')
    return httpx.Response(200, content=PNG_BYTES, headers={'content-type': 'image/png'})


@pytest.fixture(autouse=True)
def reset_poller():
    yield
    set_poller(None)


@pytest.fixture
def settings(tmp_path):
    get_settings.cache_clear()
    return get_settings().model_copy(
        update={
            'asset_storage_path': str(tmp_path / 'assets'),
            'public_asset_base_url': 'https://cdn.test/assets',
            'poll_backoff_sequence': '0',
            'web_poll_enabled': False,
        }
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def storage(settings):
    storage = AssetStorage(
        base_path=settings.asset_storage_path,
        public_base_url=settings.public_asset_base_url,
        client=httpx.AsyncClient(transport=httpx.MockTransport(asset_transport)),
    )
    yield storage
    await storage.close()


@pytest.fixture
def sync_adapter() -> FakeSyncAdapter:
    return FakeSyncAdapter()


@pytest.fixture
def queue_adapter() -> FakeQueueAdapter:
    return FakeQueueAdapter()


@pytest.fixture
def adapters(sync_adapter, queue_adapter) -> Dict[str, Any]:
    return {
        'fal_sync': sync_adapter,
        'gemini': sync_adapter,
        'fal_queue': queue_adapter,
        'fal_video': queue_adapter,
    }


@pytest.fixture
def service(sessionmaker, adapters, storage, settings) -> GenerationService:
    return GenerationService(sessionmaker, adapters, storage, settings)
