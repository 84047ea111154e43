from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from studio.services.fal_client import FalClient, FalError
from studio.services.gemini_client import GeminiClient
from studio.services.provider import (
    POLL_COMPLETED,
    POLL_FAILED,
    POLL_PROCESSING,
    POLL_QUEUED,
    AsyncHandle,
    GenerationRequest,
    PollStatus,
    ProviderAdapter,
    ProviderOutput,
    SyncResult,
)
from studio.utils.logging import get_logger


logger = get_logger('adapters')

FAL_QUEUED = {'IN_QUEUE'}
FAL_RUNNING = {'IN_PROGRESS'}
FAL_DONE = {'COMPLETED', 'OK'}
FAL_FAILED = {'ERROR', 'FAILED', 'CANCELLED'}


class FalSyncAdapter:
    """Blocking ``fal.run`` call; the result arrives in the same response."""

    name = 'fal_sync'
    is_async = False

    def __init__(self, fal: FalClient) -> None:
        self.fal = fal

    async def submit(self, request: GenerationRequest) -> SyncResult:
        record = await self.fal.run(request.endpoint, request.build_input())
        urls = self.fal.parse_result_urls(record)
        if not urls:
            raise FalError('FAL returned no outputs')
        return SyncResult(outputs=[ProviderOutput(url=url) for url in urls])

    async def poll_status(self, handle: AsyncHandle) -> PollStatus:
        raise NotImplementedError('synchronous adapter has nothing to poll')

    async def close(self) -> None:
        await self.fal.close()


class FalQueueAdapter:
    name = 'fal_queue'
    is_async = True
    media_type = 'image'

    def __init__(self, fal: FalClient) -> None:
        self.fal = fal

    async def submit(self, request: GenerationRequest) -> AsyncHandle:
        record = await self.fal.submit(request.endpoint, request.build_input())
        request_id = self.fal.extract_request_id(record)
        if not request_id:
            raise FalError('FAL queue response has no request_id')
        return AsyncHandle(
            request_id=request_id,
            endpoint=request.endpoint,
            position=self.fal.get_queue_position(record),
        )

    def _outputs(self, record: Dict[str, Any]) -> List[str]:
        return self.fal.parse_result_urls(record)

    async def poll_status(self, handle: AsyncHandle) -> PollStatus:
        record = await self.fal.get_status(handle.endpoint, handle.request_id)
        status = self.fal.get_status_value(record)
        if status in FAL_QUEUED:
            return PollStatus(POLL_QUEUED, position=self.fal.get_queue_position(record))
        if status in FAL_RUNNING:
            return PollStatus(POLL_PROCESSING)
        if status in FAL_FAILED:
            return PollStatus(POLL_FAILED, error=str(record.get('error') or 'Generation failed'))
        if status not in FAL_DONE:
            logger.warning('fal_unknown_status', request_id=handle.request_id, status=status)
            return PollStatus(POLL_PROCESSING)

        try:
            result = await self.fal.get_result(handle.endpoint, handle.request_id)
        except FalError as exc:
            # A completed request whose result fetch is a 4xx failed on the provider side.
            if exc.status_code is not None and 400 <= exc.status_code < 500 and exc.status_code != 429:
                return PollStatus(POLL_FAILED, error=str(exc), error_code=exc.kind)
            raise
        return self._completed(result)

    def _completed(self, record: Dict[str, Any]) -> PollStatus:
        urls = self._outputs(record)
        if not urls:
            return PollStatus(POLL_FAILED, error='Provider returned no outputs')
        return PollStatus(POLL_COMPLETED, result_urls=urls)

    async def close(self) -> None:
        await self.fal.close()


class FalVideoAdapter(FalQueueAdapter):
    name = 'fal_video'
    media_type = 'video'

    def _outputs(self, record: Dict[str, Any]) -> List[str]:
        video = record.get('video')
        if isinstance(video, dict) and video.get('url'):
            return [str(video['url'])]
        return self.fal.parse_result_urls(record)


class GeminiAdapter:
    """Direct generateContent call; images come back inline as base64."""

    name = 'gemini'
    is_async = False

    def __init__(self, gemini: GeminiClient) -> None:
        self.gemini = gemini

    async def submit(self, request: GenerationRequest) -> SyncResult:
        payload = request.build_input()
        refs = payload.get('reference_urls') or []
        images = list(await asyncio.gather(*(self.gemini.fetch_image(url) for url in refs)))
        record = await self.gemini.generate_content(request.model.model_id, payload['prompt'], images)
        outputs = [
            ProviderOutput(data=data, content_type=mime_type)
            for data, mime_type in self.gemini.extract_images(record)
        ]
        return SyncResult(outputs=outputs)

    async def poll_status(self, handle: AsyncHandle) -> PollStatus:
        raise NotImplementedError('synchronous adapter has nothing to poll')

    async def close(self) -> None:
        await self.gemini.close()


def build_adapters(fal: FalClient | None = None, gemini: GeminiClient | None = None) -> Dict[str, ProviderAdapter]:
    fal = fal or FalClient()
    gemini = gemini or GeminiClient()
    adapters: List[ProviderAdapter] = [
        FalSyncAdapter(fal),
        FalQueueAdapter(fal),
        FalVideoAdapter(fal),
        GeminiAdapter(gemini),
    ]
    return {adapter.name: adapter for adapter in adapters}


async def close_adapters(adapters: Dict[str, ProviderAdapter]) -> None:
    # FAL adapters share one client; close each client once.
    seen: set[int] = set()
    for adapter in adapters.values():
        client = getattr(adapter, 'fal', None) or getattr(adapter, 'gemini', None)
        if client is None or id(client) in seen:
            continue
        seen.add(id(client))
        await adapter.close()
