from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from studio.config import Settings, get_settings
from studio.services.errors import ProviderTimeout, ProviderUnavailable
from studio.services.jobs import JobStore
from studio.services.provider import POLL_FAILED, PollStatus, map_provider_error
from studio.utils.logging import get_logger
from studio.utils.time import as_utc, utcnow

if TYPE_CHECKING:
    from studio.services.generation import GenerationService


logger = get_logger('poller')


class PollManager:
    """Drives outstanding provider handles to a terminal state.

    The timeout ceiling is measured from the job's durable ``started_at`` so
    a restart or a reload never extends it.
    """

    def __init__(self, generation: 'GenerationService', settings: Settings | None = None) -> None:
        self.generation = generation
        self.settings = settings or get_settings()
        self.global_sem = asyncio.Semaphore(self.settings.global_max_poll_concurrency)
        self._inflight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    async def restore_pending(self) -> None:
        await self.generation.expire_stale()
        async with self.generation.sessionmaker() as session:
            ids = await JobStore(session).list_pending_handles()
        for job_id in ids:
            self.schedule(job_id)
        logger.info('poll_restored', jobs=len(ids))

    def schedule(self, job_id: str) -> None:
        if job_id in self._inflight:
            return
        self._inflight.add(job_id)
        task = asyncio.create_task(self._poll_job(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def watch_pending(self, interval: Optional[int] = None) -> None:
        interval = interval or self.settings.poll_watch_interval_seconds
        while True:
            try:
                await self.generation.expire_stale()
                async with self.generation.sessionmaker() as session:
                    ids = await JobStore(session).list_pending_handles()
                for job_id in ids:
                    self.schedule(job_id)
            except Exception as exc:
                logger.warning('poll_watch_failed', error=str(exc))
            await asyncio.sleep(interval)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _elapsed(self, job) -> float:
        started = as_utc(job.started_at or job.created_at)
        return (utcnow() - started).total_seconds()

    async def _poll_once(self, job):
        """One provider round trip under the global cap; None means try again later."""
        async with self.global_sem:
            try:
                status = await self.generation.poll_provider(job)
            except Exception as exc:
                error = map_provider_error(exc)
                if isinstance(error, (ProviderUnavailable, ProviderTimeout)):
                    logger.info('poll_transient_error', job_id=job.id, error=str(exc))
                    return None
                logger.warning('poll_failed', job_id=job.id, error=str(exc), error_code=error.code)
                await self.generation.settle_async_failure(job.id, error, str(exc))
                return PollStatus(POLL_FAILED, error=str(exc), error_code=error.code)
            await self.generation.apply_poll_status(job.id, status)
            return status

    async def _poll_job(self, job_id: str) -> None:
        try:
            backoffs = self.settings.poll_backoff_list()
            max_wait = self.settings.poll_max_wait_seconds
            index = 0

            while True:
                job = await self.generation.load_job(job_id)
                if job is None or job.settled_at is not None or job.is_terminal:
                    return
                if not job.provider_request_id:
                    # Synchronous jobs settle inline; stale expiry covers crashes.
                    return
                elapsed = self._elapsed(job)
                if elapsed >= max_wait:
                    # Last look before giving up; the provider may have finished meanwhile.
                    status = await self._poll_once(job)
                    if status is None or not status.is_terminal:
                        await self.generation.expire_job(job_id, f'No result after {max_wait} seconds')
                    return

                wait_s = backoffs[min(index, len(backoffs) - 1)]
                await asyncio.sleep(min(wait_s, max(0.0, max_wait - elapsed)))
                index += 1

                status = await self._poll_once(job)
                if status is not None and status.is_terminal:
                    return
        except Exception as exc:
            logger.exception('poll_job_crashed', job_id=job_id, error=str(exc))
        finally:
            self._inflight.discard(job_id)
