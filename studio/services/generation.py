from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio.config import Settings, get_settings
from studio.db.models import JOB_COMPLETED, JOB_PROCESSING, JOB_QUEUED, GeneratedAsset, GenerationJob
from studio.modelspecs.base import ModelSpec
from studio.modelspecs.registry import get_model
from studio.services.errors import (
    GenerationError,
    InvalidRequest,
    JobNotFound,
    MaintenanceMode,
    PersistenceFailure,
    ProviderTimeout,
    TooManyActiveJobs,
    TrackingFailure,
    UnknownProviderError,
)
from studio.services.jobs import JobStore
from studio.services.poller_runtime import get_poller
from studio.services.pricing import PriceBreakdown, PricingError, PricingService
from studio.services.provider import (
    POLL_COMPLETED,
    POLL_FAILED,
    AsyncHandle,
    GenerationRequest,
    PollStatus,
    ProviderAdapter,
    ProviderOutput,
    SyncResult,
    failure_from_status,
    map_provider_error,
)
from studio.services.storage import AssetStorage
from studio.services.tickets import BalanceSnapshot, LedgerConflict, TicketLedger
from studio.utils.logging import get_logger
from studio.utils.text import clamp_text
from studio.utils.time import as_utc, utcnow


logger = get_logger('generation')


@dataclass
class GenerationOutcome:
    job_id: str
    status: str
    ticket_cost: int
    result_urls: List[str] = field(default_factory=list)
    request_id: Optional[str] = None
    balance: Optional[BalanceSnapshot] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'jobId': self.job_id,
            'status': self.status,
            'ticketCost': self.ticket_cost,
        }
        if self.result_urls:
            data['resultUrl'] = self.result_urls[0]
            data['resultUrls'] = list(self.result_urls)
        if self.request_id:
            data['requestId'] = self.request_id
        if self.balance is not None:
            data['balance'] = self.balance.as_dict()
        return data


@dataclass
class _Submission:
    job_id: str
    user_id: int
    model: ModelSpec
    prompt: str
    cost: int
    reference_urls: List[str]
    tracked: bool


class GenerationService:
    """Reserve, submit, settle.

    Every path that made a reservation ends in exactly one ``commit`` or
    ``release``. For tracked jobs that is enforced by claiming
    ``generation_jobs.settled_at`` in the same transaction as the ledger
    mutation; the ticket audit table's unique ``(job_id, operation)`` backs
    it up for the rare untracked synchronous job.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        adapters: Dict[str, ProviderAdapter],
        storage: AssetStorage,
        settings: Settings | None = None,
        pricing: PricingService | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.adapters = adapters
        self.storage = storage
        self.settings = settings or get_settings()
        self.pricing = pricing or PricingService()

    def _jobs(self, session: AsyncSession) -> JobStore:
        return JobStore(session, self.settings.error_message_max_length)

    def _model(self, model_key: str) -> ModelSpec:
        model = get_model(model_key)
        if model is None:
            raise InvalidRequest(f'Unknown model: {model_key}')
        return model

    def adapter_for(self, model: ModelSpec) -> ProviderAdapter:
        adapter = self.adapters.get(model.adapter)
        if adapter is None:
            raise InvalidRequest(f'Model {model.key} is not available')
        return adapter

    @staticmethod
    def _options_from(params: Dict[str, Any]) -> Dict[str, Any]:
        options = params.get('options')
        return options if isinstance(options, dict) else params

    def quote(self, model_key: str, params: Dict[str, Any] | None = None) -> PriceBreakdown:
        model = self._model(model_key)
        try:
            return self.pricing.resolve_cost(model, self._options_from(params or {}))
        except PricingError as exc:
            raise InvalidRequest(str(exc)) from exc

    def estimate_cost(self, model_key: str, params: Dict[str, Any] | None = None) -> int:
        return self.quote(model_key, params).total

    async def get_balance(self, user_id: int) -> BalanceSnapshot:
        async with self.sessionmaker() as session:
            return await TicketLedger(session).get_balance(user_id)

    async def grant_tickets(
        self,
        user_id: int,
        amount: int,
        reason: str = 'purchase',
        idempotency_key: str | None = None,
    ) -> BalanceSnapshot:
        async with self.sessionmaker() as session:
            ledger = TicketLedger(session)
            await ledger.grant(user_id, amount, reason, idempotency_key)
            await session.commit()
            return await ledger.get_balance(user_id)

    async def start_generation(
        self,
        user_id: int,
        model_key: str,
        prompt: str,
        params: Dict[str, Any] | None = None,
    ) -> GenerationOutcome:
        params = dict(params or {})
        if self.settings.generation_maintenance:
            raise MaintenanceMode()

        # PRICING
        model = self._model(model_key)
        adapter = self.adapter_for(model)
        prompt = (prompt or '').strip()
        if not prompt:
            raise InvalidRequest('Prompt is required')
        if len(prompt) > self.settings.max_prompt_length:
            raise InvalidRequest(f'Prompt is longer than {self.settings.max_prompt_length} characters')
        options = model.validate_options(self._options_from(params))
        raw_refs = params.get('reference_urls')
        if isinstance(raw_refs, str):
            raw_refs = [raw_refs]
        refs = model.limit_references(raw_refs)
        if model.requires_reference_images and not refs:
            raise InvalidRequest(f'{model.display_name} needs a reference image')
        extras = model.extract_extras(params)
        try:
            cost = self.pricing.resolve_cost(model, options).total
        except PricingError as exc:
            raise InvalidRequest(str(exc)) from exc
        job_id = str(uuid.uuid4())

        # RESERVING
        async with self.sessionmaker() as session:
            active = await self._jobs(session).count_active(user_id)
            if active >= self.settings.per_user_max_concurrent_jobs:
                raise TooManyActiveJobs(self.settings.per_user_max_concurrent_jobs)
            try:
                snapshot = await TicketLedger(session).reserve(user_id, cost, job_id)
            except GenerationError:
                await session.rollback()
                raise
            await session.commit()

        request = GenerationRequest(
            job_id=job_id,
            user_id=user_id,
            model=model,
            prompt=prompt,
            options=options,
            reference_urls=refs,
            extras=extras,
        )
        parameters: Dict[str, Any] = {'options': options, 'reference_urls': refs, **extras}
        tracked = await self._create_job(request, adapter, cost, parameters)
        sub = _Submission(job_id, user_id, model, prompt, cost, refs, tracked)

        if not tracked and adapter.is_async:
            # Without a durable record nothing could ever settle this job.
            error = TrackingFailure('Job tracking failed. Your tickets were not charged.')
            await self._settle_failure(sub, error)
            error.refunded = True
            raise error

        # SUBMITTING
        try:
            result = await adapter.submit(request)
        except Exception as exc:
            error = map_provider_error(exc)
            logger.warning(
                'provider_submit_failed',
                job_id=job_id,
                user_id=user_id,
                model=model.key,
                error=str(exc),
                error_code=error.code,
            )
            await self._settle_failure(sub, error, message=str(exc))
            error.refunded = True
            raise error from exc

        if isinstance(result, AsyncHandle):
            return await self._enter_pending(sub, result, snapshot)
        return await self._settle_sync(sub, result)

    async def _create_job(
        self,
        request: GenerationRequest,
        adapter: ProviderAdapter,
        cost: int,
        parameters: Dict[str, Any],
    ) -> bool:
        try:
            async with self.sessionmaker() as session:
                await self._jobs(session).create(
                    job_id=request.job_id,
                    user_id=request.user_id,
                    model_key=request.model.key,
                    model_type=request.model.model_type,
                    provider=request.model.provider,
                    prompt=request.prompt,
                    parameters=parameters,
                    ticket_cost=cost,
                    status=JOB_QUEUED if adapter.is_async else JOB_PROCESSING,
                    provider_endpoint=request.endpoint,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error('job_tracking_failed', job_id=request.job_id, user_id=request.user_id, error=str(exc))
            return False
        return True

    async def _enter_pending(
        self,
        sub: _Submission,
        handle: AsyncHandle,
        snapshot: BalanceSnapshot,
    ) -> GenerationOutcome:
        try:
            async with self.sessionmaker() as session:
                await self._jobs(session).attach_handle(sub.job_id, handle.request_id, handle.endpoint, handle.position)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                'job_handle_persist_failed',
                job_id=sub.job_id,
                request_id=handle.request_id,
                error=str(exc),
                provider_cost_incurred=True,
            )
            error = TrackingFailure('Job tracking failed. Your tickets were not charged.')
            await self._settle_failure(sub, error)
            error.refunded = True
            raise error from exc

        logger.info('generation_queued', job_id=sub.job_id, user_id=sub.user_id, request_id=handle.request_id)
        poller = get_poller()
        if poller is not None:
            poller.schedule(sub.job_id)
        return GenerationOutcome(
            job_id=sub.job_id,
            status=JOB_QUEUED,
            ticket_cost=sub.cost,
            request_id=handle.request_id,
            balance=snapshot,
        )

    async def _settle_sync(self, sub: _Submission, result: SyncResult) -> GenerationOutcome:
        try:
            assets = await self._persist_outputs(sub, result.outputs)
        except PersistenceFailure as exc:
            logger.error(
                'asset_persist_failed',
                job_id=sub.job_id,
                user_id=sub.user_id,
                model=sub.model.key,
                provider_cost_incurred=True,
            )
            await self._settle_failure(sub, exc)
            exc.refunded = True
            raise

        urls = [asset.url for asset in assets]
        settled = await self._settle_success(sub, assets)
        if not settled:
            # Either another path (stale expiry) settled first or the commit was rejected.
            self._discard(assets)
            job = await self.load_job(sub.job_id)
            if job is not None and job.status == JOB_COMPLETED:
                return GenerationOutcome(
                    job_id=sub.job_id,
                    status=JOB_COMPLETED,
                    ticket_cost=sub.cost,
                    result_urls=list(job.result_urls or []),
                    balance=await self.get_balance(sub.user_id),
                )
            if job is not None and job.settled_at is not None:
                if job.error_code == ProviderTimeout.code:
                    raise ProviderTimeout(job.error_message, refunded=True)
                raise UnknownProviderError(job.error_message, refunded=True)
            # Nothing settled the job: the commit itself was rejected and rolled back.
            error = UnknownProviderError()
            error.refunded = await self._settle_failure(sub, error)
            raise error
        logger.info('generation_completed', job_id=sub.job_id, user_id=sub.user_id, assets=len(assets))
        return GenerationOutcome(
            job_id=sub.job_id,
            status=JOB_COMPLETED,
            ticket_cost=sub.cost,
            result_urls=urls,
            balance=await self.get_balance(sub.user_id),
        )

    async def _persist_outputs(self, sub: _Submission, outputs: List[ProviderOutput]) -> List[GeneratedAsset]:
        now = utcnow()
        expires_at = now + timedelta(days=self.settings.asset_retention_days)
        assets: List[GeneratedAsset] = []
        for output in outputs:
            try:
                stored = await self.storage.store(sub.user_id, output)
            except Exception as exc:
                logger.warning('asset_store_failed', job_id=sub.job_id, url=output.url, error=str(exc))
                continue
            assets.append(
                GeneratedAsset(
                    user_id=sub.user_id,
                    job_id=sub.job_id if sub.tracked else None,
                    model_key=sub.model.key,
                    media_type=stored.media_type,
                    prompt=sub.prompt,
                    url=stored.url,
                    storage_key=stored.storage_key,
                    # Siblings of a multi-output job carry no cost.
                    ticket_cost=sub.cost if not assets else 0,
                    reference_urls=list(sub.reference_urls),
                    created_at=now,
                    expires_at=expires_at,
                )
            )
        if not assets:
            raise PersistenceFailure()
        return assets

    def _discard(self, assets: List[GeneratedAsset]) -> None:
        for asset in assets:
            self.storage.remove(asset.storage_key)

    async def _settle_success(self, sub: _Submission, assets: List[GeneratedAsset]) -> bool:
        async with self.sessionmaker() as session:
            jobs = self._jobs(session)
            try:
                if sub.tracked and not await jobs.claim_settlement(sub.job_id):
                    await session.rollback()
                    logger.info('settlement_skipped', job_id=sub.job_id, outcome='completed')
                    return False
                await TicketLedger(session).commit(sub.user_id, sub.cost, sub.job_id)
                session.add_all(assets)
                if sub.tracked:
                    await jobs.mark_completed(sub.job_id, [asset.url for asset in assets])
                await session.commit()
            except (LedgerConflict, IntegrityError) as exc:
                await session.rollback()
                logger.error('settlement_conflict', job_id=sub.job_id, outcome='completed', error=str(exc))
                return False
        return True

    async def _settle_failure(self, sub: _Submission, error: GenerationError, message: str | None = None) -> bool:
        message = clamp_text(message or str(error), self.settings.error_message_max_length)
        async with self.sessionmaker() as session:
            jobs = self._jobs(session)
            try:
                if sub.tracked and not await jobs.claim_settlement(sub.job_id):
                    await session.rollback()
                    logger.info('settlement_skipped', job_id=sub.job_id, outcome='failed')
                    return False
                await TicketLedger(session).release(sub.user_id, sub.cost, sub.job_id)
                if sub.tracked:
                    await jobs.mark_failed(sub.job_id, message, error.code)
                await session.commit()
            except (LedgerConflict, IntegrityError) as exc:
                await session.rollback()
                logger.error('settlement_conflict', job_id=sub.job_id, outcome='failed', error=str(exc))
                return False
        logger.info('generation_refunded', job_id=sub.job_id, user_id=sub.user_id, error_code=error.code)
        return True

    async def load_job(self, job_id: str) -> Optional[GenerationJob]:
        async with self.sessionmaker() as session:
            return await self._jobs(session).get(job_id)

    def _submission(self, job: GenerationJob) -> _Submission:
        model = get_model(job.model_key)
        if model is None:
            raise InvalidRequest(f'Unknown model: {job.model_key}')
        refs = list((job.parameters or {}).get('reference_urls') or [])
        return _Submission(job.id, job.user_id, model, job.prompt, job.ticket_cost, refs, True)

    async def settle_async_success(self, job_id: str, result_urls: List[str]) -> bool:
        job = await self.load_job(job_id)
        if job is None or job.settled_at is not None:
            return False
        sub = self._submission(job)
        try:
            assets = await self._persist_outputs(sub, [ProviderOutput(url=url) for url in result_urls])
        except PersistenceFailure as exc:
            logger.error(
                'asset_persist_failed',
                job_id=job_id,
                user_id=sub.user_id,
                model=sub.model.key,
                provider_cost_incurred=True,
            )
            return await self._settle_failure(sub, exc)
        settled = await self._settle_success(sub, assets)
        if settled:
            logger.info('generation_completed', job_id=job_id, user_id=sub.user_id, assets=len(assets))
        else:
            self._discard(assets)
        return settled

    async def settle_async_failure(self, job_id: str, error: GenerationError, message: str | None = None) -> bool:
        job = await self.load_job(job_id)
        if job is None or job.settled_at is not None:
            return False
        return await self._settle_failure(self._submission(job), error, message)

    async def expire_job(self, job_id: str, message: str | None = None) -> bool:
        error = ProviderTimeout()
        settled = await self.settle_async_failure(job_id, error, message)
        if settled:
            logger.warning('generation_timed_out', job_id=job_id)
        return settled

    async def poll_provider(self, job: GenerationJob) -> PollStatus:
        model = get_model(job.model_key)
        if model is None or not job.provider_request_id:
            raise InvalidRequest(f'Job {job.id} has no provider handle')
        adapter = self.adapter_for(model)
        handle = AsyncHandle(job.provider_request_id, job.provider_endpoint or model.model_id)
        return await adapter.poll_status(handle)

    async def apply_poll_status(self, job_id: str, status: PollStatus) -> str:
        if status.state == POLL_COMPLETED:
            await self.settle_async_success(job_id, status.result_urls)
        elif status.state == POLL_FAILED:
            await self.settle_async_failure(job_id, failure_from_status(status), status.error)
        else:
            async with self.sessionmaker() as session:
                await self._jobs(session).update_progress(job_id, status.state, status.position)
                await session.commit()
        return status.state

    async def handle_fal_webhook(self, payload: Dict[str, Any]) -> str:
        """Treat a FAL callback as a nudge: the outcome is always re-read from the provider.

        The callback is unauthenticated, so its status and result URLs are never
        trusted; only the request id is used to find the job.
        """
        request_id = str(payload.get('request_id') or payload.get('gateway_request_id') or '').strip()
        if not request_id:
            raise InvalidRequest('request_id missing')
        async with self.sessionmaker() as session:
            job = await self._jobs(session).get_by_request_id(request_id)
        if job is None:
            logger.info('webhook_unknown_request', request_id=request_id)
            return 'ignored'
        if job.settled_at is not None:
            logger.info('webhook_already_settled', job_id=job.id, request_id=request_id)
            return 'already_settled'
        try:
            status = await self.poll_provider(job)
        except Exception as exc:
            # The poller keeps driving the job; a failed re-check settles nothing.
            logger.warning('webhook_recheck_failed', job_id=job.id, request_id=request_id, error=str(exc))
            return 'deferred'
        logger.info('webhook_received', job_id=job.id, request_id=request_id, state=status.state)
        return await self.apply_poll_status(job.id, status)

    async def expire_stale(self, user_id: int | None = None) -> int:
        cutoff = utcnow() - timedelta(seconds=self.settings.stale_processing_seconds)
        async with self.sessionmaker() as session:
            stale = await self._jobs(session).list_stale(cutoff, user_id)
        expired = 0
        for job in stale:
            if await self.expire_job(job.id, 'Generation expired before the provider answered'):
                expired += 1
        return expired

    def _serialize(self, job: GenerationJob, position: int | None = None) -> Dict[str, Any]:
        created_at = as_utc(job.created_at)
        completed_at = as_utc(job.completed_at)
        data: Dict[str, Any] = {
            'id': job.id,
            'status': job.status,
            'model': job.model_key,
            'modelType': job.model_type,
            'prompt': job.prompt,
            'ticketCost': job.ticket_cost,
            'resultUrl': job.result_url,
            'resultUrls': list(job.result_urls or []),
            'errorMessage': job.error_message,
            'errorCode': job.error_code,
            'createdAt': created_at.isoformat() if created_at else None,
            'completedAt': completed_at.isoformat() if completed_at else None,
        }
        if position is not None:
            data['position'] = position
            data['estimatedWait'] = position * self.settings.queue_wait_per_position_seconds
        return data

    async def get_job_status(self, job_id: str, user_id: int | None = None) -> Dict[str, Any]:
        async with self.sessionmaker() as session:
            jobs = self._jobs(session)
            job = await jobs.get(job_id)
            if job is None or (user_id is not None and job.user_id != user_id):
                raise JobNotFound()
            position = await jobs.queue_position(job)
        return self._serialize(job, position)

    async def list_recent_jobs(self, user_id: int, since: datetime | None = None) -> List[Dict[str, Any]]:
        if since is None:
            since = utcnow() - timedelta(seconds=self.settings.recent_jobs_window_seconds)
        async with self.sessionmaker() as session:
            jobs = await self._jobs(session).list_recent(user_id, since)
        return [self._serialize(job) for job in jobs]

    async def list_active_jobs(self, user_id: int) -> List[Dict[str, Any]]:
        async with self.sessionmaker() as session:
            store = self._jobs(session)
            jobs = await store.list_active(user_id)
            items = [self._serialize(job, await store.queue_position(job)) for job in jobs]
        return items

    async def resume(self, user_id: int, since: datetime | None = None) -> Dict[str, Any]:
        """Reattach a client: expire stale work, restart polling, report what finished meanwhile."""
        await self.expire_stale(user_id)
        active = await self.list_active_jobs(user_id)
        poller = get_poller()
        if poller is not None:
            for item in active:
                poller.schedule(item['id'])
        recent = await self.list_recent_jobs(user_id, since)
        return {'active': active, 'recent': recent, 'activeCount': len(active)}
