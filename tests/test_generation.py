from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import Text, func, select, update
from sqlalchemy.exc import OperationalError

from studio.db.models import GeneratedAsset, GenerationJob, TicketEntry
from studio.services.errors import (
    ContentPolicyRejected,
    InsufficientFunds,
    InvalidParameters,
    InvalidRequest,
    JobNotFound,
    MaintenanceMode,
    NoCreditsProvisioned,
    PersistenceFailure,
    ProviderUnavailable,
    TooManyActiveJobs,
    TrackingFailure,
    UnknownProviderError,
)
from studio.services.fal_client import FalError
from studio.services.generation import GenerationService
from studio.services.jobs import JobStore
from studio.services.provider import POLL_COMPLETED, POLL_FAILED, PollStatus, ProviderOutput
from studio.services.tickets import LedgerConflict, TicketLedger
from studio.utils.time import utcnow


USER = 7


async def get_job(sessionmaker, job_id: str) -> GenerationJob:
    async with sessionmaker() as session:
        return await session.get(GenerationJob, job_id)


async def job_assets(sessionmaker, job_id: str | None = None):
    async with sessionmaker() as session:
        stmt = select(GeneratedAsset).order_by(GeneratedAsset.id)
        if job_id is not None:
            stmt = stmt.where(GeneratedAsset.job_id == job_id)
        return list((await session.execute(stmt)).scalars().all())


async def settlement_entries(sessionmaker, job_id: str) -> int:
    async with sessionmaker() as session:
        return await session.scalar(
            select(func.count(TicketEntry.id))
            .where(TicketEntry.job_id == job_id)
            .where(TicketEntry.operation.in_(['commit', 'release']))
        )


async def count_jobs(sessionmaker) -> int:
    async with sessionmaker() as session:
        return await session.scalar(select(func.count(GenerationJob.id)))


async def test_sync_generation_commits_and_persists(service, sessionmaker, sync_adapter):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'flux-2', 'a red bicycle', {'options': {'aspect_ratio': '16:9'}})

    assert outcome.status == 'completed'
    assert outcome.ticket_cost == 1
    assert outcome.result_urls[0].startswith('https://cdn.test/assets/7/')
    assert outcome.balance.as_dict() == {'balance': 9, 'reserved': 0, 'available': 9, 'total_used': 1}

    job = await get_job(sessionmaker, outcome.job_id)
    assert job.status == 'completed'
    assert job.result_url == outcome.result_urls[0]
    assert job.settled_at is not None
    assert job.ticket_cost == 1
    assert job.parameters['options']['aspect_ratio'] == '16:9'

    assets = await job_assets(sessionmaker, outcome.job_id)
    assert [a.ticket_cost for a in assets] == [1]
    assert assets[0].expires_at - assets[0].created_at == timedelta(days=30)
    assert len(sync_adapter.calls) == 1


async def test_multi_asset_result_charges_first_asset_only(service, sessionmaker, sync_adapter):
    sync_adapter.outputs = [
        ProviderOutput(url='https://provider.test/out/1.png'),
        ProviderOutput(url='https://provider.test/out/2.png'),
    ]
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana-pro', 'two cats', {'options': {'quality': '2k'}})

    assert len(outcome.result_urls) == 2
    assets = await job_assets(sessionmaker, outcome.job_id)
    assert [a.ticket_cost for a in assets] == [5, 0]
    status = await service.get_job_status(outcome.job_id)
    assert status['resultUrls'] == outcome.result_urls


async def test_inline_bytes_output_is_stored(service, sync_adapter):
    sync_adapter.outputs = [ProviderOutput(data=b'jpeg-bytes', content_type='image/jpeg')]
    await service.grant_tickets(USER, 5)
    outcome = await service.start_generation(USER, 'flash-scanner-v2.5', 'a lighthouse')
    assert outcome.result_urls[0].endswith('.jpg')


async def test_insufficient_funds_makes_no_provider_call(service, sessionmaker, sync_adapter):
    await service.grant_tickets(USER, 4)
    with pytest.raises(InsufficientFunds) as info:
        await service.start_generation(USER, 'nano-banana-pro', 'castle', {'options': {'quality': '2k'}})

    assert info.value.available == 4
    assert info.value.required == 5
    assert sync_adapter.calls == []
    assert await count_jobs(sessionmaker) == 0
    assert (await service.get_balance(USER)).reserved == 0


async def test_unprovisioned_user_is_rejected(service, sync_adapter):
    with pytest.raises(NoCreditsProvisioned):
        await service.start_generation(USER, 'flux-2', 'castle')
    assert sync_adapter.calls == []


async def test_provider_rejection_releases_and_stores_truncated_error(service, sessionmaker, sync_adapter):
    sync_adapter.error = FalError('FAL run error 422: ' + 'x' * 800, 422)
    await service.grant_tickets(USER, 10)

    with pytest.raises(InvalidParameters) as info:
        await service.start_generation(USER, 'nano-banana-pro', 'castle', {'options': {'quality': '2k'}})
    assert info.value.refunded is True

    snap = await service.get_balance(USER)
    assert (snap.balance, snap.reserved, snap.total_used) == (10, 0, 0)

    async with sessionmaker() as session:
        job = (await session.execute(select(GenerationJob))).scalars().one()
    assert job.status == 'failed'
    assert job.error_code == 'invalid_parameters'
    assert len(job.error_message) == 500
    assert job.error_message.endswith('...')
    assert job.result_url is None


async def test_error_message_limit_follows_configuration(sessionmaker, adapters, storage, settings, sync_adapter):
    assert isinstance(GenerationJob.__table__.c.error_message.type, Text)
    roomy = settings.model_copy(update={'error_message_max_length': 2000})
    service = GenerationService(sessionmaker, adapters, storage, roomy)
    sync_adapter.error = FalError('FAL run error 422: ' + 'x' * 3000, 422)
    await service.grant_tickets(USER, 10)

    with pytest.raises(InvalidParameters):
        await service.start_generation(USER, 'flux-2', 'castle')

    async with sessionmaker() as session:
        job = (await session.execute(select(GenerationJob))).scalars().one()
    assert len(job.error_message) == 2000


async def test_safety_block_maps_to_content_policy(service, sync_adapter):
    sync_adapter.error = FalError('FAL run error 422: blocked', 422, 'content_policy_violation')
    await service.grant_tickets(USER, 3)
    with pytest.raises(ContentPolicyRejected):
        await service.start_generation(USER, 'flux-2', 'something')
    assert (await service.get_balance(USER)).reserved == 0


async def test_network_failure_maps_to_unavailable(service, sync_adapter):
    sync_adapter.error = httpx.ConnectError('connection refused')
    await service.grant_tickets(USER, 3)
    with pytest.raises(ProviderUnavailable):
        await service.start_generation(USER, 'flux-2', 'something')
    assert (await service.get_balance(USER)).available == 3


async def test_persistence_failure_releases_tickets(service, sessionmaker, sync_adapter):
    sync_adapter.outputs = [ProviderOutput(url='https://provider.test/broken/1.png')]
    await service.grant_tickets(USER, 10)

    with pytest.raises(PersistenceFailure) as info:
        await service.start_generation(USER, 'flux-2', 'castle')
    assert info.value.refunded is True

    snap = await service.get_balance(USER)
    assert (snap.balance, snap.reserved) == (10, 0)
    async with sessionmaker() as session:
        job = (await session.execute(select(GenerationJob))).scalars().one()
    assert job.status == 'failed'
    assert job.error_code == 'persistence_failure'
    assert len(sync_adapter.calls) == 1


async def test_partial_persistence_keeps_stored_assets(service, sessionmaker, sync_adapter):
    sync_adapter.outputs = [
        ProviderOutput(url='https://provider.test/broken/1.png'),
        ProviderOutput(url='https://provider.test/out/2.png'),
    ]
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'flux-2', 'castle')

    assert outcome.status == 'completed'
    assert len(outcome.result_urls) == 1
    assets = await job_assets(sessionmaker, outcome.job_id)
    assert [a.ticket_cost for a in assets] == [1]


async def test_maintenance_mode_rejects_before_reserving(sessionmaker, adapters, storage, settings, sync_adapter):
    service = GenerationService(sessionmaker, adapters, storage, settings.model_copy(update={'generation_maintenance': True}))
    await service.grant_tickets(USER, 10)
    with pytest.raises(MaintenanceMode):
        await service.start_generation(USER, 'flux-2', 'castle')
    assert (await service.get_balance(USER)).reserved == 0
    assert sync_adapter.calls == []


async def test_active_job_cap(sessionmaker, adapters, storage, settings):
    service = GenerationService(sessionmaker, adapters, storage, settings.model_copy(update={'per_user_max_concurrent_jobs': 1}))
    await service.grant_tickets(USER, 10)
    await service.start_generation(USER, 'nano-banana', 'queued one')
    with pytest.raises(TooManyActiveJobs):
        await service.start_generation(USER, 'nano-banana', 'queued two')
    assert (await service.get_balance(USER)).reserved == 2


@pytest.mark.parametrize(
    'model_key, prompt, params',
    [
        ('no-such-model', 'castle', {}),
        ('flux-2', '   ', {}),
        ('wan-2.5', 'animate this', {}),
    ],
)
async def test_invalid_requests_are_rejected_before_reserving(service, model_key, prompt, params):
    await service.grant_tickets(USER, 50)
    with pytest.raises(InvalidRequest):
        await service.start_generation(USER, model_key, prompt, params)
    assert (await service.get_balance(USER)).reserved == 0


async def test_overlong_prompt_is_invalid(service):
    await service.grant_tickets(USER, 5)
    with pytest.raises(InvalidRequest):
        await service.start_generation(USER, 'flux-2', 'x' * 20001)


async def test_reference_images_trimmed_and_edit_endpoint_used(service, sync_adapter):
    await service.grant_tickets(USER, 5)
    refs = [f'https://refs.test/{i}.png' for i in range(6)]
    await service.start_generation(USER, 'flux-2', 'restyle', {'reference_urls': refs})

    request = sync_adapter.calls[0]
    assert request.reference_urls == refs[:4]
    assert request.endpoint == 'fal-ai/flux-2/edit'
    assert request.build_input()['image_urls'] == refs[:4]


async def test_estimate_cost_matches_reserved_amount(service):
    assert service.estimate_cost('wan-2.5', {'options': {'resolution': '720p', 'duration': '5'}}) == 13
    with pytest.raises(InvalidRequest):
        service.estimate_cost('nope', {})


async def test_async_generation_stays_reserved_until_settled(service, sessionmaker, queue_adapter):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana', 'a forest')

    assert outcome.status == 'queued'
    assert outcome.request_id == 'req-1'
    snap = await service.get_balance(USER)
    assert (snap.balance, snap.reserved) == (10, 2)

    job = await get_job(sessionmaker, outcome.job_id)
    assert job.status == 'queued'
    assert job.provider_request_id == 'req-1'
    assert job.provider_endpoint == 'fal-ai/nano-banana'

    status = await service.get_job_status(outcome.job_id)
    assert status['position'] == 1
    assert status['estimatedWait'] == 30


async def test_queue_position_counts_earlier_jobs_for_same_model(service):
    await service.grant_tickets(USER, 10)
    await service.grant_tickets(USER + 1, 10)
    first = await service.start_generation(USER, 'nano-banana', 'first')
    second = await service.start_generation(USER + 1, 'nano-banana', 'second')
    assert (await service.get_job_status(first.job_id))['position'] == 1
    assert (await service.get_job_status(second.job_id))['position'] == 2


async def test_provider_reported_position_wins(service, queue_adapter):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana', 'first')
    await service.apply_poll_status(outcome.job_id, PollStatus('queued', position=5))
    status = await service.get_job_status(outcome.job_id)
    assert status['position'] == 5
    assert status['estimatedWait'] == 150


async def test_job_status_hidden_from_other_users(service):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana', 'mine')
    with pytest.raises(JobNotFound):
        await service.get_job_status(outcome.job_id, user_id=USER + 1)


async def test_async_completion_commits_exactly_once(service, sessionmaker):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana', 'a forest')
    done = PollStatus(POLL_COMPLETED, result_urls=['https://provider.test/a.png', 'https://provider.test/b.png'])

    await service.apply_poll_status(outcome.job_id, done)
    await service.apply_poll_status(outcome.job_id, done)

    snap = await service.get_balance(USER)
    assert (snap.balance, snap.reserved, snap.total_used) == (8, 0, 2)
    assert await settlement_entries(sessionmaker, outcome.job_id) == 1
    assert [a.ticket_cost for a in await job_assets(sessionmaker, outcome.job_id)] == [2, 0]


async def test_async_failure_releases(service, sessionmaker):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana', 'a forest')
    await service.apply_poll_status(outcome.job_id, PollStatus(POLL_FAILED, error='content_policy_violation'))

    job = await get_job(sessionmaker, outcome.job_id)
    assert job.status == 'failed'
    assert job.error_code == 'content_policy'
    snap = await service.get_balance(USER)
    assert (snap.balance, snap.reserved) == (10, 0)


async def test_racing_completion_timeout_and_failure_settle_once(service, sessionmaker):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana', 'a forest')

    results = await asyncio.gather(
        service.settle_async_success(outcome.job_id, ['https://provider.test/a.png']),
        service.expire_job(outcome.job_id),
        service.settle_async_failure(outcome.job_id, ProviderUnavailable()),
    )

    assert results.count(True) == 1
    assert await settlement_entries(sessionmaker, outcome.job_id) == 1
    snap = await service.get_balance(USER)
    assert snap.reserved == 0
    assert snap.balance in (8, 10)
    job = await get_job(sessionmaker, outcome.job_id)
    assert job.is_terminal
    if job.status == 'completed':
        assert snap.balance == 8
    else:
        assert snap.balance == 10
        assert await job_assets(sessionmaker, outcome.job_id) == []


async def test_async_submit_failure_releases(service, sessionmaker, queue_adapter):
    queue_adapter.error = FalError('FAL submit error 503: overloaded', 503)
    await service.grant_tickets(USER, 10)
    with pytest.raises(ProviderUnavailable):
        await service.start_generation(USER, 'nano-banana', 'a forest')
    assert (await service.get_balance(USER)).reserved == 0


async def test_sync_generation_survives_job_tracking_failure(service, sessionmaker, monkeypatch):
    async def broken_create(self, **kwargs):
        raise OperationalError('INSERT', {}, Exception('disk full'))

    monkeypatch.setattr(JobStore, 'create', broken_create)
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'flux-2', 'castle')

    assert outcome.status == 'completed'
    snap = await service.get_balance(USER)
    assert (snap.balance, snap.reserved, snap.total_used) == (9, 0, 1)
    assets = await job_assets(sessionmaker)
    assert len(assets) == 1
    assert assets[0].job_id is None
    assert await count_jobs(sessionmaker) == 0


async def test_async_generation_requires_job_record(service, queue_adapter, monkeypatch):
    async def broken_create(self, **kwargs):
        raise OperationalError('INSERT', {}, Exception('disk full'))

    monkeypatch.setattr(JobStore, 'create', broken_create)
    await service.grant_tickets(USER, 10)
    with pytest.raises(TrackingFailure) as info:
        await service.start_generation(USER, 'nano-banana', 'a forest')
    assert info.value.refunded is True
    assert queue_adapter.calls == []
    assert (await service.get_balance(USER)).reserved == 0


async def test_rejected_commit_releases_and_reports_refund(service, sessionmaker, sync_adapter, monkeypatch):
    async def rejected_commit(self, user_id, amount, job_id=None):
        raise LedgerConflict('no reservation')

    monkeypatch.setattr(TicketLedger, 'commit', rejected_commit)
    await service.grant_tickets(USER, 10)
    with pytest.raises(UnknownProviderError) as info:
        await service.start_generation(USER, 'flux-2', 'castle')

    assert info.value.refunded is True
    snap = await service.get_balance(USER)
    assert (snap.balance, snap.reserved, snap.total_used) == (10, 0, 0)
    async with sessionmaker() as session:
        job = (await session.execute(select(GenerationJob))).scalars().one()
    assert job.status == 'failed'
    assert job.settled_at is not None
    assert await job_assets(sessionmaker) == []


async def test_unreleasable_reservation_is_not_reported_as_refunded(service, sync_adapter, monkeypatch):
    async def rejected(self, user_id, amount, job_id=None):
        raise LedgerConflict('ledger row changed')

    monkeypatch.setattr(TicketLedger, 'commit', rejected)
    monkeypatch.setattr(TicketLedger, 'release', rejected)
    await service.grant_tickets(USER, 10)
    with pytest.raises(UnknownProviderError) as info:
        await service.start_generation(USER, 'flux-2', 'castle')

    assert info.value.refunded is False
    assert (await service.get_balance(USER)).reserved == 1


async def test_stale_jobs_are_expired_and_released(service, sessionmaker):
    await service.grant_tickets(USER, 10)
    outcome = await service.start_generation(USER, 'nano-banana', 'a forest')
    async with sessionmaker() as session:
        await session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == outcome.job_id)
            .values(created_at=utcnow() - timedelta(seconds=601))
        )
        await session.commit()

    assert await service.expire_stale(USER) == 1
    assert await service.expire_stale(USER) == 0
    job = await get_job(sessionmaker, outcome.job_id)
    assert job.status == 'failed'
    assert job.error_code == 'timeout'
    assert (await service.get_balance(USER)).reserved == 0


async def test_resume_lists_active_and_recent(service):
    await service.grant_tickets(USER, 10)
    done = await service.start_generation(USER, 'flux-2', 'finished')
    pending = await service.start_generation(USER, 'nano-banana', 'waiting')

    resumed = await service.resume(USER)
    assert resumed['activeCount'] == 1
    assert [j['id'] for j in resumed['active']] == [pending.job_id]
    assert [j['id'] for j in resumed['recent']] == [done.job_id]
    assert resumed['recent'][0]['resultUrl'] == done.result_urls[0]


async def test_recent_jobs_respect_since(service):
    await service.grant_tickets(USER, 10)
    await service.start_generation(USER, 'flux-2', 'finished')
    assert len(await service.list_recent_jobs(USER)) == 1
    assert await service.list_recent_jobs(USER, utcnow() + timedelta(minutes=1)) == []
