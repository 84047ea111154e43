from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio.db.models import (
    ACTIVE_JOB_STATUSES,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    TERMINAL_JOB_STATUSES,
    GenerationJob,
)
from studio.utils.text import clamp_text
from studio.utils.time import utcnow


class JobStore:
    """Durable generation job records.

    Terminal transitions only apply to rows that are still active, so a late
    second caller is a no-op instead of overwriting the first outcome.
    """

    def __init__(self, session: AsyncSession, error_max_length: int = 500) -> None:
        self.session = session
        self.error_max_length = error_max_length

    async def create(
        self,
        *,
        job_id: str,
        user_id: int,
        model_key: str,
        model_type: str,
        provider: str,
        prompt: str,
        parameters: Dict[str, Any],
        ticket_cost: int,
        status: str,
        provider_endpoint: str | None = None,
    ) -> GenerationJob:
        now = utcnow()
        job = GenerationJob(
            id=job_id,
            user_id=user_id,
            model_key=model_key,
            model_type=model_type,
            provider=provider,
            prompt=prompt,
            parameters=parameters,
            status=status,
            ticket_cost=ticket_cost,
            provider_endpoint=provider_endpoint,
            result_urls=[],
            created_at=now,
            updated_at=now,
            started_at=now,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get(self, job_id: str) -> Optional[GenerationJob]:
        return await self.session.get(GenerationJob, job_id)

    async def get_by_request_id(self, request_id: str) -> Optional[GenerationJob]:
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.provider_request_id == request_id)
        )
        return result.scalars().first()

    async def attach_handle(
        self,
        job_id: str,
        request_id: str,
        endpoint: str,
        position: int | None = None,
    ) -> None:
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(
                provider_request_id=request_id,
                provider_endpoint=endpoint,
                queue_position=position,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def update_progress(self, job_id: str, status: str, position: int | None = None) -> None:
        values: Dict[str, Any] = {'status': status, 'updated_at': utcnow()}
        if status == JOB_QUEUED:
            values['queue_position'] = position
        elif status == JOB_PROCESSING:
            values['queue_position'] = None
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def claim_settlement(self, job_id: str) -> bool:
        """Atomically mark the job as settled; only the first caller gets True."""
        stmt = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.settled_at.is_(None))
            .values(settled_at=utcnow())
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None

    async def mark_completed(self, job_id: str, result_urls: List[str]) -> bool:
        now = utcnow()
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .values(
                status=JOB_COMPLETED,
                result_url=result_urls[0] if result_urls else None,
                result_urls=list(result_urls),
                queue_position=None,
                completed_at=now,
                updated_at=now,
            )
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def mark_failed(self, job_id: str, error_message: str, error_code: str | None = None) -> bool:
        now = utcnow()
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .values(
                status=JOB_FAILED,
                error_code=error_code,
                error_message=clamp_text(error_message or 'Generation failed', self.error_max_length),
                queue_position=None,
                completed_at=now,
                updated_at=now,
            )
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def count_active(self, user_id: int) -> int:
        result = await self.session.execute(
            select(func.count(GenerationJob.id))
            .where(GenerationJob.user_id == user_id)
            .where(GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
        )
        return int(result.scalar_one() or 0)

    async def list_active(self, user_id: int) -> List[GenerationJob]:
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.user_id == user_id)
            .where(GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .order_by(GenerationJob.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_recent(self, user_id: int, since: datetime) -> List[GenerationJob]:
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.user_id == user_id)
            .where(GenerationJob.status.in_(TERMINAL_JOB_STATUSES))
            .where(GenerationJob.completed_at >= since)
            .order_by(GenerationJob.completed_at.desc())
        )
        return list(result.scalars().all())

    async def list_pending_handles(self) -> List[str]:
        result = await self.session.execute(
            select(GenerationJob.id)
            .where(GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .where(GenerationJob.provider_request_id.is_not(None))
            .where(GenerationJob.settled_at.is_(None))
        )
        return [row[0] for row in result.all()]

    async def list_stale(self, cutoff: datetime, user_id: int | None = None) -> List[GenerationJob]:
        stmt = (
            select(GenerationJob)
            .where(GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .where(GenerationJob.settled_at.is_(None))
            .where(GenerationJob.created_at < cutoff)
        )
        if user_id is not None:
            stmt = stmt.where(GenerationJob.user_id == user_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def queue_position(self, job: GenerationJob) -> Optional[int]:
        if job.status != JOB_QUEUED:
            return None
        if job.queue_position is not None:
            return int(job.queue_position)
        result = await self.session.execute(
            select(func.count(GenerationJob.id))
            .where(GenerationJob.model_key == job.model_key)
            .where(GenerationJob.status == JOB_QUEUED)
            .where(GenerationJob.created_at <= job.created_at)
        )
        return int(result.scalar_one() or 0)
