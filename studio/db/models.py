from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from studio.db.base import Base, JSONType


JOB_QUEUED = 'queued'
JOB_PROCESSING = 'processing'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'

ACTIVE_JOB_STATUSES = (JOB_QUEUED, JOB_PROCESSING)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED)


class TicketBalance(Base):
    __tablename__ = 'ticket_balances'

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    balance: Mapped[int] = mapped_column(Integer, default=0)
    reserved: Mapped[int] = mapped_column(Integer, default=0)
    total_used: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    entries: Mapped[list['TicketEntry']] = relationship(back_populates='ticket_balance')

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_ticket_balances_balance_non_negative'),
        CheckConstraint('reserved >= 0', name='ck_ticket_balances_reserved_non_negative'),
    )

    @property
    def available(self) -> int:
        return int(self.balance) - int(self.reserved)


class TicketEntry(Base):
    __tablename__ = 'ticket_entries'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('ticket_balances.user_id'), index=True)
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    operation: Mapped[str] = mapped_column(String(16))
    amount: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(64))
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    ticket_balance: Mapped['TicketBalance'] = relationship(back_populates='entries')

    __table_args__ = (
        UniqueConstraint('job_id', 'operation', name='uq_ticket_entries_job_operation'),
    )


class GenerationJob(Base):
    __tablename__ = 'generation_jobs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    model_key: Mapped[str] = mapped_column(String(64))
    model_type: Mapped[str] = mapped_column(String(16))
    provider: Mapped[str] = mapped_column(String(32))
    prompt: Mapped[str] = mapped_column(Text)
    parameters: Mapped[dict] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String(16), index=True)
    ticket_cost: Mapped[int] = mapped_column(Integer)
    provider_endpoint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    queue_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    result_urls: Mapped[list | None] = mapped_column(JSONType, default=list)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    assets: Mapped[list['GeneratedAsset']] = relationship(back_populates='job')

    __table_args__ = (
        Index('ix_generation_jobs_user_status', 'user_id', 'status'),
        Index('ix_generation_jobs_model_status', 'model_key', 'status'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class GeneratedAsset(Base):
    __tablename__ = 'generated_assets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    job_id: Mapped[str | None] = mapped_column(ForeignKey('generation_jobs.id'), nullable=True, index=True)
    model_key: Mapped[str] = mapped_column(String(64))
    media_type: Mapped[str] = mapped_column(String(16))
    prompt: Mapped[str] = mapped_column(Text)
    url: Mapped[str] = mapped_column(String(1024))
    storage_key: Mapped[str] = mapped_column(String(512))
    ticket_cost: Mapped[int] = mapped_column(Integer, default=0)
    reference_urls: Mapped[list | None] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    job: Mapped[Optional['GenerationJob']] = relationship(back_populates='assets')
