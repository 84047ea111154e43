from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from studio.db.models import TicketBalance, TicketEntry
from studio.services.errors import InsufficientFunds, NoCreditsProvisioned
from studio.utils.logging import get_logger
from studio.utils.time import utcnow


logger = get_logger('tickets')


class LedgerConflict(RuntimeError):
    """A commit or release did not match any outstanding reservation."""


@dataclass
class BalanceSnapshot:
    balance: int
    reserved: int
    total_used: int

    @property
    def available(self) -> int:
        return self.balance - self.reserved

    def as_dict(self) -> dict:
        return {
            'balance': self.balance,
            'reserved': self.reserved,
            'available': max(0, self.available),
            'total_used': self.total_used,
        }


class TicketLedger:
    """Row-level ticket accounting.

    Every mutation is a single UPDATE with arithmetic so concurrent requests
    against the same user never read-modify-write. Callers own the
    transaction and must commit the session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_snapshot(self, user_id: int) -> Optional[BalanceSnapshot]:
        result = await self.session.execute(
            select(TicketBalance.balance, TicketBalance.reserved, TicketBalance.total_used)
            .where(TicketBalance.user_id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return BalanceSnapshot(balance=int(row[0]), reserved=int(row[1]), total_used=int(row[2]))

    async def get_balance(self, user_id: int) -> BalanceSnapshot:
        snapshot = await self.get_snapshot(user_id)
        return snapshot or BalanceSnapshot(balance=0, reserved=0, total_used=0)

    async def _ensure_row(self, user_id: int) -> None:
        now = utcnow()
        values = dict(user_id=user_id, balance=0, reserved=0, total_used=0, created_at=now, updated_at=now)
        dialect = self.session.bind.dialect.name if self.session.bind is not None else ''
        if dialect == 'postgresql':
            stmt = postgresql.insert(TicketBalance).values(**values).on_conflict_do_nothing()
        elif dialect == 'sqlite':
            stmt = sqlite.insert(TicketBalance).values(**values).on_conflict_do_nothing()
        else:
            if await self.get_snapshot(user_id) is not None:
                return
            self.session.add(TicketBalance(**values))
            await self.session.flush()
            return
        await self.session.execute(stmt)

    async def _has_entry(self, idempotency_key: str) -> bool:
        result = await self.session.execute(
            select(TicketEntry.id).where(TicketEntry.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none() is not None

    def _add_entry(
        self,
        user_id: int,
        operation: str,
        amount: int,
        reason: str,
        job_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> None:
        self.session.add(
            TicketEntry(
                user_id=user_id,
                job_id=job_id,
                operation=operation,
                amount=amount,
                reason=reason,
                idempotency_key=idempotency_key,
                created_at=utcnow(),
            )
        )

    async def grant(
        self,
        user_id: int,
        amount: int,
        reason: str = 'purchase',
        idempotency_key: str | None = None,
    ) -> bool:
        """Add purchased or granted tickets, provisioning the row on first use.

        Returns False when ``idempotency_key`` was already applied.
        """
        if amount <= 0:
            raise ValueError('grant amount must be positive')
        if idempotency_key and await self._has_entry(idempotency_key):
            return False
        await self._ensure_row(user_id)
        await self.session.execute(
            update(TicketBalance)
            .where(TicketBalance.user_id == user_id)
            .values(balance=TicketBalance.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self._add_entry(user_id, 'grant', amount, reason, idempotency_key=idempotency_key)
        await self.session.flush()
        logger.info('tickets_granted', user_id=user_id, amount=amount, reason=reason)
        return True

    async def reserve(self, user_id: int, amount: int, job_id: str | None = None) -> BalanceSnapshot:
        if amount <= 0:
            raise ValueError('reservation amount must be positive')
        stmt = (
            update(TicketBalance)
            .where(
                TicketBalance.user_id == user_id,
                TicketBalance.balance - TicketBalance.reserved >= amount,
            )
            .values(reserved=TicketBalance.reserved + amount, updated_at=utcnow())
            .returning(TicketBalance.balance, TicketBalance.reserved, TicketBalance.total_used)
            .execution_options(synchronize_session=False)
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            current = await self.get_snapshot(user_id)
            if current is None:
                raise NoCreditsProvisioned()
            logger.info(
                'reservation_rejected',
                user_id=user_id,
                amount=amount,
                balance=current.balance,
                reserved=current.reserved,
            )
            raise InsufficientFunds(required=amount, available=current.available)

        self._add_entry(user_id, 'reserve', amount, 'generation_reserve', job_id=job_id)
        await self.session.flush()
        snapshot = BalanceSnapshot(balance=int(row[0]), reserved=int(row[1]), total_used=int(row[2]))
        logger.info(
            'tickets_reserved',
            user_id=user_id,
            job_id=job_id,
            amount=amount,
            available=snapshot.available,
        )
        return snapshot

    async def commit(self, user_id: int, amount: int, job_id: str | None = None) -> None:
        """Turn a reservation into spend: balance and reserved both drop, total_used grows."""
        stmt = (
            update(TicketBalance)
            .where(
                TicketBalance.user_id == user_id,
                TicketBalance.reserved >= amount,
                TicketBalance.balance >= amount,
            )
            .values(
                balance=TicketBalance.balance - amount,
                reserved=TicketBalance.reserved - amount,
                total_used=TicketBalance.total_used + amount,
                updated_at=utcnow(),
            )
            .returning(TicketBalance.user_id)
            .execution_options(synchronize_session=False)
        )
        if (await self.session.execute(stmt)).scalar_one_or_none() is None:
            raise LedgerConflict(f'no reservation of {amount} to commit for user {user_id}')
        key = f'commit:{job_id}' if job_id else None
        self._add_entry(user_id, 'commit', amount, 'generation_charge', job_id=job_id, idempotency_key=key)
        await self.session.flush()
        logger.info('tickets_committed', user_id=user_id, job_id=job_id, amount=amount)

    async def release(self, user_id: int, amount: int, job_id: str | None = None) -> None:
        """Drop a reservation without touching the balance."""
        stmt = (
            update(TicketBalance)
            .where(TicketBalance.user_id == user_id, TicketBalance.reserved >= amount)
            .values(reserved=TicketBalance.reserved - amount, updated_at=utcnow())
            .returning(TicketBalance.user_id)
            .execution_options(synchronize_session=False)
        )
        if (await self.session.execute(stmt)).scalar_one_or_none() is None:
            raise LedgerConflict(f'no reservation of {amount} to release for user {user_id}')
        key = f'release:{job_id}' if job_id else None
        self._add_entry(user_id, 'release', amount, 'generation_release', job_id=job_id, idempotency_key=key)
        await self.session.flush()
        logger.info('tickets_released', user_id=user_id, job_id=job_id, amount=amount)
