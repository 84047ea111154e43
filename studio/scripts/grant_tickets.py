from __future__ import annotations

import argparse
import asyncio
from typing import List, Optional

from studio.config import get_settings
from studio.db.session import create_engine, create_sessionmaker
from studio.services.tickets import TicketLedger
from studio.utils.logging import configure_logging, get_logger


logger = get_logger('grant_tickets')


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Add tickets to a user balance.')
    parser.add_argument('--user-id', type=int, required=True)
    parser.add_argument('--amount', type=int, required=True)
    parser.add_argument('--reason', default='admin_grant')
    parser.add_argument('--idempotency-key', default=None, help='skip if a grant with this key was already applied')
    args = parser.parse_args(argv)
    if args.amount <= 0:
        parser.error('--amount must be positive')
    return args


async def grant(user_id: int, amount: int, reason: str, idempotency_key: str | None, database_url: str | None = None) -> int:
    engine = create_engine(database_url)
    sessionmaker = create_sessionmaker(engine)
    try:
        async with sessionmaker() as session:
            ledger = TicketLedger(session)
            applied = await ledger.grant(user_id, amount, reason, idempotency_key)
            await session.commit()
            snapshot = await ledger.get_balance(user_id)
    finally:
        await engine.dispose()
    if not applied:
        logger.info('grant_already_applied', user_id=user_id, idempotency_key=idempotency_key)
    return snapshot.balance


async def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(get_settings().log_level)
    balance = await grant(args.user_id, args.amount, args.reason, args.idempotency_key)
    print(f'user {args.user_id}: balance {balance}')


if __name__ == '__main__':
    asyncio.run(main())
