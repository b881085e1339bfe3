"""Transactional account store backing the balance ledger.

The store is the only code allowed to write ``users`` rows. Every balance
change goes through :meth:`AccountStore.run_transaction`, which re-reads the
row, applies a mutation callback and commits under the mapper's version
check. A concurrent writer bumps the version first, the commit fails with
``StaleDataError`` and the callback is re-run against the fresh row.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.credit_ledger import BALANCE_KINDS, ENTRY_TYPES, LedgerEntry
from models.user import User
from services.errors import AccountNotFound, TransactionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_BASE_DELAY_SECONDS = 0.005
RETRY_MAX_DELAY_SECONDS = 0.25


def _is_lock_contention(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc) or "").lower()
    return "database is locked" in message or "could not serialize" in message


class AccountStore:
    """Point reads, guarded read-modify-write and ledger appends."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        max_attempts: Optional[int] = None,
    ):
        self._session_maker = session_maker
        self.max_attempts = max(int(max_attempts or settings.LEDGER_MAX_TRANSACTION_RETRIES), 1)

    async def get(self, account_id: str) -> Optional[User]:
        async with self._session_maker() as db:
            result = await db.execute(select(User).where(User.id == account_id))
            return result.scalar_one_or_none()

    async def create(self, account_id: str, **fields: Any) -> Tuple[User, bool]:
        """Insert an account row; returns ``(user, created)``.

        An existing row is returned untouched so a returning user's balances
        are never overwritten by seed values.
        """
        async with self._session_maker() as db:
            result = await db.execute(select(User).where(User.id == account_id))
            existing = result.scalar_one_or_none()
            if existing:
                return existing, False

            user = User(id=account_id, **fields)
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                result = await db.execute(select(User).where(User.id == account_id))
                existing = result.scalar_one_or_none()
                if existing is None:
                    raise
                return existing, False
            return user, True

    async def run_transaction(self, account_id: str, mutate: Callable[[User], T]) -> T:
        """Apply ``mutate`` to a fresh read of the account and commit atomically.

        ``mutate`` may raise to abort; nothing is written in that case and the
        exception propagates without a retry. Conflicting commits are retried
        up to ``max_attempts`` times with jittered backoff.
        """
        for attempt in range(1, self.max_attempts + 1):
            async with self._session_maker() as db:
                try:
                    result = await db.execute(select(User).where(User.id == account_id))
                    user = result.scalar_one_or_none()
                    if user is None:
                        raise AccountNotFound(account_id)
                    outcome = mutate(user)
                    await db.commit()
                    return outcome
                except StaleDataError:
                    await db.rollback()
                    logger.debug("Balance write conflict for %s (attempt %s)", account_id, attempt)
                except OperationalError as exc:
                    await db.rollback()
                    if not _is_lock_contention(exc):
                        raise
                    logger.debug("Balance row locked for %s (attempt %s)", account_id, attempt)

            delay = min(RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), RETRY_MAX_DELAY_SECONDS)
            await asyncio.sleep(delay * random.random())

        logger.warning("Balance transaction for %s gave up after %s attempts", account_id, self.max_attempts)
        raise TransactionConflict(account_id, self.max_attempts)

    async def append_entry(
        self,
        account_id: str,
        *,
        amount: int,
        description: str,
        entry_type: str,
        balance: str = "credits",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"Unsupported ledger entry type: {entry_type}")
        if balance not in BALANCE_KINDS:
            raise ValueError(f"Unsupported balance kind: {balance}")

        async with self._session_maker() as db:
            entry = LedgerEntry(
                user_id=account_id,
                amount=int(amount),
                description=description or "",
                type=entry_type,
                balance=balance,
                metadata_json=metadata,
            )
            db.add(entry)
            await db.commit()
            return entry

    async def list_entries(
        self,
        account_id: str,
        *,
        entry_type: Optional[str] = None,
        balance: Optional[str] = None,
        limit: int = 100,
    ) -> List[LedgerEntry]:
        """Return ledger entries newest first."""
        query = select(LedgerEntry).where(LedgerEntry.user_id == account_id)
        if entry_type is not None:
            query = query.where(LedgerEntry.type == entry_type)
        if balance is not None:
            query = query.where(LedgerEntry.balance == balance)
        query = query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).limit(max(int(limit), 1))

        async with self._session_maker() as db:
            result = await db.execute(query)
            return list(result.scalars().all())
