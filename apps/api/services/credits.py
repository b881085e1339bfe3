"""Balance ledger: authorize-and-deduct over credits and download allowance."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from config import settings
from models.credit_ledger import LedgerEntry
from models.user import User
from services.account_store import AccountStore
from services.errors import (
    AccountNotFound,
    InsufficientBalance,
    NoDownloadsRemaining,
    UnknownCreditPack,
)

logger = logging.getLogger(__name__)

UNLIMITED_DOWNLOADS = -1
GRANT_TYPES = ("purchase", "bonus", "refund")

CREDIT_PACKS: Dict[str, Dict[str, Any]] = {
    "spark": {"name": "The Spark", "credits": 20, "price": 4.99},
    "torch": {"name": "The Torch", "credits": 80, "price": 14.99},
    "beacon": {"name": "The Beacon", "credits": 200, "price": 29.99},
}


@dataclass(frozen=True)
class AccountBalance:
    account_id: str
    credits: int
    downloads_remaining: int
    is_premium: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DownloadAllowance:
    allowed: bool
    remaining: int
    is_premium: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _snapshot(user: User) -> AccountBalance:
    return AccountBalance(
        account_id=user.id,
        credits=int(user.credits or 0),
        downloads_remaining=int(user.downloads_remaining or 0),
        is_premium=bool(user.is_premium),
    )


def serialize_entry(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "amount": entry.amount,
        "description": entry.description,
        "type": entry.type,
        "balance": entry.balance,
        "metadata": entry.metadata_json or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _positive_amount(amount: int) -> int:
    value = int(amount)
    if value <= 0:
        raise ValueError("amount must be greater than 0")
    return value


class BalanceLedger:
    """Guarded balance mutations, each followed by a best-effort ledger entry.

    Deductions and grants all run through ``AccountStore.run_transaction`` so
    two clients spending from the same account are linearized. The ledger
    entry is written after the balance commit; if that write fails it is
    logged and dropped, never retried and never rolled back.
    """

    def __init__(self, store: AccountStore):
        self.store = store

    async def _record(
        self,
        account_id: str,
        *,
        amount: int,
        description: str,
        entry_type: str,
        balance: str = "credits",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[LedgerEntry]:
        try:
            return await self.store.append_entry(
                account_id,
                amount=amount,
                description=description,
                entry_type=entry_type,
                balance=balance,
                metadata=metadata,
            )
        except Exception:
            logger.exception("Failed to record %s ledger entry for %s", entry_type, account_id)
            return None

    async def open_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> AccountBalance:
        """Create the balance row with signup seed values; returning users are left as-is."""
        signup_credits = max(int(settings.SIGNUP_CREDITS), 0)
        user, created = await self.store.create(
            account_id,
            email=email,
            display_name=display_name,
            credits=signup_credits,
            downloads_remaining=max(int(settings.SIGNUP_DOWNLOADS), 0),
            is_premium=False,
        )
        if created:
            logger.info("Opened account %s with %s credits", account_id, signup_credits)
            if signup_credits > 0:
                await self._record(
                    account_id,
                    amount=signup_credits,
                    description="Welcome Bonus",
                    entry_type="bonus",
                )
        return _snapshot(user)

    async def get_balance(self, account_id: str) -> AccountBalance:
        user = await self.store.get(account_id)
        if user is None:
            raise AccountNotFound(account_id)
        return _snapshot(user)

    async def check_download_allowance(self, account_id: str) -> DownloadAllowance:
        """Read-only quota check; ``remaining`` is -1 for premium accounts."""
        user = await self.store.get(account_id)
        if user is None:
            return DownloadAllowance(allowed=False, remaining=0, is_premium=False)
        if user.is_premium:
            return DownloadAllowance(allowed=True, remaining=UNLIMITED_DOWNLOADS, is_premium=True)
        remaining = max(int(user.downloads_remaining or 0), 0)
        return DownloadAllowance(allowed=remaining > 0, remaining=remaining, is_premium=False)

    async def deduct_credits(self, account_id: str, amount: int, description: str) -> int:
        """Spend ``amount`` credits; returns the balance left after the commit."""
        cost = _positive_amount(amount)

        def _debit(user: User) -> int:
            current = int(user.credits or 0)
            if current < cost:
                raise InsufficientBalance(account_id, required=cost, available=current)
            user.credits = current - cost
            return user.credits

        remaining = await self.store.run_transaction(account_id, _debit)
        await self._record(account_id, amount=-cost, description=description, entry_type="usage")
        return remaining

    async def deduct_download(self, account_id: str, description: str = "Download") -> int:
        """Spend one download; premium accounts are never charged.

        Returns the remaining allowance, or -1 for premium accounts.
        """

        def _debit(user: User) -> Optional[int]:
            if user.is_premium:
                return None
            current = int(user.downloads_remaining or 0)
            if current < 1:
                raise NoDownloadsRemaining(account_id)
            user.downloads_remaining = current - 1
            return user.downloads_remaining

        remaining = await self.store.run_transaction(account_id, _debit)
        if remaining is None:
            return UNLIMITED_DOWNLOADS
        await self._record(
            account_id,
            amount=-1,
            description=description,
            entry_type="usage",
            balance="downloads",
        )
        return remaining

    async def grant_credits(
        self,
        account_id: str,
        amount: int,
        kind: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        grant = _positive_amount(amount)
        if kind not in GRANT_TYPES:
            raise ValueError(f"kind must be one of {', '.join(GRANT_TYPES)}")

        def _credit(user: User) -> int:
            user.credits = int(user.credits or 0) + grant
            return user.credits

        balance = await self.store.run_transaction(account_id, _credit)
        await self._record(
            account_id,
            amount=grant,
            description=description,
            entry_type=kind,
            metadata=metadata,
        )
        return balance

    async def grant_downloads(self, account_id: str, amount: int, kind: str, description: str) -> int:
        grant = _positive_amount(amount)
        if kind not in GRANT_TYPES:
            raise ValueError(f"kind must be one of {', '.join(GRANT_TYPES)}")

        def _credit(user: User) -> int:
            user.downloads_remaining = int(user.downloads_remaining or 0) + grant
            return user.downloads_remaining

        remaining = await self.store.run_transaction(account_id, _credit)
        await self._record(
            account_id,
            amount=grant,
            description=description,
            entry_type=kind,
            balance="downloads",
        )
        return remaining

    async def set_premium(self, account_id: str, is_premium: bool) -> AccountBalance:
        def _flag(user: User) -> AccountBalance:
            user.is_premium = bool(is_premium)
            return _snapshot(user)

        return await self.store.run_transaction(account_id, _flag)

    async def fulfill_credit_pack(
        self,
        account_id: str,
        pack_id: str,
        *,
        provider: str = "manual",
        billing_reference: Optional[str] = None,
    ) -> int:
        pack = CREDIT_PACKS.get(pack_id)
        if pack is None:
            raise UnknownCreditPack(account_id, pack_id)
        return await self.grant_credits(
            account_id,
            pack["credits"],
            "purchase",
            f"Purchased {pack['name']} ({pack['credits']} credits)",
            metadata={
                "pack_id": pack_id,
                "price": pack["price"],
                "provider": provider,
                "billing_reference": billing_reference,
            },
        )

    async def get_purchase_history(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        try:
            return await self.store.list_entries(
                account_id, entry_type="purchase", balance="credits", limit=limit
            )
        except Exception:
            logger.exception("Error fetching purchase history for %s", account_id)
            return []

    async def get_all_transactions(self, account_id: str, limit: int = 100) -> List[LedgerEntry]:
        try:
            return await self.store.list_entries(account_id, limit=limit)
        except Exception:
            logger.exception("Error fetching transactions for %s", account_id)
            return []

    async def get_credit_summary(self, account_id: str) -> Dict[str, Any]:
        balance = await self.get_balance(account_id)
        entries = await self.get_all_transactions(
            account_id, limit=max(int(settings.LEDGER_HISTORY_LIMIT), 1)
        )
        return {
            **balance.to_dict(),
            "costs": {
                "generate": max(int(settings.CREDIT_COST_GENERATE), 0),
                "edit": max(int(settings.CREDIT_COST_EDIT), 0),
            },
            "recent_entries": [serialize_entry(entry) for entry in entries],
        }
