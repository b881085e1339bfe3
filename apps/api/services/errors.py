"""Balance ledger error taxonomy.

Routers branch on these types: the two user-correctable errors open a
purchase or upgrade flow, everything else is a generic failure.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for balance mutation failures."""

    code = "ledger_error"

    def __init__(self, account_id: str, message: str):
        super().__init__(message)
        self.account_id = account_id


class AccountNotFound(LedgerError):
    code = "account_not_found"

    def __init__(self, account_id: str):
        super().__init__(account_id, f"No balance record exists for account {account_id}.")


class InsufficientBalance(LedgerError):
    code = "insufficient_credits"

    def __init__(self, account_id: str, required: int, available: int):
        super().__init__(
            account_id,
            f"Insufficient credits. Required: {required}, available: {available}.",
        )
        self.required = required
        self.available = available


class NoDownloadsRemaining(LedgerError):
    code = "no_downloads_remaining"

    def __init__(self, account_id: str):
        super().__init__(account_id, "No downloads remaining. Upgrade to premium for unlimited downloads.")


class TransactionConflict(LedgerError):
    code = "transaction_conflict"

    def __init__(self, account_id: str, attempts: int):
        super().__init__(
            account_id,
            f"Balance update for account {account_id} kept conflicting after {attempts} attempts.",
        )
        self.attempts = attempts


class UnknownCreditPack(LedgerError):
    code = "unknown_credit_pack"

    def __init__(self, account_id: str, pack_id: str):
        super().__init__(account_id, f"Unknown credit pack: {pack_id}")
        self.pack_id = pack_id
