"""
Ledger Error Taxonomy

Distinguishable error kinds raised by the ledger engine and its collaborators.
Callers map these to user-facing responses; the ledger never swallows them.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""
    pass


class NotFound(LedgerError):
    """Referenced account, customer or record does not exist"""
    pass


class InvalidArgument(LedgerError, ValueError):
    """
    Request is malformed: non-positive amount, invalid account configuration,
    transfer to the same account, bad paging parameters.
    Not retriable without caller correction.
    """
    pass


class DuplicateRecord(InvalidArgument):
    """A record with the same identifier already exists"""
    pass


class InsufficientFunds(LedgerError):
    """Debit would take the account below its minimum allowed balance"""

    def __init__(
        self,
        account_id: str,
        balance: Decimal,
        requested: Decimal,
        floor: Decimal,
        message: Optional[str] = None
    ):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        self.floor = floor
        super().__init__(
            message or
            f"Insufficient funds on account {account_id}: balance {balance}, "
            f"requested {requested}, minimum allowed balance {floor}"
        )


class ConflictRetryable(LedgerError):
    """
    Concurrent mutation detected (stale version or busy store).
    Nothing was committed, so the whole operation may be retried.
    """
    pass


class AccountBusy(ConflictRetryable):
    """Timed out waiting for an account lock"""
    pass


class StorageFailure(LedgerError):
    """
    Durable store failed for reasons outside the ledger's control.
    If raised while committing, the outcome is resolved by re-reading state.
    """
    pass
