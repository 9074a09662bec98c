"""
Account Management Module

Bank accounts come in two kinds sharing one record shape: CURRENT accounts
may go negative down to their overdraft, SAVING accounts never below zero.
Per-kind debit admission is a table lookup on the ``kind`` tag.

The AccountDirectory owns durable balance storage. Only the ledger engine
should call ``put_account`` with a changed balance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import uuid

from .errors import InsufficientFunds, InvalidArgument, NotFound
from .money import ZERO, AmountLike, to_amount
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .customers import CustomerDirectory

RATE_PRECISION = 6


class AccountKind(Enum):
    """Account variants"""
    CURRENT = "current"  # Overdraft allowed
    SAVING = "saving"    # Interest bearing, never negative


@dataclass
class BankAccount(StorageRecord):
    """
    Bank account state as held by the directory

    ``balance`` is a cached projection of ``initial_balance`` plus the signed
    sum of the account's operation log.
    """
    customer_id: str
    kind: AccountKind
    balance: Decimal
    initial_balance: Decimal
    overdraft: Decimal = ZERO       # CURRENT only
    interest_rate: Decimal = ZERO   # SAVING only, informational
    version: int = 0
    last_operation_at: Optional[datetime] = None

    def __post_init__(self):
        if self.overdraft < ZERO:
            raise InvalidArgument(f"Overdraft cannot be negative: {self.overdraft}")
        if self.interest_rate < ZERO:
            raise InvalidArgument(f"Interest rate cannot be negative: {self.interest_rate}")
        if self.kind == AccountKind.SAVING and self.overdraft != ZERO:
            raise InvalidArgument("Saving accounts cannot carry an overdraft")
        if self.kind == AccountKind.CURRENT and self.interest_rate != ZERO:
            raise InvalidArgument("Current accounts cannot carry an interest rate")

    @property
    def is_current(self) -> bool:
        return self.kind == AccountKind.CURRENT

    @property
    def is_saving(self) -> bool:
        return self.kind == AccountKind.SAVING

    @property
    def available_to_debit(self) -> Decimal:
        """Largest amount a debit may take right now"""
        return self.balance - debit_floor(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BankAccount':
        data = dict(data)
        data['kind'] = AccountKind(data['kind'])
        for key in ('balance', 'initial_balance', 'overdraft', 'interest_rate'):
            data[key] = Decimal(data[key])
        if data.get('last_operation_at'):
            data['last_operation_at'] = datetime.fromisoformat(data['last_operation_at'])
        return super().from_dict(data)


# Lowest balance a debit may leave behind, per kind
_DEBIT_FLOORS: Dict[AccountKind, Callable[[BankAccount], Decimal]] = {
    AccountKind.CURRENT: lambda account: -account.overdraft,
    AccountKind.SAVING: lambda account: ZERO,
}


def debit_floor(account: BankAccount) -> Decimal:
    """Minimum balance allowed after a debit"""
    return _DEBIT_FLOORS[account.kind](account)


def can_debit(account: BankAccount, amount: Decimal) -> bool:
    """
    Check whether `amount` may be debited from the account

    Raises:
        InvalidArgument: If amount is not strictly positive
    """
    if amount <= ZERO:
        raise InvalidArgument(f"Debit amount must be positive, got {amount}")
    return account.balance - amount >= debit_floor(account)


def apply_debit(account: BankAccount, amount: Decimal) -> BankAccount:
    """
    Return a copy of the account with `amount` taken off the balance

    Raises:
        InvalidArgument: If amount is not strictly positive
        InsufficientFunds: If the debit would cross the kind's floor
    """
    if not can_debit(account, amount):
        raise InsufficientFunds(
            account_id=account.id,
            balance=account.balance,
            requested=amount,
            floor=debit_floor(account)
        )
    return replace(account, balance=account.balance - amount)


def apply_credit(account: BankAccount, amount: Decimal) -> BankAccount:
    """Return a copy of the account with `amount` added to the balance"""
    if amount <= ZERO:
        raise InvalidArgument(f"Credit amount must be positive, got {amount}")
    return replace(account, balance=account.balance + amount)


class AccountDirectory:
    """
    Resolves account identifiers to current state and persists updates
    """

    def __init__(
        self,
        storage: StorageInterface,
        customers: CustomerDirectory,
        audit_trail: Optional[AuditTrail] = None,
        precision: int = 2
    ):
        self.storage = storage
        self.customers = customers
        self.audit_trail = audit_trail
        self.precision = precision
        self.table_name = customers.accounts_table

    def create_current_account(
        self,
        customer_id: str,
        initial_balance: AmountLike = 0,
        overdraft: AmountLike = 0,
        account_id: Optional[str] = None
    ) -> BankAccount:
        """Open a current account with an overdraft limit"""
        return self._create_account(
            kind=AccountKind.CURRENT,
            customer_id=customer_id,
            initial_balance=initial_balance,
            overdraft=to_amount(overdraft, self.precision),
            interest_rate=ZERO,
            account_id=account_id
        )

    def create_saving_account(
        self,
        customer_id: str,
        initial_balance: AmountLike = 0,
        interest_rate: AmountLike = 0,
        account_id: Optional[str] = None
    ) -> BankAccount:
        """Open a saving account; the interest rate is informational"""
        return self._create_account(
            kind=AccountKind.SAVING,
            customer_id=customer_id,
            initial_balance=initial_balance,
            overdraft=ZERO,
            interest_rate=to_amount(interest_rate, RATE_PRECISION),
            account_id=account_id
        )

    def _create_account(
        self,
        kind: AccountKind,
        customer_id: str,
        initial_balance: AmountLike,
        overdraft: Decimal,
        interest_rate: Decimal,
        account_id: Optional[str]
    ) -> BankAccount:
        balance = to_amount(initial_balance, self.precision)
        if balance < ZERO:
            raise InvalidArgument(f"Initial balance cannot be negative: {balance}")

        now = datetime.now(timezone.utc)
        account = BankAccount(
            id=account_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            kind=kind,
            balance=balance,
            initial_balance=balance,
            overdraft=overdraft,
            interest_rate=interest_rate
        )

        with self.storage.atomic():
            self.customers.require_customer(customer_id)
            self.storage.insert(self.table_name, account.id, account.to_dict())

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCOUNT_CREATED,
                    entity_type="account",
                    entity_id=account.id,
                    metadata={
                        "customer_id": customer_id,
                        "kind": kind.value,
                        "initial_balance": balance,
                        "overdraft": overdraft,
                        "interest_rate": interest_rate
                    }
                )

        return account

    def get_account(self, account_id: str) -> Optional[BankAccount]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return BankAccount.from_dict(data)
        return None

    def require_account(self, account_id: str) -> BankAccount:
        """Get account by ID or raise NotFound"""
        account = self.get_account(account_id)
        if not account:
            raise NotFound(f"Account {account_id} not found")
        return account

    def put_account(self, account: BankAccount) -> BankAccount:
        """
        Persist a changed account state

        The write only succeeds if nobody else updated the account since it
        was read (its ``version`` still matches the stored one).

        Returns:
            The stored account carrying its new version

        Raises:
            NotFound: If the account does not exist
            ConflictRetryable: If the account changed underneath
        """
        new_version = self.storage.save_if_version(
            self.table_name, account.id, account.to_dict(), account.version
        )
        return replace(account, version=new_version)

    def get_customer_accounts(self, customer_id: str) -> List[BankAccount]:
        """Get all accounts for a customer"""
        return [BankAccount.from_dict(data)
                for data in self.storage.find(self.table_name, {"customer_id": customer_id})]

    def list_accounts(self) -> List[BankAccount]:
        """All accounts in creation order"""
        return [BankAccount.from_dict(data) for data in self.storage.load_all(self.table_name)]
