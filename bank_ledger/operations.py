"""
Operation Log Module

Append-only history of immutable debit/credit records per account.
Records are never updated or deleted; history is read newest first, with
ties on the operation date broken by insertion sequence (ascending).

The log does not check that accounts exist. Callers resolve the account
through the AccountDirectory first.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple
from enum import Enum
import uuid

from .errors import InvalidArgument
from .money import ZERO
from .storage import StorageInterface


class OperationType(Enum):
    """Direction of an account operation"""
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"

    @property
    def sign(self) -> Decimal:
        return Decimal('-1') if self is OperationType.DEBIT else Decimal('1')


@dataclass(frozen=True)
class AccountOperation:
    """
    Immutable fact about one balance change. ``amount`` is always positive;
    the direction lives in ``operation_type``.
    """
    id: str
    account_id: str
    operation_type: OperationType
    amount: Decimal
    description: str
    operation_date: datetime
    sequence: int
    principal: Optional[str] = None
    transfer_id: Optional[str] = None
    counterparty_account_id: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        return self.operation_type.sign * self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'operation_type': self.operation_type.value,
            'amount': str(self.amount),
            'description': self.description,
            'operation_date': self.operation_date.isoformat(),
            'sequence': self.sequence,
            'principal': self.principal,
            'transfer_id': self.transfer_id,
            'counterparty_account_id': self.counterparty_account_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountOperation':
        return cls(
            id=data['id'],
            account_id=data['account_id'],
            operation_type=OperationType(data['operation_type']),
            amount=Decimal(data['amount']),
            description=data['description'],
            operation_date=datetime.fromisoformat(data['operation_date']),
            sequence=data['sequence'],
            principal=data.get('principal'),
            transfer_id=data.get('transfer_id'),
            counterparty_account_id=data.get('counterparty_account_id')
        )


def newest_first(operations: List[AccountOperation]) -> List[AccountOperation]:
    """Order by operation date descending, ties by sequence ascending"""
    ordered = sorted(operations, key=lambda op: op.sequence)
    ordered.sort(key=lambda op: op.operation_date, reverse=True)
    return ordered


class OperationLog:
    """
    Durable, append-only, per-account ordered history
    """

    def __init__(
        self,
        storage: StorageInterface,
        table_name: str = "account_operations",
        max_page_size: int = 100
    ):
        self.storage = storage
        self.table_name = table_name
        self.max_page_size = max_page_size

    def append(
        self,
        account_id: str,
        operation_type: OperationType,
        amount: Decimal,
        description: str,
        operation_date: datetime,
        principal: Optional[str] = None,
        transfer_id: Optional[str] = None,
        counterparty_account_id: Optional[str] = None,
        operation_id: Optional[str] = None
    ) -> str:
        """
        Append one immutable operation record

        Must run inside the same atomic unit as the balance change it
        describes.

        Returns:
            The new operation identifier

        Raises:
            InvalidArgument: If amount is not strictly positive
            DuplicateRecord: If operation_id is already in the log
        """
        if amount <= ZERO:
            raise InvalidArgument(f"Operation amount must be positive, got {amount}")

        operation = AccountOperation(
            id=operation_id or str(uuid.uuid4()),
            account_id=account_id,
            operation_type=operation_type,
            amount=amount,
            description=description,
            operation_date=operation_date,
            sequence=self.storage.next_sequence(self.table_name),
            principal=principal,
            transfer_id=transfer_id,
            counterparty_account_id=counterparty_account_id
        )
        self.storage.insert(self.table_name, operation.id, operation.to_dict())
        return operation.id

    def _load(self, account_id: str) -> List[AccountOperation]:
        records = self.storage.find(self.table_name, {'account_id': account_id})
        return newest_first([AccountOperation.from_dict(data) for data in records])

    def list(self, account_id: str) -> Iterator[AccountOperation]:
        """
        Lazily enumerate an account's operations, newest first

        The history is read when iteration starts; calling again
        re-enumerates the current state.
        """
        yield from self._load(account_id)

    def page(
        self,
        account_id: str,
        page_index: int,
        page_size: int
    ) -> Tuple[List[AccountOperation], int]:
        """
        One newest-first slice of an account's history

        Returns:
            (operations on the page, total number of operations)

        Raises:
            InvalidArgument: On negative page index or out-of-range page size
        """
        if page_index < 0:
            raise InvalidArgument(f"Page index cannot be negative: {page_index}")
        if page_size < 1 or page_size > self.max_page_size:
            raise InvalidArgument(
                f"Page size must be between 1 and {self.max_page_size}, got {page_size}"
            )

        operations = self._load(account_id)
        start = page_index * page_size
        return operations[start:start + page_size], len(operations)

    def count(self, account_id: str) -> int:
        """Number of operations recorded for an account"""
        return self.storage.count(self.table_name, {'account_id': account_id})

    def get_operation(self, operation_id: str) -> Optional[AccountOperation]:
        """Get a single operation by ID"""
        data = self.storage.load(self.table_name, operation_id)
        if data:
            return AccountOperation.from_dict(data)
        return None

    def signed_total(self, account_id: str) -> Decimal:
        """Sum of all operations for an account, credits positive"""
        return sum((op.signed_amount for op in self._load(account_id)), ZERO)
