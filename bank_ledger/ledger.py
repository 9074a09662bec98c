"""
Ledger Engine

The only component allowed to change balances. Every debit, credit and
transfer runs as one atomic unit: account locks are taken (sorted by id),
a storage transaction is opened, the balance is re-read and checked, the new
balance is written with an optimistic version check and the matching
operation records are appended. Either the whole unit commits or nothing does.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar, Iterator
import uuid

from .accounts import AccountDirectory, AccountKind, BankAccount, apply_credit, apply_debit
from .audit import AuditEventType, AuditTrail
from .errors import (
    AccountBusy, ConflictRetryable, InsufficientFunds, InvalidArgument,
    LedgerError, NotFound
)
from .locking import AccountLockManager
from .logging_config import get_logger, log_action
from .money import AmountLike, to_positive_amount
from .operations import AccountOperation, OperationLog, OperationType
from .storage import StorageInterface

T = TypeVar('T')

# Operation dates of one account strictly increase
_TICK = timedelta(microseconds=1)

_REJECTIONS = (NotFound, InvalidArgument, InsufficientFunds)


@dataclass
class AccountHistory:
    """One page of an account's history together with its current balance"""
    account_id: str
    kind: AccountKind
    balance: Decimal
    current_page: int
    page_size: int
    total_pages: int
    total_operations: int
    operations: List[AccountOperation]


class LedgerEngine:
    """
    Executes debit, credit and transfer atomically and exposes history
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountDirectory,
        operations: OperationLog,
        lock_manager: Optional[AccountLockManager] = None,
        audit_trail: Optional[AuditTrail] = None,
        max_conflict_retries: int = 3,
        precision: int = 2,
        default_page_size: int = 5
    ):
        self.storage = storage
        self.accounts = accounts
        self.operations = operations
        self.lock_manager = lock_manager or AccountLockManager()
        self.audit_trail = audit_trail
        self.max_conflict_retries = max_conflict_retries
        self.precision = precision
        self.default_page_size = default_page_size
        self.logger = get_logger("ledger.engine")

    # ------------------------------------------------------------------
    # Balance mutations
    # ------------------------------------------------------------------

    def debit(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        principal: Optional[str] = None
    ) -> BankAccount:
        """
        Take money out of an account

        Args:
            account_id: Account to debit
            amount: Strictly positive amount
            description: Free text stored on the operation record
            principal: Caller identity, recorded for audit only

        Returns:
            The updated account

        Raises:
            NotFound: Unknown account
            InvalidArgument: Non-positive or malformed amount
            InsufficientFunds: Debit would cross the account kind's floor
            ConflictRetryable: Concurrent writers kept winning, or lock wait timed out
            StorageFailure: The durable store failed
        """
        try:
            self.accounts.require_account(account_id)
            value = to_positive_amount(amount, self.precision)

            def unit() -> Tuple[BankAccount, str]:
                account = self.accounts.require_account(account_id)
                at = self._next_operation_date(account)
                stored = self._store(apply_debit(account, value), at)
                operation_id = self.operations.append(
                    account_id, OperationType.DEBIT, value, description, at,
                    principal=principal
                )
                self._audit(AuditEventType.DEBIT_APPLIED, "account", account_id, principal, {
                    "operation_id": operation_id,
                    "amount": value,
                    "balance": stored.balance,
                    "description": description
                })
                return stored, operation_id

            account, operation_id = self._run_unit([account_id], unit)
        except _REJECTIONS as e:
            self._reject("debit", [account_id], amount, e, principal)
            raise

        log_action(
            self.logger, "info", f"Debit applied to account {account_id}",
            principal=principal, action="debit", resource=f"account:{account_id}",
            extra={"operation_id": operation_id, "amount": str(value),
                   "balance": str(account.balance)}
        )
        return account

    def credit(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        principal: Optional[str] = None
    ) -> BankAccount:
        """
        Put money into an account. Credits are always admissible.

        Raises:
            NotFound: Unknown account
            InvalidArgument: Non-positive or malformed amount
        """
        try:
            self.accounts.require_account(account_id)
            value = to_positive_amount(amount, self.precision)

            def unit() -> Tuple[BankAccount, str]:
                account = self.accounts.require_account(account_id)
                at = self._next_operation_date(account)
                stored = self._store(apply_credit(account, value), at)
                operation_id = self.operations.append(
                    account_id, OperationType.CREDIT, value, description, at,
                    principal=principal
                )
                self._audit(AuditEventType.CREDIT_APPLIED, "account", account_id, principal, {
                    "operation_id": operation_id,
                    "amount": value,
                    "balance": stored.balance,
                    "description": description
                })
                return stored, operation_id

            account, operation_id = self._run_unit([account_id], unit)
        except _REJECTIONS as e:
            self._reject("credit", [account_id], amount, e, principal)
            raise

        log_action(
            self.logger, "info", f"Credit applied to account {account_id}",
            principal=principal, action="credit", resource=f"account:{account_id}",
            extra={"operation_id": operation_id, "amount": str(value),
                   "balance": str(account.balance)}
        )
        return account

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        description: str,
        principal: Optional[str] = None
    ) -> Tuple[BankAccount, BankAccount]:
        """
        Move money between two accounts as one unit

        The source gets a DEBIT and the destination a CREDIT record, sharing
        a transfer id and operation date. Accounts owned by different
        customers are allowed.

        Returns:
            (updated source, updated destination)

        Raises:
            InvalidArgument: Same source and destination, or bad amount
            NotFound: Either account is unknown
            InsufficientFunds: Source cannot cover the amount; nothing changes
        """
        account_ids = [from_account_id, to_account_id]
        try:
            if from_account_id == to_account_id:
                raise InvalidArgument(
                    f"Cannot transfer from account {from_account_id} to itself"
                )
            value = to_positive_amount(amount, self.precision)
            self.accounts.require_account(from_account_id)
            self.accounts.require_account(to_account_id)

            def unit() -> Tuple[BankAccount, BankAccount, str]:
                source = self.accounts.require_account(from_account_id)
                target = self.accounts.require_account(to_account_id)
                at = self._next_operation_date(source, target)

                debited = apply_debit(source, value)
                credited = apply_credit(target, value)
                stored_source = self._store(debited, at)
                stored_target = self._store(credited, at)

                transfer_id = str(uuid.uuid4())
                debit_id = self.operations.append(
                    from_account_id, OperationType.DEBIT, value,
                    f"{description} (transfer to {to_account_id})", at,
                    principal=principal, transfer_id=transfer_id,
                    counterparty_account_id=to_account_id
                )
                credit_id = self.operations.append(
                    to_account_id, OperationType.CREDIT, value,
                    f"{description} (transfer from {from_account_id})", at,
                    principal=principal, transfer_id=transfer_id,
                    counterparty_account_id=from_account_id
                )
                self._audit(AuditEventType.TRANSFER_COMPLETED, "transfer", transfer_id, principal, {
                    "from_account_id": from_account_id,
                    "to_account_id": to_account_id,
                    "amount": value,
                    "debit_operation_id": debit_id,
                    "credit_operation_id": credit_id,
                    "description": description
                })
                return stored_source, stored_target, transfer_id

            source, target, transfer_id = self._run_unit(account_ids, unit)
        except _REJECTIONS as e:
            self._reject("transfer", account_ids, amount, e, principal)
            raise

        log_action(
            self.logger, "info",
            f"Transfer {transfer_id} from {from_account_id} to {to_account_id}",
            principal=principal, action="transfer", resource=f"transfer:{transfer_id}",
            extra={"amount": str(value), "from_balance": str(source.balance),
                   "to_balance": str(target.balance)}
        )
        return source, target

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> BankAccount:
        """Current account state; raises NotFound"""
        return self.accounts.require_account(account_id)

    def list_operations(self, account_id: str) -> Iterator[AccountOperation]:
        """Lazy newest-first history of an account; raises NotFound eagerly"""
        self.accounts.require_account(account_id)
        return self.operations.list(account_id)

    def page_operations(
        self,
        account_id: str,
        page_index: int = 0,
        page_size: Optional[int] = None
    ) -> Tuple[List[AccountOperation], int]:
        """One newest-first page of history plus the total operation count"""
        self.accounts.require_account(account_id)
        if page_size is None:
            page_size = self.default_page_size
        return self.operations.page(account_id, page_index, page_size)

    def account_history(
        self,
        account_id: str,
        page: int = 0,
        size: Optional[int] = None
    ) -> AccountHistory:
        """
        Paged history view including the account's current balance

        Raises:
            NotFound: Unknown account
            InvalidArgument: Bad paging parameters
        """
        if size is None:
            size = self.default_page_size
        account = self.accounts.require_account(account_id)
        operations, total = self.operations.page(account_id, page, size)

        return AccountHistory(
            account_id=account.id,
            kind=account.kind,
            balance=account.balance,
            current_page=page,
            page_size=size,
            total_pages=(total + size - 1) // size,
            total_operations=total,
            operations=operations
        )

    def reconcile(self, account_id: str) -> bool:
        """
        Check that the cached balance equals the initial balance plus the
        signed sum of the account's operation log
        """
        # Read both sides inside one unit so no writer interleaves
        with self.storage.atomic():
            account = self.accounts.require_account(account_id)
            expected = account.initial_balance + self.operations.signed_total(account_id)

        if account.balance != expected:
            log_action(
                self.logger, "error", f"Balance mismatch on account {account_id}",
                action="reconcile", resource=f"account:{account_id}",
                extra={"balance": str(account.balance), "expected": str(expected)}
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_unit(self, account_ids: Sequence[str], unit: Callable[[], T]) -> T:
        """
        Run `unit` under the account locks inside one storage transaction,
        retrying on optimistic conflicts when this call owns the transaction
        """
        if self.storage.in_transaction():
            # The caller's open unit already has exclusive use of the store;
            # its outcome decides, so no locks and no retry here
            with self.storage.atomic():
                return unit()

        attempts = self.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.lock_manager.acquire(account_ids):
                    with self.storage.atomic():
                        return unit()
            except AccountBusy:
                raise
            except ConflictRetryable as e:
                if attempt >= attempts:
                    log_action(
                        self.logger, "error",
                        f"Giving up after {attempt} conflicting attempts",
                        action="retry", resource=",".join(f"account:{a}" for a in account_ids),
                        extra={"error": str(e)}
                    )
                    raise
                log_action(
                    self.logger, "warning", f"Conflict on attempt {attempt}, retrying",
                    action="retry", resource=",".join(f"account:{a}" for a in account_ids),
                    extra={"error": str(e)}
                )

        raise AssertionError("unreachable")

    def _next_operation_date(self, *accounts: BankAccount) -> datetime:
        """Now, but strictly after the latest operation of every account involved"""
        at = datetime.now(timezone.utc)
        for account in accounts:
            if account.last_operation_at and account.last_operation_at + _TICK > at:
                at = account.last_operation_at + _TICK
        return at

    def _store(self, account: BankAccount, at: datetime) -> BankAccount:
        return self.accounts.put_account(
            replace(account, updated_at=at, last_operation_at=at)
        )

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               principal: Optional[str], metadata: dict) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=principal
            )

    def _reject(self, action: str, account_ids: List[str], amount: AmountLike,
                error: LedgerError, principal: Optional[str]) -> None:
        """Record a request that failed validation; no balance was touched"""
        log_action(
            self.logger, "warning", f"{action.capitalize()} rejected: {error}",
            principal=principal, action=action,
            resource=",".join(f"account:{a}" for a in account_ids),
            extra={"error": type(error).__name__, "amount": str(amount)}
        )
        # Unknown ids are only logged
        for account_id in account_ids:
            if self.accounts.get_account(account_id) is None:
                continue
            self._audit(AuditEventType.OPERATION_REJECTED, "account", account_id, principal, {
                "action": action,
                "amount": str(amount),
                "reason": type(error).__name__,
                "message": str(error)
            })
