"""
Ledger System Assembly

Wires storage, audit trail, directories, operation log, lock manager and the
ledger engine together from one LedgerConfig.
"""

from dataclasses import dataclass
from typing import Optional

from .accounts import AccountDirectory
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .customers import CustomerDirectory
from .ledger import LedgerEngine
from .locking import AccountLockManager
from .logging_config import get_logger, setup_logging
from .operations import OperationLog
from .storage import StorageInterface, create_storage


@dataclass
class LedgerSystem:
    """Ledger components initialized against one shared store"""
    config: LedgerConfig
    storage: StorageInterface
    audit_trail: Optional[AuditTrail]
    customers: CustomerDirectory
    accounts: AccountDirectory
    operations: OperationLog
    lock_manager: AccountLockManager
    ledger: LedgerEngine

    def close(self) -> None:
        self.storage.close()


def create_ledger_system(
    config: Optional[LedgerConfig] = None,
    storage: Optional[StorageInterface] = None,
    configure_logging: bool = True
) -> LedgerSystem:
    """
    Build a ready-to-use ledger system

    Args:
        config: Settings to use (the global configuration if omitted)
        storage: Pre-built store, overriding the configured backend
        configure_logging: Install the ledger log handler from config
    """
    config = config or get_config()

    if configure_logging:
        setup_logging(
            level=config.log_level,
            log_format=config.log_format,
            log_file=config.log_file
        )

    storage = storage or create_storage(config)
    audit_trail = AuditTrail(storage) if config.enable_audit_logging else None

    customers = CustomerDirectory(storage, audit_trail)
    accounts = AccountDirectory(storage, customers, audit_trail, precision=config.amount_precision)
    operations = OperationLog(storage, max_page_size=config.max_page_size)
    lock_manager = AccountLockManager(timeout=config.lock_timeout_seconds)

    ledger = LedgerEngine(
        storage,
        accounts,
        operations,
        lock_manager=lock_manager,
        audit_trail=audit_trail,
        max_conflict_retries=config.max_conflict_retries,
        precision=config.amount_precision,
        default_page_size=config.default_page_size
    )

    get_logger("ledger").info(
        "Ledger system ready (backend=%s, audit=%s)",
        config.storage_backend, config.enable_audit_logging
    )

    return LedgerSystem(
        config=config,
        storage=storage,
        audit_trail=audit_trail,
        customers=customers,
        accounts=accounts,
        operations=operations,
        lock_manager=lock_manager,
        ledger=ledger
    )
