"""
Audit Trail Module

Tamper-evident record of everything that touched the ledger: customer and
account lifecycle, applied debits/credits/transfers and rejected requests.
Each event is sealed with SHA-256 over its canonical JSON form and the seal
of the event before it, so editing or removing any event breaks the chain.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from decimal import Decimal
import uuid

from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord

logger = get_logger("ledger.audit")


class AuditEventType(Enum):
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_UPDATED = "customer_updated"
    CUSTOMER_DELETED = "customer_deleted"
    ACCOUNT_CREATED = "account_created"
    DEBIT_APPLIED = "debit_applied"
    CREDIT_APPLIED = "credit_applied"
    TRANSFER_COMPLETED = "transfer_completed"
    OPERATION_REJECTED = "operation_rejected"


def _jsonable(value: Any) -> Any:
    """Reduce metadata values to JSON primitives (Decimal as string)"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _seal(payload: Dict[str, Any], previous_hash: str) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256((previous_hash + canonical).encode('utf-8')).hexdigest()


@dataclass
class AuditEvent(StorageRecord):
    """
    One link of the audit chain. ``user_id`` is the principal that asked for
    the action, when the caller supplied one.
    """
    event_type: AuditEventType
    entity_type: str    # customer, account, transfer
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _jsonable(self.metadata or {})

    def payload(self) -> Dict[str, Any]:
        """Everything the seal covers"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

    def calculate_hash(self) -> str:
        return _seal(self.payload(), self.previous_hash)

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


@dataclass
class IntegrityReport:
    """Outcome of re-walking the audit chain"""
    total_events: int = 0
    hash_errors: List[str] = field(default_factory=list)    # ids whose seal no longer matches
    chain_breaks: List[str] = field(default_factory=list)   # ids not linked to their predecessor

    @property
    def valid(self) -> bool:
        return not self.hash_errors and not self.chain_breaks


class AuditTrail:
    """
    Append-only audit chain stored in one table of the shared storage

    Events are appended inside a storage atomic unit, so an event logged
    during a ledger operation commits or rolls back with it.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        # One record keyed by table_name holding the newest sequence and seal
        self.head_table = f"{table_name}_head"
        self._lock = threading.Lock()

    def _ordered(self, records: List[Dict[str, Any]]) -> List[AuditEvent]:
        return sorted((AuditEvent.from_dict(r) for r in records), key=lambda e: e.sequence)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append a sealed event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of thing it happened to
            entity_id: Identifier of that thing
            metadata: Event details; Decimals and datetimes are stringified
            user_id: Principal recorded for the action

        Returns:
            The stored AuditEvent
        """
        # Storage unit first, then the chain lock: the same order every caller uses
        with self.storage.atomic(), self._lock:
            head = self._head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",
                metadata=metadata,
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.insert(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.table_name, {
                'sequence': event.sequence,
                'hash': event.current_hash
            })

        return event

    def _head(self) -> Dict[str, Any]:
        """Sequence and seal of the newest event"""
        head = self.storage.load(self.head_table, self.table_name)
        if head is not None:
            return head
        # Trails written before the head record existed
        records = self.storage.load_all(self.table_name)
        if not records:
            return {'sequence': 0, 'hash': ""}
        tail = max(records, key=lambda r: r['sequence'])
        return {'sequence': tail['sequence'], 'hash': tail['current_hash']}

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Events about one entity in chain order

        Args:
            limit: Keep only the most recent N events
        """
        events = self._ordered(self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        }))
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Events of one type in chain order"""
        return self._ordered(self.storage.find(self.table_name, {'event_type': event_type.value}))

    def verify_integrity(self) -> IntegrityReport:
        """Re-check every seal and every link of the chain"""
        events = self._ordered(self.storage.load_all(self.table_name))
        report = IntegrityReport(total_events=len(events))

        expected_previous = ""
        for event in events:
            if not event.verify_hash():
                report.hash_errors.append(event.id)
            if event.previous_hash != expected_previous:
                report.chain_breaks.append(event.id)
            expected_previous = event.current_hash

        if not report.valid:
            logger.error(
                "Audit chain verification failed: %d bad seals, %d broken links",
                len(report.hash_errors), len(report.chain_breaks)
            )
        return report

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
