"""
Customer Directory Module

Keyed customer records owning bank accounts. Beyond identifier uniqueness
the only rule is that a customer cannot be removed while it owns accounts.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
import re
import uuid

from .errors import InvalidArgument, NotFound
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


@dataclass
class Customer(StorageRecord):
    """
    Account owner
    """
    name: str
    email: str

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise InvalidArgument("Customer name is required")
        if not EMAIL_PATTERN.match(self.email):
            raise InvalidArgument(f"Invalid email format: {self.email!r}")


class CustomerDirectory:
    """
    Creates, searches and removes customers
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        accounts_table: str = "bank_accounts"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "customers"
        self.accounts_table = accounts_table

    def create_customer(
        self,
        name: str,
        email: str,
        customer_id: Optional[str] = None
    ) -> Customer:
        """
        Create a new customer

        Args:
            name: Display name
            email: Contact email
            customer_id: Caller-assigned identifier (generated if not provided)

        Raises:
            InvalidArgument: On empty name or malformed email
            DuplicateRecord: If customer_id is already taken
        """
        now = datetime.now(timezone.utc)
        customer = Customer(
            id=customer_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip() if name else name,
            email=email
        )

        with self.storage.atomic():
            self.storage.insert(self.table_name, customer.id, customer.to_dict())
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.CUSTOMER_CREATED,
                    entity_type="customer",
                    entity_id=customer.id,
                    metadata={"name": customer.name, "email": customer.email}
                )

        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        """Get customer by ID"""
        data = self.storage.load(self.table_name, customer_id)
        if data:
            return Customer.from_dict(data)
        return None

    def require_customer(self, customer_id: str) -> Customer:
        """Get customer by ID or raise NotFound"""
        customer = self.get_customer(customer_id)
        if not customer:
            raise NotFound(f"Customer {customer_id} not found")
        return customer

    def list_customers(self) -> List[Customer]:
        """All customers in creation order"""
        return [Customer.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def search_customers(self, keyword: str) -> List[Customer]:
        """Case-insensitive substring search on customer names"""
        needle = (keyword or "").strip().lower()
        return [c for c in self.list_customers() if needle in c.name.lower()]

    def update_customer(
        self,
        customer_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None
    ) -> Customer:
        """Update contact fields; the identifier never changes"""
        with self.storage.atomic():
            customer = self.require_customer(customer_id)
            updated = Customer(
                id=customer.id,
                created_at=customer.created_at,
                updated_at=datetime.now(timezone.utc),
                name=name.strip() if name is not None else customer.name,
                email=email if email is not None else customer.email
            )
            self.storage.save(self.table_name, updated.id, updated.to_dict())

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.CUSTOMER_UPDATED,
                    entity_type="customer",
                    entity_id=updated.id,
                    metadata={"name": updated.name, "email": updated.email}
                )

        return updated

    def delete_customer(self, customer_id: str) -> None:
        """
        Remove a customer

        Raises:
            NotFound: If the customer does not exist
            InvalidArgument: While the customer still owns accounts
        """
        with self.storage.atomic():
            self.require_customer(customer_id)

            owned = self.storage.count(self.accounts_table, {"customer_id": customer_id})
            if owned:
                raise InvalidArgument(
                    f"Customer {customer_id} still owns {owned} account(s)"
                )

            self.storage.delete(self.table_name, customer_id)

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.CUSTOMER_DELETED,
                    entity_type="customer",
                    entity_id=customer_id
                )
