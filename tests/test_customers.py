"""
Tests for the customer directory
"""

import pytest

from bank_ledger.accounts import AccountDirectory
from bank_ledger.audit import AuditEventType, AuditTrail
from bank_ledger.customers import Customer, CustomerDirectory
from bank_ledger.errors import DuplicateRecord, InvalidArgument, NotFound
from bank_ledger.storage import InMemoryStorage


class TestCustomerDirectory:

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.customers = CustomerDirectory(self.storage, self.audit_trail)
        self.accounts = AccountDirectory(self.storage, self.customers, self.audit_trail)

    def test_create_and_get(self):
        customer = self.customers.create_customer("  Alice Martin ", "alice@example.com")
        assert customer.name == "Alice Martin"
        assert self.customers.get_customer(customer.id) == customer
        assert self.customers.get_customer("missing") is None

    def test_caller_assigned_id(self):
        customer = self.customers.create_customer("Alice", "alice@example.com", customer_id="C1")
        assert customer.id == "C1"
        with pytest.raises(DuplicateRecord):
            self.customers.create_customer("Other", "other@example.com", customer_id="C1")

    def test_validation(self):
        with pytest.raises(InvalidArgument):
            self.customers.create_customer("   ", "alice@example.com")
        with pytest.raises(InvalidArgument):
            self.customers.create_customer("Alice", "not-an-email")
        assert self.customers.list_customers() == []

    def test_require_customer(self):
        with pytest.raises(NotFound):
            self.customers.require_customer("missing")

    def test_search_is_case_insensitive(self):
        self.customers.create_customer("Alice Martin", "alice@example.com")
        self.customers.create_customer("Bob Martinez", "bob@example.com")
        self.customers.create_customer("Carol King", "carol@example.com")

        assert [c.name for c in self.customers.search_customers("martin")] == [
            "Alice Martin", "Bob Martinez"
        ]
        assert self.customers.search_customers("zzz") == []

    def test_update_customer(self):
        customer = self.customers.create_customer("Alice", "alice@example.com")
        updated = self.customers.update_customer(customer.id, email="alice@new.example.com")

        assert updated.id == customer.id
        assert updated.name == "Alice"
        assert updated.email == "alice@new.example.com"
        assert self.customers.require_customer(customer.id).email == "alice@new.example.com"

    def test_update_rejects_bad_email(self):
        customer = self.customers.create_customer("Alice", "alice@example.com")
        with pytest.raises(InvalidArgument):
            self.customers.update_customer(customer.id, email="broken")
        assert self.customers.require_customer(customer.id).email == "alice@example.com"

    def test_delete_customer(self):
        customer = self.customers.create_customer("Alice", "alice@example.com")
        self.customers.delete_customer(customer.id)
        assert self.customers.get_customer(customer.id) is None
        with pytest.raises(NotFound):
            self.customers.delete_customer(customer.id)

    def test_cannot_delete_customer_with_accounts(self):
        customer = self.customers.create_customer("Alice", "alice@example.com")
        self.accounts.create_saving_account(customer.id)

        with pytest.raises(InvalidArgument, match="owns 1 account"):
            self.customers.delete_customer(customer.id)
        assert self.customers.get_customer(customer.id) is not None

    def test_lifecycle_is_audited(self):
        customer = self.customers.create_customer("Alice", "alice@example.com")
        self.customers.update_customer(customer.id, name="Alice M")
        self.customers.delete_customer(customer.id)

        events = self.audit_trail.get_events_for_entity("customer", customer.id)
        assert [e.event_type for e in events] == [
            AuditEventType.CUSTOMER_CREATED,
            AuditEventType.CUSTOMER_UPDATED,
            AuditEventType.CUSTOMER_DELETED,
        ]

    def test_round_trip(self):
        customer = self.customers.create_customer("Alice", "alice@example.com")
        assert Customer.from_dict(customer.to_dict()) == customer
