"""
Tests for holder-annotated account and history views
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from bank_ledger.accounts import AccountStore
from bank_ledger.engine import LedgerEngine
from bank_ledger.errors import Forbidden, NotFound
from bank_ledger.journal import MovementJournal, MovementKind
from bank_ledger.locking import AccountLockManager
from bank_ledger.principals import (
    CatalogItem, InMemoryCatalog, InMemoryPrincipalDirectory, Principal, Role
)
from bank_ledger.projections import RECENT_MOVEMENTS, UNKNOWN_HOLDER, LedgerProjection
from bank_ledger.storage import InMemoryStorage


class TestLedgerProjection:
    """Test account views, history pages and details"""

    def setup_method(self):
        """Set up test fixtures"""
        self.now = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)
        clock = lambda: self.now
        storage = InMemoryStorage()
        lock_manager = AccountLockManager()
        accounts = AccountStore(storage, lock_manager, clock=clock)
        journal = MovementJournal(storage)
        catalog = InMemoryCatalog()
        catalog.add(CatalogItem(id="P1", name="Phone plan", price=Decimal('5.00')))
        self.engine = LedgerEngine(storage, accounts, journal, lock_manager, catalog, clock=clock)

        self.directory = InMemoryPrincipalDirectory()
        self.admin = self.directory.add(Principal(id="ADM", name="Operator", role=Role.ADMIN))
        self.alice = self.directory.add(Principal(id="U1", name="Alice Perez"))
        self.bob = self.directory.add(Principal(id="U2", name="Bob Garcia"))
        self.projection = LedgerProjection(accounts, journal, self.directory)

        self.x = self.engine.create_account("U1")
        self.y = self.engine.create_account("U2")
        self.ghost = self.engine.create_account("U404")

    def tick(self):
        self.now += timedelta(minutes=1)

    def test_account_view(self):
        self.engine.credit(self.x.account_number, "100", "", self.admin)
        view = self.projection.account_view(self.engine.accounts.get_by_id(self.x.id))

        assert view.holder_name == "Alice Perez"
        assert view.balance == Decimal('100.00')
        assert view.total_inflow == Decimal('100.00')
        assert view.account_class == "SAVINGS"

    def test_unknown_holder(self):
        view = self.projection.account_view(self.ghost)
        assert view.holder_name == UNKNOWN_HOLDER

    def test_history_names_both_sides(self):
        """Test transfer views carry account numbers and holder names"""
        self.engine.credit(self.x.account_number, "100", "", self.admin)
        self.tick()
        self.engine.transfer(self.x.account_number, self.y.account_number, "30", "Dinner", self.alice)
        self.tick()
        self.engine.purchase(self.x.id, "P1", "", self.alice)

        total, views = self.projection.account_history(self.alice, self.x.account_number)

        assert total == 3
        purchase, transfer, credit = views
        assert purchase.movement.kind == MovementKind.PURCHASE
        assert purchase.destination_account_number is None
        assert transfer.source_holder == "Alice Perez"
        assert transfer.destination_holder == "Bob Garcia"
        assert transfer.destination_account_number == self.y.account_number
        assert credit.source_account_number is None

    def test_history_filter_and_page(self):
        self.engine.credit(self.x.account_number, "100", "", self.admin)
        for _ in range(3):
            self.tick()
            self.engine.transfer(self.x.account_number, self.y.account_number, "1", "", self.alice)

        total, views = self.projection.account_history(
            self.alice, self.x.account_number, kind=MovementKind.TRANSFER, offset=1, limit=1
        )

        assert total == 3
        assert len(views) == 1
        assert views[0].movement.kind == MovementKind.TRANSFER

    def test_history_access(self):
        with pytest.raises(Forbidden):
            self.projection.account_history(self.bob, self.x.account_number)
        with pytest.raises(NotFound):
            self.projection.account_history(self.admin, "0000000000")
        total, _ = self.projection.account_history(self.admin, self.x.account_number)
        assert total == 0

    def test_account_details_limits_recent(self):
        self.engine.credit(self.x.account_number, "100", "", self.admin)
        for _ in range(RECENT_MOVEMENTS + 2):
            self.tick()
            self.engine.transfer(self.x.account_number, self.y.account_number, "1", "", self.alice)

        details = self.projection.account_details(self.alice, self.x.account_number)

        assert details.account.balance == Decimal('100.00') - RECENT_MOVEMENTS - 2
        assert len(details.recent_movements) == RECENT_MOVEMENTS
        assert details.recent_movements[0].movement.timestamp == self.now
