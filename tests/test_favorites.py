"""
Tests for the favorites address book
"""

import pytest
from datetime import datetime, timezone

from bank_ledger.accounts import AccountStore
from bank_ledger.audit import AuditEventType, AuditTrail
from bank_ledger.errors import (
    DuplicateFavorite, InvalidArgument, NotFound, SelfFavorite, Unauthorized
)
from bank_ledger.favorites import FavoriteRegistry
from bank_ledger.locking import AccountLockManager
from bank_ledger.principals import Principal
from bank_ledger.storage import InMemoryStorage


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestFavoriteRegistry:
    """Test adding, resolving and removing favorites"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        lock_manager = AccountLockManager()
        self.accounts = AccountStore(self.storage, lock_manager, audit_trail=self.audit_trail, clock=lambda: NOW)
        self.registry = FavoriteRegistry(
            self.storage, self.accounts, lock_manager, audit_trail=self.audit_trail, clock=lambda: NOW
        )
        self.alice = Principal(id="U1", name="Alice")
        self.bob = Principal(id="U2", name="Bob")
        self.alice_account = self.accounts.create_account("U1")
        self.bob_account = self.accounts.create_account("U2")

    def test_add_favorite(self):
        favorite = self.registry.add_favorite(self.alice, self.bob_account.account_number, "  Landlord ")

        assert favorite.alias == "Landlord"
        assert favorite.owner_id == "U1"
        assert favorite.account_id == self.bob_account.id
        assert self.registry.list_favorites(self.alice) == [favorite]
        assert self.registry.list_favorites(self.bob) == []

        events = self.audit_trail.get_events_for_entity("favorite", favorite.id)
        assert events[0].event_type == AuditEventType.FAVORITE_ADDED

    def test_add_rejections(self):
        with pytest.raises(NotFound):
            self.registry.add_favorite(self.alice, "0000000000", "Nobody")
        with pytest.raises(SelfFavorite):
            self.registry.add_favorite(self.alice, self.alice_account.account_number, "Me")
        with pytest.raises(InvalidArgument):
            self.registry.add_favorite(self.alice, self.bob_account.account_number, "   ")
        with pytest.raises(Unauthorized):
            self.registry.add_favorite(
                Principal(id="U1", name="Alice", is_active=False), self.bob_account.account_number, "Bob"
            )

    def test_unique_per_owner_and_account(self):
        """Test the same account cannot be saved twice, even under another alias"""
        self.registry.add_favorite(self.alice, self.bob_account.account_number, "Bob")
        with pytest.raises(DuplicateFavorite):
            self.registry.add_favorite(self.alice, self.bob_account.account_number, "Bobby")

        # Someone else may still save it
        carol_account = self.accounts.create_account("U3")
        carol = Principal(id="U3", name="Carol")
        assert self.registry.add_favorite(carol, self.bob_account.account_number, "Bob")
        assert carol_account.owner_id == "U3"

    def test_resolve_is_owner_scoped(self):
        favorite = self.registry.add_favorite(self.alice, self.bob_account.account_number, "Bob")

        assert self.registry.resolve(self.alice, favorite.id).account_number == self.bob_account.account_number
        with pytest.raises(NotFound):
            self.registry.resolve(self.bob, favorite.id)
        with pytest.raises(NotFound):
            self.registry.resolve(self.alice, "missing")

    def test_update_alias(self):
        favorite = self.registry.add_favorite(self.alice, self.bob_account.account_number, "Bob")
        updated = self.registry.update_alias(self.alice, favorite.id, "Roommate")

        assert updated.alias == "Roommate"
        assert self.registry.resolve(self.alice, favorite.id).alias == "Roommate"
        with pytest.raises(NotFound):
            self.registry.update_alias(self.bob, favorite.id, "Hijacked")

    def test_remove_favorite(self):
        favorite = self.registry.add_favorite(self.alice, self.bob_account.account_number, "Bob")
        self.registry.remove_favorite(self.alice, favorite.id)

        assert self.registry.list_favorites(self.alice) == []
        # Removing frees the slot for the same account
        self.registry.add_favorite(self.alice, self.bob_account.account_number, "Bob again")

        events = self.audit_trail.get_events_for_entity("favorite", favorite.id)
        assert events[-1].event_type == AuditEventType.FAVORITE_REMOVED
