"""
Favorite Accounts Module

Per-owner address book of destination accounts under a chosen alias. A
favorite only resolves an alias to an account; transfers to favorites go
through the ledger engine like any other transfer.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import uuid

from .accounts import AccountStore
from .audit import AuditEventType, AuditTrail
from .clock import Clock, utc_now
from .errors import DuplicateFavorite, InvalidArgument, NotFound, SelfFavorite
from .locking import LockManager
from .logging_config import get_logger, log_action
from .principals import Principal, require_active
from .storage import StorageInterface, StorageRecord


@dataclass
class Favorite(StorageRecord):
    """Saved destination account"""
    owner_id: str
    account_id: str
    account_number: str
    alias: str


def _clean_alias(alias: str) -> str:
    alias = (alias or "").strip()
    if not alias:
        raise InvalidArgument("Alias is required")
    return alias


class FavoriteRegistry:
    """Manages favorites; unique per (owner, account)"""

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        lock_manager: LockManager,
        audit_trail: Optional[AuditTrail] = None,
        clock: Clock = utc_now
    ):
        self.storage = storage
        self.accounts = accounts
        self.lock_manager = lock_manager
        self.audit_trail = audit_trail
        self.clock = clock
        self.table_name = "favorites"
        self.logger = get_logger("bank_ledger.favorites")

        self.storage.ensure_index(self.table_name, ("owner_id",))
        self.storage.ensure_index(self.table_name, ("owner_id", "account_id"))

    def add_favorite(self, principal: Principal, account_number: str, alias: str) -> Favorite:
        """
        Save another owner's account under an alias

        Raises:
            NotFound: If no account has that number
            SelfFavorite: If the account belongs to the principal
            DuplicateFavorite: If the account is already a favorite
        """
        rejection = require_active(principal)
        if rejection:
            raise rejection
        alias = _clean_alias(alias)

        account = self.accounts.get_by_number(account_number)
        if account is None:
            raise NotFound(f"Account {account_number} does not exist")
        if account.owner_id == principal.id:
            raise SelfFavorite("Cannot add your own account to favorites")

        with self.lock_manager.acquire([f"favorite:{principal.id}:{account.id}"]):
            if self.storage.find(self.table_name, {"owner_id": principal.id, "account_id": account.id}):
                raise DuplicateFavorite(f"Account {account_number} is already a favorite")
            now = self.clock()
            favorite = Favorite(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=principal.id,
                account_id=account.id,
                account_number=account.account_number,
                alias=alias
            )
            self._save(favorite)

        self._record(AuditEventType.FAVORITE_ADDED, principal, favorite, "add_favorite")
        return favorite

    def list_favorites(self, principal: Principal) -> List[Favorite]:
        """Favorites of the principal, oldest first"""
        rejection = require_active(principal)
        if rejection:
            raise rejection
        favorites = [
            Favorite.from_dict(data)
            for data in self.storage.find(self.table_name, {"owner_id": principal.id})
        ]
        favorites.sort(key=lambda f: f.created_at)
        return favorites

    def resolve(self, principal: Principal, favorite_id: str) -> Favorite:
        """
        Look up one of the principal's favorites

        Raises:
            NotFound: If the favorite does not exist or belongs to someone else
        """
        rejection = require_active(principal)
        if rejection:
            raise rejection
        data = self.storage.load(self.table_name, favorite_id)
        if not data or data.get("owner_id") != principal.id:
            raise NotFound("Favorite not found")
        return Favorite.from_dict(data)

    def update_alias(self, principal: Principal, favorite_id: str, alias: str) -> Favorite:
        favorite = self.resolve(principal, favorite_id)
        favorite.alias = _clean_alias(alias)
        favorite.updated_at = self.clock()
        self._save(favorite)
        self._record(AuditEventType.FAVORITE_UPDATED, principal, favorite, "update_favorite")
        return favorite

    def remove_favorite(self, principal: Principal, favorite_id: str) -> None:
        favorite = self.resolve(principal, favorite_id)
        self.storage.delete(self.table_name, favorite.id)
        self._record(AuditEventType.FAVORITE_REMOVED, principal, favorite, "remove_favorite")

    def _save(self, favorite: Favorite) -> None:
        self.storage.save(self.table_name, favorite.id, favorite.to_dict())

    def _record(self, event_type: AuditEventType, principal: Principal,
                favorite: Favorite, action: str) -> None:
        metadata: Dict[str, Any] = {
            "account_number": favorite.account_number,
            "alias": favorite.alias
        }
        log_action(
            self.logger, "info", f"Favorite {event_type.value.split('_')[-1].lower()}",
            user_id=principal.id, action=action, resource=f"favorite:{favorite.id}",
            extra=metadata
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="favorite",
                entity_id=favorite.id,
                metadata=metadata,
                user_id=principal.id
            )
