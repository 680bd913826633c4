"""
Collaborator Interfaces Module

Principals (who is acting) and catalog items (what is being bought) are owned
by external systems. The ledger only consumes them through the small
interfaces below; the in-memory implementations back tests and local runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from .errors import Forbidden, Unauthorized


class Role(Enum):
    """Principal roles"""
    ADMIN = "ADMIN"
    CLIENT = "CLIENT"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller"""
    id: str
    name: str
    role: Role = Role.CLIENT
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class CatalogItem:
    """Product or service that can be purchased from an account"""
    id: str
    name: str
    price: Decimal
    available: bool = True


def require_active(principal: Optional[Principal]) -> Optional[Unauthorized]:
    """Return a rejection when no usable principal is present"""
    if principal is None:
        return Unauthorized("No authenticated principal")
    if not principal.is_active:
        return Unauthorized(f"Principal {principal.id} is inactive")
    return None


def require_admin(principal: Optional[Principal], action: str) -> Optional[Exception]:
    """Return a rejection unless the principal is an active administrator"""
    rejection = require_active(principal)
    if rejection:
        return rejection
    if not principal.is_admin:
        return Forbidden(f"Only administrators may {action}")
    return None


class PrincipalDirectory(ABC):
    """Resolves principal ids to principals"""

    @abstractmethod
    def resolve(self, principal_id: str) -> Optional[Principal]:
        pass


class Catalog(ABC):
    """Looks up purchasable catalog items"""

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[CatalogItem]:
        pass


class InMemoryPrincipalDirectory(PrincipalDirectory):
    def __init__(self):
        self._principals: Dict[str, Principal] = {}

    def add(self, principal: Principal) -> Principal:
        self._principals[principal.id] = principal
        return principal

    def resolve(self, principal_id: str) -> Optional[Principal]:
        return self._principals.get(principal_id)


class InMemoryCatalog(Catalog):
    def __init__(self):
        self._items: Dict[str, CatalogItem] = {}

    def add(self, item: CatalogItem) -> CatalogItem:
        self._items[item.id] = item
        return item

    def get_item(self, item_id: str) -> Optional[CatalogItem]:
        return self._items.get(item_id)
