"""
Read-side projections joining ledger records with holder names.

Nothing here writes; views are rebuilt on each call from the account store,
the movement journal and the principal directory.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .accounts import Account, AccountStore
from .errors import Forbidden, NotFound
from .journal import Movement, MovementFilter, MovementJournal, MovementKind
from .principals import Principal, PrincipalDirectory, require_active

UNKNOWN_HOLDER = "Unknown holder"
RECENT_MOVEMENTS = 5



def readable_account(accounts: AccountStore, principal: Principal, account_number: str) -> Account:
    """Account by number, provided the principal owns it or is an administrator"""
    rejection = require_active(principal)
    if rejection:
        raise rejection
    account = accounts.get_by_number(account_number)
    if account is None:
        raise NotFound(f"Account {account_number} not found")
    if account.owner_id != principal.id and not principal.is_admin:
        raise Forbidden(f"Not allowed to view account {account_number}")
    return account


def history_page(
    accounts: AccountStore,
    journal: MovementJournal,
    principal: Principal,
    account_number: str,
    kind: Optional[MovementKind] = None,
    offset: int = 0,
    limit: Optional[int] = None
) -> Tuple[int, List[Movement]]:
    """Total and one page of the movements touching a readable account, newest first"""
    account = readable_account(accounts, principal, account_number)
    movement_filter = MovementFilter(account_id=account.id, kind=kind, offset=offset, limit=limit)
    return journal.count(movement_filter), journal.find(movement_filter)


@dataclass(frozen=True)
class AccountView:
    account_id: str
    account_number: str
    account_class: str
    balance: Decimal
    total_inflow: Decimal
    total_outflow: Decimal
    holder_name: str
    is_active: bool


@dataclass(frozen=True)
class MovementView:
    movement: Movement
    source_account_number: Optional[str] = None
    source_holder: Optional[str] = None
    destination_account_number: Optional[str] = None
    destination_holder: Optional[str] = None


@dataclass(frozen=True)
class AccountDetails:
    account: AccountView
    recent_movements: List[MovementView] = field(default_factory=list)


class LedgerProjection:
    """Builds holder-annotated views of accounts and their history"""

    def __init__(self, accounts: AccountStore, journal: MovementJournal,
                 principals: PrincipalDirectory):
        self.accounts = accounts
        self.journal = journal
        self.principals = principals

    def _holder_name(self, owner_id: str) -> str:
        principal = self.principals.resolve(owner_id)
        return principal.name if principal else UNKNOWN_HOLDER

    def account_view(self, account: Account) -> AccountView:
        return AccountView(
            account_id=account.id,
            account_number=account.account_number,
            account_class=account.account_class.value,
            balance=account.balance,
            total_inflow=account.total_inflow,
            total_outflow=account.total_outflow,
            holder_name=self._holder_name(account.owner_id),
            is_active=account.is_active
        )

    def movement_views(self, movements: List[Movement]) -> List[MovementView]:
        cache: Dict[str, Tuple[Optional[str], str]] = {}

        def side(account_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
            if not account_id:
                return None, None
            if account_id not in cache:
                account = self.accounts.get_by_id(account_id)
                if account is None:
                    cache[account_id] = (None, UNKNOWN_HOLDER)
                else:
                    cache[account_id] = (account.account_number, self._holder_name(account.owner_id))
            return cache[account_id]

        views = []
        for movement in movements:
            source_number, source_holder = side(movement.source_account_id)
            destination_number, destination_holder = side(movement.destination_account_id)
            views.append(MovementView(
                movement=movement,
                source_account_number=source_number,
                source_holder=source_holder,
                destination_account_number=destination_number,
                destination_holder=destination_holder
            ))
        return views

    def account_history(
        self,
        principal: Principal,
        account_number: str,
        kind: Optional[MovementKind] = None,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> Tuple[int, List[MovementView]]:
        """
        Movements touching an account, newest first

        Args:
            principal: Caller; must own the account or be an administrator
            account_number: Account to read
            kind: Only movements of this kind
            offset: Number of movements to skip
            limit: Maximum number of movements to return

        Returns:
            Tuple of (total matching movements, page of views)
        """
        total, movements = history_page(
            self.accounts, self.journal, principal, account_number, kind=kind, offset=offset, limit=limit
        )
        return total, self.movement_views(movements)

    def account_details(self, principal: Principal, account_number: str) -> AccountDetails:
        """Account view plus its most recent movements"""
        account = readable_account(self.accounts, principal, account_number)
        recent = self.journal.find(MovementFilter(account_id=account.id, limit=RECENT_MOVEMENTS))
        return AccountDetails(account=self.account_view(account), recent_movements=self.movement_views(recent))
