"""
Account Management Module

Owns account records: balance, cumulative inflow/outflow, owner and the
ordered list of movement ids. ``apply_delta`` is the only primitive that
changes a balance and it refuses to let a balance go negative.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import random
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, utc_now
from .errors import Conflict, InsufficientFunds, NotFound, OwnerAlreadyHasAccount
from .locking import LockManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class AccountClass(Enum):
    """Banking product classes"""
    SAVINGS = "SAVINGS"
    CHECKING = "CHECKING"


def account_lock_key(account_id: str) -> str:
    """Lock key guarding one account's read-modify-write cycle"""
    return f"account:{account_id}"


@dataclass
class Account(StorageRecord):
    """
    Bank account. The stored balance always equals the sum of inflows minus
    the sum of outflows recorded in the movement journal.
    """
    account_number: str
    owner_id: str
    account_class: AccountClass = AccountClass.SAVINGS
    balance: Decimal = Decimal('0.00')
    total_inflow: Decimal = Decimal('0.00')
    total_outflow: Decimal = Decimal('0.00')
    movement_ids: List[str] = field(default_factory=list)
    is_active: bool = True
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['account_class'] = self.account_class.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['account_class'] = AccountClass(data['account_class'])
        for key in ('balance', 'total_inflow', 'total_outflow'):
            data[key] = Decimal(data[key])
        data['movement_ids'] = list(data.get('movement_ids', []))
        return super().from_dict(data)


class AccountStore:
    """
    Manages account lifecycle and the atomic balance mutation primitive
    """

    MAX_NUMBER_ATTEMPTS = 100

    def __init__(
        self,
        storage: StorageInterface,
        lock_manager: LockManager,
        audit_trail: Optional[AuditTrail] = None,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None
    ):
        self.storage = storage
        self.lock_manager = lock_manager
        self.audit_trail = audit_trail
        self.clock = clock
        self.rng = rng or random.Random()
        self.table_name = "accounts"
        self.logger = get_logger("bank_ledger.accounts")

        self.storage.ensure_index(self.table_name, ("owner_id",))
        self.storage.ensure_index(self.table_name, ("account_number",))

    def create_account(self, owner_id: str, account_class: AccountClass = AccountClass.SAVINGS) -> Account:
        """
        Open the single account an owner may hold

        Args:
            owner_id: Principal id of the owner
            account_class: Product class, SAVINGS by default

        Returns:
            Created Account with zero balance

        Raises:
            OwnerAlreadyHasAccount: If the owner already has an account
            Conflict: If no free account number was found
        """
        with self.lock_manager.acquire([f"owner:{owner_id}"]):
            if self.get_by_owner(owner_id):
                raise OwnerAlreadyHasAccount(f"Owner {owner_id} already has an account")

            account = None
            for _ in range(self.MAX_NUMBER_ATTEMPTS):
                candidate = self._candidate_number()
                with self.lock_manager.acquire([f"account-number:{candidate}"]):
                    if self.get_by_number(candidate):
                        self.logger.debug(f"Account number {candidate} taken, retrying")
                        continue
                    now = self.clock()
                    account = Account(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        account_number=candidate,
                        owner_id=owner_id,
                        account_class=account_class
                    )
                    self._save_account(account)
                    break

            if account is None:
                raise Conflict("Could not allocate a unique account number")

        log_action(
            self.logger, "info", "Account created",
            user_id=owner_id, action="create_account", resource=f"account:{account.id}",
            extra={"account_number": account.account_number, "account_class": account_class.value}
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "account_number": account.account_number,
                    "owner_id": owner_id,
                    "account_class": account_class.value
                },
                user_id=owner_id
            )
        return account

    def get_by_id(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        return Account.from_dict(data) if data else None

    def get_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        found = self.storage.find(self.table_name, {"account_number": account_number})
        return Account.from_dict(found[0]) if found else None

    def get_by_owner(self, owner_id: str) -> Optional[Account]:
        """Get the account belonging to an owner"""
        found = self.storage.find(self.table_name, {"owner_id": owner_id})
        return Account.from_dict(found[0]) if found else None

    def list_accounts(self, offset: int = 0, limit: Optional[int] = None) -> List[Account]:
        """List accounts oldest first"""
        accounts = [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]
        accounts.sort(key=lambda a: a.created_at)
        end = offset + limit if limit is not None else None
        return accounts[offset:end]

    def apply_delta(
        self,
        account_id: str,
        balance_delta: Decimal,
        inflow_delta: Decimal = Decimal('0'),
        outflow_delta: Decimal = Decimal('0'),
        movement_id: Optional[str] = None
    ) -> Account:
        """
        Atomically adjust an account's balance and cumulative totals

        Args:
            account_id: Account to mutate
            balance_delta: Signed change to the balance
            inflow_delta: Change to cumulative inflow
            outflow_delta: Change to cumulative outflow
            movement_id: Movement to append to the account's history

        Returns:
            Updated Account

        Raises:
            NotFound: If the account does not exist
            InsufficientFunds: If the balance would become negative
        """
        with self.lock_manager.acquire([account_lock_key(account_id)]):
            with self.storage.atomic():
                account = self.get_by_id(account_id)
                if not account:
                    raise NotFound(f"Account {account_id} not found")

                new_balance = account.balance + balance_delta
                if new_balance < 0:
                    raise InsufficientFunds(
                        f"Insufficient funds in {account.account_number}: "
                        f"balance {account.balance}, requested {-balance_delta}"
                    )

                account.balance = new_balance
                account.total_inflow += inflow_delta
                account.total_outflow += outflow_delta
                if movement_id:
                    account.movement_ids.append(movement_id)
                account.version += 1
                account.updated_at = self.clock()
                self._save_account(account, expected_version=account.version - 1)
        return account

    def set_active(self, account_id: str, active: bool, actor_id: Optional[str] = None) -> Account:
        """Deactivate (soft delete) or reactivate an account"""
        account = self._update(account_id, is_active=active)
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_UPDATED if active else AuditEventType.ACCOUNT_DEACTIVATED,
                entity_type="account",
                entity_id=account_id,
                metadata={"is_active": active},
                user_id=actor_id
            )
        return account

    def change_class(self, account_id: str, account_class: AccountClass, actor_id: Optional[str] = None) -> Account:
        """Switch an account between product classes"""
        account = self._update(account_id, account_class=account_class)
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_UPDATED,
                entity_type="account",
                entity_id=account_id,
                metadata={"account_class": account_class.value},
                user_id=actor_id
            )
        return account

    def _update(self, account_id: str, **changes) -> Account:
        with self.lock_manager.acquire([account_lock_key(account_id)]):
            account = self.get_by_id(account_id)
            if not account:
                raise NotFound(f"Account {account_id} not found")
            for key, value in changes.items():
                setattr(account, key, value)
            account.version += 1
            account.updated_at = self.clock()
            self._save_account(account, expected_version=account.version - 1)
        return account

    def _candidate_number(self) -> str:
        """Ten digits: the tail of the millisecond clock plus four random digits"""
        millis = str(int(self.clock().timestamp() * 1000))
        return millis[-6:].rjust(6, "0") + f"{self.rng.randint(0, 9999):04d}"

    def _save_account(self, account: Account, expected_version: Optional[int] = None) -> None:
        if expected_version is not None:
            stored = self.storage.load(self.table_name, account.id)
            if stored is None or stored.get('version', 0) != expected_version:
                self.logger.error(f"Lost update on account {account.account_number} detected")
                raise Conflict(f"Account {account.account_number} was modified concurrently")
        self.storage.save(self.table_name, account.id, account.to_dict())
