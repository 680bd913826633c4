"""
Ledger Engine Module

The transactional boundary for every monetary operation. Each operation
locks the accounts it touches (ascending key order), opens a storage
transaction, re-reads state and evaluates policy inside the lock, then
mutates balances and appends the movement before committing. Readers never
observe half of a movement.
"""

from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Any, Tuple, Union
import uuid

from .accounts import Account, AccountClass, AccountStore, account_lock_key
from .audit import AuditEventType, AuditTrail
from .clock import Clock, business_day, utc_now
from .config import LedgerConfig
from .currency import CurrencyConverter, CurrencyRepository, parse_amount
from .errors import (
    InvalidArgument, LedgerError, LedgerIntegrityError, NotFound, StorageTimeout
)
from .favorites import FavoriteRegistry
from .journal import Movement, MovementFilter, MovementJournal, MovementKind
from .locking import AccountLockManager, LockManager
from .logging_config import get_logger, log_action
from .policy import LedgerLimits, LedgerPolicy
from .principals import Catalog, Principal
from .projections import history_page
from .reversal import ReversalWindow
from .storage import StorageInterface, create_storage

Amount = Union[Decimal, int, str]


def _raise_if(rejection: Optional[LedgerError]) -> None:
    if rejection is not None:
        raise rejection


class LedgerEngine:
    """
    Executes transfers, deposits, credits, purchases and deposit reversals
    atomically against the account store and movement journal
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        journal: MovementJournal,
        lock_manager: LockManager,
        catalog: Catalog,
        limits: Optional[LedgerLimits] = None,
        audit_trail: Optional[AuditTrail] = None,
        favorites: Optional[FavoriteRegistry] = None,
        converter: Optional[CurrencyConverter] = None,
        clock: Clock = utc_now
    ):
        self.storage = storage
        self.accounts = accounts
        self.journal = journal
        self.lock_manager = lock_manager
        self.catalog = catalog
        self.limits = limits or LedgerLimits()
        self.policy = LedgerPolicy(self.limits)
        self.reversal_window = ReversalWindow(self.limits.reversal_window)
        self.audit_trail = audit_trail
        self.favorites = favorites
        self.converter = converter
        self.clock = clock
        self.logger = get_logger("bank_ledger.engine")

    @classmethod
    def from_config(
        cls,
        config: LedgerConfig,
        catalog: Catalog,
        storage: Optional[StorageInterface] = None,
        clock: Clock = utc_now
    ) -> 'LedgerEngine':
        """Wire an engine and its collaborators from configuration"""
        storage = storage or create_storage(config.database_url, timeout=config.storage_timeout_seconds)
        lock_manager = AccountLockManager(timeout=config.lock_timeout_seconds)
        audit_trail = AuditTrail(storage) if config.enable_audit_logging else None
        accounts = AccountStore(storage, lock_manager, audit_trail=audit_trail, clock=clock)
        journal = MovementJournal(storage, business_timezone=config.business_timezone)
        favorites = FavoriteRegistry(storage, accounts, lock_manager, audit_trail=audit_trail, clock=clock)
        converter = CurrencyConverter(CurrencyRepository(storage), base_code=config.base_currency)
        return cls(
            storage=storage,
            accounts=accounts,
            journal=journal,
            lock_manager=lock_manager,
            catalog=catalog,
            limits=LedgerLimits.from_config(config),
            audit_trail=audit_trail,
            favorites=favorites,
            converter=converter,
            clock=clock
        )

    # Account lifecycle

    def create_account(self, owner_id: str, account_class: AccountClass = AccountClass.SAVINGS) -> Account:
        """Open the single account an owner may hold"""
        return self.accounts.create_account(owner_id, account_class)

    # Monetary operations

    def transfer(
        self,
        source_number: str,
        destination_number: str,
        amount: Amount,
        description: str,
        initiator: Principal
    ) -> Movement:
        """
        Move money between two accounts

        Args:
            source_number: Account to debit
            destination_number: Account to credit
            amount: Amount in base currency
            description: Free text stored on the movement
            initiator: Caller; must own the source unless administrator

        Returns:
            The recorded TRANSFER movement

        Raises:
            LedgerError: The first violated rule; nothing is mutated
        """
        try:
            movement = self._transfer(source_number, destination_number, amount, description, initiator)
        except LedgerError as e:
            self._rejected("transfer", initiator, e, {
                "source": source_number, "destination": destination_number, "amount": str(amount)
            })
            raise
        self._recorded(movement, initiator)
        return movement

    def deposit(
        self,
        destination_number: str,
        amount: Amount,
        description: str,
        initiator: Principal,
        currency: Optional[str] = None
    ) -> Movement:
        """
        Credit cash into an account. Deposits stay reversible by an
        administrator for the configured window.

        Args:
            destination_number: Account to credit
            amount: Amount, in ``currency`` when given, otherwise base currency
            description: Free text; the initiator's name is appended
            initiator: Any active principal
            currency: Optional foreign currency code the amount is expressed in
        """
        try:
            movement = self._credit_account(
                MovementKind.DEPOSIT, destination_number, amount, description, initiator, currency
            )
        except LedgerError as e:
            self._rejected("deposit", initiator, e, {"destination": destination_number, "amount": str(amount)})
            raise
        self._recorded(movement, initiator)
        return movement

    def credit(
        self,
        destination_number: str,
        amount: Amount,
        description: str,
        initiator: Principal,
        currency: Optional[str] = None
    ) -> Movement:
        """Administrative credit; like a deposit but not reversible"""
        try:
            movement = self._credit_account(
                MovementKind.CREDIT, destination_number, amount, description, initiator, currency
            )
        except LedgerError as e:
            self._rejected("credit", initiator, e, {"destination": destination_number, "amount": str(amount)})
            raise
        self._recorded(movement, initiator)
        return movement

    def purchase(self, account_id: str, item_id: str, description: str, initiator: Principal) -> Movement:
        """Pay for a catalog item from the caller's own account"""
        try:
            movement = self._purchase(account_id, item_id, description, initiator)
        except LedgerError as e:
            self._rejected("purchase", initiator, e, {"account_id": account_id, "item_id": item_id})
            raise
        self._recorded(movement, initiator)
        return movement

    def reverse_deposit(self, movement_id: str, initiator: Principal) -> Movement:
        """
        Undo a deposit inside the reversal window

        Returns:
            The CANCELLATION movement linked to the deposit

        Raises:
            AlreadyReversed: If the deposit was already reversed
            ReversalWindowExpired: If the window has passed
            InsufficientFunds: If the deposited funds were already spent
        """
        try:
            cancellation = self._reverse_deposit(movement_id, initiator)
        except LedgerError as e:
            self._rejected("reverse_deposit", initiator, e, {"movement_id": movement_id})
            raise

        self._recorded(cancellation, initiator)
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.DEPOSIT_REVERSED,
                entity_type="movement",
                entity_id=movement_id,
                metadata={"cancellation_id": cancellation.id, "amount": cancellation.amount},
                user_id=initiator.id
            )
        return cancellation

    def transfer_to_favorite(
        self,
        favorite_id: str,
        amount: Amount,
        initiator: Principal,
        description: str = "Transfer to favorite"
    ) -> Movement:
        """Transfer from the caller's own account to one of their favorites"""
        try:
            if self.favorites is None:
                raise NotFound("Favorites are not enabled")
            favorite = self.favorites.resolve(initiator, favorite_id)
            source = self.accounts.get_by_owner(initiator.id)
            if source is None:
                raise NotFound("You have no account to transfer from")
            movement = self._transfer(
                source.account_number, favorite.account_number, amount,
                f"{description} (to favorite: {favorite.alias})", initiator
            )
        except LedgerError as e:
            self._rejected("transfer_to_favorite", initiator, e, {
                "favorite_id": favorite_id, "amount": str(amount)
            })
            raise
        self._recorded(movement, initiator)
        return movement

    # Reads

    def history(
        self,
        principal: Principal,
        account_number: str,
        kind: Optional[MovementKind] = None,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> Tuple[int, List[Movement]]:
        """
        Movements touching an account, newest first

        Returns:
            Tuple of (total matching movements, requested page)
        """
        return history_page(
            self.accounts, self.journal, principal, account_number, kind=kind, offset=offset, limit=limit
        )

    def verify_account(self, account_id: str) -> Account:
        """
        Recompute an account's balance and totals from the journal

        Raises:
            NotFound: If the account does not exist
            LedgerIntegrityError: If stored values disagree with the journal
        """
        with self.lock_manager.acquire([account_lock_key(account_id)]):
            account = self.accounts.get_by_id(account_id)
            if account is None:
                raise NotFound(f"Account {account_id} not found")
            movements = self.journal.find(MovementFilter(account_id=account_id))

        inflow = sum((m.amount for m in movements if m.destination_account_id == account_id), Decimal('0'))
        outflow = sum((m.amount for m in movements if m.source_account_id == account_id), Decimal('0'))

        problems = []
        if account.balance != inflow - outflow:
            problems.append(f"balance {account.balance} != {inflow - outflow}")
        if account.total_inflow != inflow:
            problems.append(f"total_inflow {account.total_inflow} != {inflow}")
        if account.total_outflow != outflow:
            problems.append(f"total_outflow {account.total_outflow} != {outflow}")
        if set(account.movement_ids) != {m.id for m in movements}:
            problems.append("movement ids do not match the journal")

        if problems:
            self.logger.critical(f"Account {account.account_number} failed verification: {'; '.join(problems)}")
            raise LedgerIntegrityError(
                f"Account {account.account_number} disagrees with the journal: {'; '.join(problems)}"
            )
        return account

    # Internals

    @contextmanager
    def _transaction(self, account_ids: Iterable[str]):
        """Hold the account locks and one storage transaction for the block"""
        with self.lock_manager.acquire([account_lock_key(a) for a in account_ids]):
            self.storage.begin_transaction()
            try:
                yield
            except BaseException:
                try:
                    self.storage.rollback()
                except Exception as rollback_error:
                    self.logger.critical(f"Rollback failed: {rollback_error}")
                    raise LedgerIntegrityError(f"Rollback failed: {rollback_error}") from rollback_error
                raise
            try:
                self.storage.commit()
            except StorageTimeout:
                raise
            except Exception as commit_error:
                self.logger.critical(f"Commit failed: {commit_error}")
                try:
                    self.storage.rollback()
                except Exception as rollback_error:
                    self.logger.critical(f"Rollback after failed commit also failed: {rollback_error}")
                raise LedgerIntegrityError(f"Commit failed: {commit_error}") from commit_error

    def _new_movement(self, kind: MovementKind, amount: Decimal, initiator: Principal,
                      description: str, **sides: Any) -> Movement:
        now = self.clock()
        return Movement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            amount=amount,
            timestamp=now,
            value_date=self.journal.value_date_for(now),
            description=description,
            initiator_id=initiator.id,
            **sides
        )

    def _transfer(self, source_number: str, destination_number: str, amount: Amount,
                  description: str, initiator: Principal) -> Movement:
        amount = parse_amount(amount)
        source = self.accounts.get_by_number(source_number)
        destination = self.accounts.get_by_number(destination_number)
        if source is None or destination is None:
            _raise_if(self.policy.check_transfer(initiator, source, destination, amount, Decimal('0')))

        with self._transaction([source.id, destination.id]):
            source = self.accounts.get_by_id(source.id)
            destination = self.accounts.get_by_id(destination.id)
            today = business_day(self.clock(), self.journal.business_timezone)
            transferred_today = self.journal.transferred_on(source.id, today) if source else Decimal('0')
            _raise_if(self.policy.check_transfer(initiator, source, destination, amount, transferred_today))

            movement = self._new_movement(
                MovementKind.TRANSFER, amount, initiator, description or "Transfer",
                source_account_id=source.id, destination_account_id=destination.id
            )
            self.journal.append(movement)
            self.accounts.apply_delta(source.id, -amount, outflow_delta=amount, movement_id=movement.id)
            self.accounts.apply_delta(destination.id, amount, inflow_delta=amount, movement_id=movement.id)
        return movement

    def _to_base(self, amount: Decimal, currency: Optional[str]) -> Tuple[Decimal, Dict[str, Decimal]]:
        """Convert a foreign amount to base currency, returning the snapshot fields"""
        if not currency:
            return amount, {}
        if self.converter is None:
            raise InvalidArgument("Currency conversion is not configured")
        conversion = self.converter.convert(amount, currency, self.converter.base_code)
        if conversion.from_code == conversion.to_code:
            return amount, {}
        return conversion.rounded(), {"converted_amount": amount, "exchange_rate": conversion.rate}

    def _credit_account(self, kind: MovementKind, destination_number: str, amount: Amount,
                        description: str, initiator: Principal, currency: Optional[str]) -> Movement:
        amount, snapshot = self._to_base(parse_amount(amount), currency)
        check = self.policy.check_deposit if kind == MovementKind.DEPOSIT else self.policy.check_credit

        destination = self.accounts.get_by_number(destination_number)
        if destination is None:
            _raise_if(check(initiator, None, amount))

        with self._transaction([destination.id]):
            destination = self.accounts.get_by_id(destination.id)
            _raise_if(check(initiator, destination, amount))

            text = description or kind.value.capitalize()
            movement = self._new_movement(
                kind, amount, initiator, f"{text} (performed by: {initiator.name})",
                destination_account_id=destination.id, **snapshot
            )
            self.journal.append(movement)
            self.accounts.apply_delta(destination.id, amount, inflow_delta=amount, movement_id=movement.id)
        return movement

    def _purchase(self, account_id: str, item_id: str, description: str, initiator: Principal) -> Movement:
        item = self.catalog.get_item(item_id)
        account = self.accounts.get_by_id(account_id)
        if account is None:
            _raise_if(self.policy.check_purchase(initiator, None, item))

        with self._transaction([account.id]):
            account = self.accounts.get_by_id(account.id)
            _raise_if(self.policy.check_purchase(initiator, account, item))

            price = parse_amount(item.price)
            movement = self._new_movement(
                MovementKind.PURCHASE, price, initiator, description or f"Purchase of {item.name}",
                source_account_id=account.id, catalog_item_id=item.id
            )
            self.journal.append(movement)
            self.accounts.apply_delta(account.id, -price, outflow_delta=price, movement_id=movement.id)
        return movement

    def _reverse_deposit(self, movement_id: str, initiator: Principal) -> Movement:
        original = self.journal.get(movement_id)
        if original is None or original.kind != MovementKind.DEPOSIT:
            _raise_if(self.reversal_window.check_reversible(original, None, initiator, self.clock()))

        with self._transaction([original.destination_account_id]):
            original = self.journal.get(movement_id)
            account = self.accounts.get_by_id(original.destination_account_id)
            now = self.clock()
            _raise_if(self.reversal_window.check_reversible(original, account, initiator, now))

            cancellation = self.reversal_window.build_cancellation(
                original, initiator, now, self.journal.value_date_for(now)
            )
            self.journal.append(cancellation)
            self.journal.mark_reversed(original.id)
            self.accounts.apply_delta(
                account.id, -cancellation.amount, outflow_delta=cancellation.amount,
                movement_id=cancellation.id
            )
        return cancellation

    def _recorded(self, movement: Movement, initiator: Principal) -> None:
        log_action(
            self.logger, "info", f"{movement.kind.value} recorded",
            user_id=initiator.id, action=movement.kind.value.lower(), resource=f"movement:{movement.id}",
            extra={
                "amount": str(movement.amount),
                "source_account_id": movement.source_account_id,
                "destination_account_id": movement.destination_account_id
            }
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.MOVEMENT_RECORDED,
                entity_type="movement",
                entity_id=movement.id,
                metadata={
                    "kind": movement.kind,
                    "amount": movement.amount,
                    "source_account_id": movement.source_account_id,
                    "destination_account_id": movement.destination_account_id,
                    "original_movement_id": movement.original_movement_id
                },
                user_id=initiator.id
            )

    def _rejected(self, action: str, initiator: Optional[Principal], error: LedgerError,
                  details: Dict[str, Any]) -> None:
        user_id = initiator.id if initiator else None
        if isinstance(error, LedgerIntegrityError):
            log_action(self.logger, "critical", f"{action} failed: {error.reason}",
                       user_id=user_id, action=action, extra={**details, "kind": error.kind})
            return

        log_action(
            self.logger, "warning", f"{action} rejected: {error.reason}",
            user_id=user_id, action=action, extra={**details, "kind": error.kind}
        )
        if self.audit_trail and not isinstance(error, StorageTimeout):
            self.audit_trail.log_event(
                event_type=AuditEventType.MOVEMENT_REJECTED,
                entity_type="operation",
                entity_id=action,
                metadata={**details, "kind": error.kind, "reason": error.reason},
                user_id=user_id
            )
