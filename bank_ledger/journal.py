"""
Movement Journal Module

Append-only log of completed monetary events. A movement is immutable once
appended except for its ``reversed`` flag, which may flip from false to true
exactly once. The journal is the source of truth for account history and for
daily transfer-limit enforcement.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .clock import business_day
from .currency import MIN_AMOUNT
from .errors import AlreadyReversed, Conflict, InvalidArgument, NotFound
from .storage import StorageInterface, StorageRecord


class MovementKind(Enum):
    """Types of monetary events"""
    TRANSFER = "TRANSFER"          # Account to account
    PURCHASE = "PURCHASE"          # Account pays for a catalog item
    DEPOSIT = "DEPOSIT"            # Operator-initiated cash-in, reversible for a while
    CREDIT = "CREDIT"              # Administrative credit
    CANCELLATION = "CANCELLATION"  # Compensates a reversed deposit


# (source required, destination required) per kind; the other side must be empty
REQUIRED_SIDES = {
    MovementKind.TRANSFER: (True, True),
    MovementKind.PURCHASE: (True, False),
    MovementKind.DEPOSIT: (False, True),
    MovementKind.CREDIT: (False, True),
    MovementKind.CANCELLATION: (True, False),
}


@dataclass
class Movement(StorageRecord):
    """
    One completed monetary event affecting one or two accounts.

    Money leaves ``source_account_id`` and enters ``destination_account_id``.
    """
    kind: MovementKind
    amount: Decimal
    timestamp: datetime
    value_date: str  # ISO business day of ``timestamp``
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    catalog_item_id: Optional[str] = None
    reversed: bool = False
    original_movement_id: Optional[str] = None
    description: str = ""
    initiator_id: Optional[str] = None
    converted_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))
        if self.amount < MIN_AMOUNT:
            raise InvalidArgument(f"Movement amount must be at least {MIN_AMOUNT}")

        needs_source, needs_destination = REQUIRED_SIDES[self.kind]
        if bool(self.source_account_id) != needs_source:
            raise InvalidArgument(
                f"{self.kind.value} movement {'requires' if needs_source else 'must not have'} a source account"
            )
        if bool(self.destination_account_id) != needs_destination:
            raise InvalidArgument(
                f"{self.kind.value} movement {'requires' if needs_destination else 'must not have'} a destination account"
            )

        if self.original_movement_id and self.kind != MovementKind.CANCELLATION:
            raise InvalidArgument("Only cancellations may reference an original movement")
        if self.kind == MovementKind.CANCELLATION and not self.original_movement_id:
            raise InvalidArgument("A cancellation must reference the movement it cancels")

    def touches(self, account_id: str) -> bool:
        return account_id in (self.source_account_id, self.destination_account_id)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kind'] = self.kind.value
        result['timestamp'] = self.timestamp.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Movement':
        data = dict(data)
        data['kind'] = MovementKind(data['kind'])
        data['amount'] = Decimal(data['amount'])
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        for key in ('converted_amount', 'exchange_rate'):
            if data.get(key) is not None:
                data[key] = Decimal(data[key])
        return super().from_dict(data)


@dataclass
class MovementFilter:
    """Journal query; every field is optional"""
    account_id: Optional[str] = None  # Matches source or destination
    kind: Optional[MovementKind] = None
    start: Optional[datetime] = None  # Inclusive
    end: Optional[datetime] = None    # Exclusive
    reversed: Optional[bool] = None
    offset: int = 0
    limit: Optional[int] = None


class MovementJournal:
    """
    Append-only movement store with indexed lookups
    """

    DAILY_INDEX = ("source_account_id", "kind", "value_date", "reversed")

    def __init__(self, storage: StorageInterface, business_timezone: str = "America/Guatemala"):
        self.storage = storage
        self.business_timezone = business_timezone
        self.table_name = "movements"

        self.storage.ensure_index(self.table_name, self.DAILY_INDEX)
        self.storage.ensure_index(self.table_name, ("source_account_id",))
        self.storage.ensure_index(self.table_name, ("destination_account_id",))
        self.storage.ensure_index(self.table_name, ("kind",))

    def value_date_for(self, timestamp: datetime) -> str:
        """Business day a movement made at ``timestamp`` counts against"""
        return business_day(timestamp, self.business_timezone).isoformat()

    def append(self, movement: Movement) -> str:
        """
        Record a movement

        Returns:
            The movement id

        Raises:
            Conflict: If a movement with the same id was already recorded
        """
        if self.storage.exists(self.table_name, movement.id):
            raise Conflict(f"Movement {movement.id} already recorded")
        self.storage.save(self.table_name, movement.id, movement.to_dict())
        return movement.id

    def get(self, movement_id: str) -> Optional[Movement]:
        data = self.storage.load(self.table_name, movement_id)
        return Movement.from_dict(data) if data else None

    def mark_reversed(self, movement_id: str) -> Movement:
        """
        Flip the reversed flag; the only mutation a movement ever undergoes

        Raises:
            NotFound: If the movement does not exist
            AlreadyReversed: If the flag is already set
        """
        movement = self.get(movement_id)
        if not movement:
            raise NotFound(f"Movement {movement_id} not found")
        if movement.reversed:
            raise AlreadyReversed(f"Movement {movement_id} was already reversed")
        movement.reversed = True
        self.storage.save(self.table_name, movement.id, movement.to_dict())
        return movement

    def _query(self, movement_filter: MovementFilter) -> List[Movement]:
        base: Dict[str, Any] = {}
        if movement_filter.kind is not None:
            base['kind'] = movement_filter.kind.value
        if movement_filter.reversed is not None:
            base['reversed'] = movement_filter.reversed

        if movement_filter.account_id:
            rows = {}
            for side in ('source_account_id', 'destination_account_id'):
                for data in self.storage.find(self.table_name, {**base, side: movement_filter.account_id}):
                    rows[data['id']] = data
            found = list(rows.values())
        else:
            found = self.storage.find(self.table_name, base)

        movements = [Movement.from_dict(data) for data in found]
        if movement_filter.start:
            movements = [m for m in movements if m.timestamp >= movement_filter.start]
        if movement_filter.end:
            movements = [m for m in movements if m.timestamp < movement_filter.end]
        return movements

    def find(self, movement_filter: Optional[MovementFilter] = None) -> List[Movement]:
        """Movements matching the filter, newest first"""
        movement_filter = movement_filter or MovementFilter()
        movements = self._query(movement_filter)
        movements.sort(key=lambda m: (m.timestamp, m.created_at), reverse=True)
        end = movement_filter.offset + movement_filter.limit if movement_filter.limit is not None else None
        return movements[movement_filter.offset:end]

    def count(self, movement_filter: Optional[MovementFilter] = None) -> int:
        """Number of movements matching the filter, ignoring offset and limit"""
        return len(self._query(movement_filter or MovementFilter()))

    def transferred_on(self, account_id: str, day: date) -> Decimal:
        """Sum of non-reversed transfers sent from an account on a business day"""
        rows = self.storage.find(self.table_name, {
            'source_account_id': account_id,
            'kind': MovementKind.TRANSFER.value,
            'value_date': day.isoformat(),
            'reversed': False
        })
        return sum((Decimal(row['amount']) for row in rows), Decimal('0'))
