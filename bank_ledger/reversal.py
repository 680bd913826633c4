"""
Deposit Reversal Module

A deposit stays PENDING_REVERSIBLE for a bounded window after it is made.
Inside the window an administrator may reverse it, which debits the account
and records a CANCELLATION linked to the original deposit. Once the window
closes the deposit is FINAL.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from .accounts import Account
from .errors import (
    AlreadyReversed, InsufficientFunds, InvalidArgument, LedgerError, NotFound,
    ReversalWindowExpired
)
from .journal import Movement, MovementKind
from .principals import Principal, require_admin


class DepositState(Enum):
    """Lifecycle of a deposit"""
    PENDING_REVERSIBLE = "PENDING_REVERSIBLE"
    FINAL = "FINAL"
    REVERSED = "REVERSED"


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ReversalWindow:
    """Decides deposit reversibility for a fixed window length"""

    def __init__(self, window: timedelta = timedelta(minutes=60)):
        if window <= timedelta(0):
            raise InvalidArgument("Reversal window must be positive")
        self.window = window

    def is_within_window(self, movement: Movement, now: datetime) -> bool:
        """True while ``now - timestamp <= window``; the boundary itself is inside"""
        return _as_utc(now) - _as_utc(movement.timestamp) <= self.window

    def state_of(self, movement: Movement, now: datetime) -> DepositState:
        if movement.kind != MovementKind.DEPOSIT:
            raise InvalidArgument(f"Movement {movement.id} is not a deposit")
        if movement.reversed:
            return DepositState.REVERSED
        if self.is_within_window(movement, now):
            return DepositState.PENDING_REVERSIBLE
        return DepositState.FINAL

    def check_reversible(
        self,
        movement: Optional[Movement],
        account: Optional[Account],
        principal: Optional[Principal],
        now: datetime
    ) -> Optional[LedgerError]:
        """
        Validate a reversal request

        Args:
            movement: Deposit to reverse, None if it was not found
            account: Account the deposit credited
            principal: Caller; must be an administrator
            now: Current time

        Returns:
            None if the deposit can be reversed, otherwise the first failed rule
        """
        rejection = require_admin(principal, "reverse deposits")
        if rejection:
            return rejection
        if movement is None:
            return NotFound("Movement not found")
        if movement.kind != MovementKind.DEPOSIT:
            return InvalidArgument(f"Only deposits can be reversed, got {movement.kind.value}")
        if movement.reversed:
            return AlreadyReversed(f"Deposit {movement.id} was already reversed")
        if not self.is_within_window(movement, now):
            minutes = int(self.window.total_seconds() // 60)
            return ReversalWindowExpired(
                f"Deposit {movement.id} can no longer be reversed; the {minutes} minute window has passed"
            )
        if account is None:
            return NotFound("Account for the deposit not found")
        if account.balance < movement.amount:
            return InsufficientFunds(
                f"Insufficient funds to reverse deposit: balance {account.balance}, "
                f"deposit {movement.amount}"
            )
        return None

    @staticmethod
    def build_cancellation(
        movement: Movement,
        principal: Principal,
        now: datetime,
        value_date: str
    ) -> Movement:
        """Compensating movement that takes the deposited amount back out"""
        return Movement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=MovementKind.CANCELLATION,
            amount=Decimal(movement.amount),
            timestamp=now,
            value_date=value_date,
            source_account_id=movement.destination_account_id,
            original_movement_id=movement.id,
            description=f"Reversal of deposit {movement.id} (performed by: {principal.name})",
            initiator_id=principal.id
        )
