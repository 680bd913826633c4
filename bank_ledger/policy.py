"""
Transfer, Deposit and Purchase Policy Module

Pure decision functions over already-loaded state. Each check returns None
when the movement is allowed or a typed LedgerError describing the first
failed rule; nothing here raises for an expected business condition and
nothing here has side effects.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from .accounts import Account
from .config import LedgerConfig
from .errors import (
    DailyCapExceeded, Forbidden, InactiveAccount, InsufficientFunds, InvalidArgument,
    ItemUnavailable, LedgerError, NotFound, SameAccount, TransferCapExceeded
)
from .principals import CatalogItem, Principal, require_active, require_admin


@dataclass(frozen=True)
class LedgerLimits:
    """Business constants shared by every code path that moves money"""
    max_transfer_amount: Decimal = Decimal("2000.00")
    max_daily_transfer_amount: Decimal = Decimal("10000.00")
    reversal_window: timedelta = timedelta(minutes=60)

    @classmethod
    def from_config(cls, config: LedgerConfig) -> 'LedgerLimits':
        return cls(
            max_transfer_amount=config.max_transfer_amount,
            max_daily_transfer_amount=config.max_daily_transfer_amount,
            reversal_window=timedelta(minutes=config.reversal_window_minutes)
        )


class LedgerPolicy:
    """Validates proposed movements against the ledger limits"""

    def __init__(self, limits: Optional[LedgerLimits] = None):
        self.limits = limits or LedgerLimits()

    def check_transfer(
        self,
        principal: Optional[Principal],
        source: Optional[Account],
        destination: Optional[Account],
        amount: Decimal,
        transferred_today: Decimal
    ) -> Optional[LedgerError]:
        """
        Validate a transfer

        Args:
            principal: Caller; must own the source unless administrator
            source: Account to debit, None if it was not found
            destination: Account to credit, None if it was not found
            amount: Requested amount
            transferred_today: Non-reversed transfers already sent from the
                source on the current business day

        Returns:
            None if allowed, otherwise the first violated rule
        """
        rejection = require_active(principal)
        if rejection:
            return rejection
        if source is None:
            return NotFound("Source account not found")
        if source.owner_id != principal.id and not principal.is_admin:
            return Forbidden(f"Not allowed to transfer from account {source.account_number}")
        if destination is None:
            return NotFound("Destination account not found")
        if source.id == destination.id:
            return SameAccount("Cannot transfer to the same account")
        if amount <= 0:
            return InvalidArgument("Amount must be greater than zero")
        if amount > self.limits.max_transfer_amount:
            return TransferCapExceeded(
                f"Cannot transfer more than {self.limits.max_transfer_amount} per transfer"
            )
        if not source.is_active:
            return InactiveAccount(f"Source account {source.account_number} is inactive")
        if not destination.is_active:
            return InactiveAccount(f"Destination account {destination.account_number} is inactive")
        if source.balance < amount:
            return InsufficientFunds(
                f"Insufficient funds: balance {source.balance}, requested {amount}"
            )
        if transferred_today + amount > self.limits.max_daily_transfer_amount:
            return DailyCapExceeded(
                f"Daily transfer limit of {self.limits.max_daily_transfer_amount} exceeded "
                f"({transferred_today} already transferred today)"
            )
        return None

    def check_deposit(
        self,
        principal: Optional[Principal],
        destination: Optional[Account],
        amount: Decimal
    ) -> Optional[LedgerError]:
        """Validate a deposit; any active principal may deposit into any active account"""
        rejection = require_active(principal)
        if rejection:
            return rejection
        if destination is None:
            return NotFound("Destination account not found")
        if not destination.is_active:
            return InactiveAccount(f"Destination account {destination.account_number} is inactive")
        if amount <= 0:
            return InvalidArgument("Amount must be greater than zero")
        return None

    def check_credit(
        self,
        principal: Optional[Principal],
        destination: Optional[Account],
        amount: Decimal
    ) -> Optional[LedgerError]:
        """Validate a credit; like a deposit but administrators only"""
        rejection = require_admin(principal, "perform credits")
        if rejection:
            return rejection
        return self.check_deposit(principal, destination, amount)

    def check_purchase(
        self,
        principal: Optional[Principal],
        account: Optional[Account],
        item: Optional[CatalogItem]
    ) -> Optional[LedgerError]:
        """Validate a purchase of a catalog item from the caller's own account"""
        rejection = require_active(principal)
        if rejection:
            return rejection
        if account is None:
            return NotFound("Account not found")
        if account.owner_id != principal.id:
            return Forbidden(f"Account {account.account_number} does not belong to the caller")
        if not account.is_active:
            return InactiveAccount(f"Account {account.account_number} is inactive")
        if item is None:
            return NotFound("Product or service not found")
        if not item.available:
            return ItemUnavailable(f"{item.name} is not available")
        if account.balance < item.price:
            return InsufficientFunds(
                f"Insufficient funds: balance {account.balance}, price {item.price}"
            )
        return None
