"""
Ledger Error Taxonomy

Every rejection carries a stable machine-readable ``kind`` plus a
human-readable ``reason``. Business rejections and fatal integrity failures
are distinct types so callers can tell them apart.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""

    kind = "LedgerError"
    retryable = False

    def __init__(self, reason: str, kind: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        if kind:
            self.kind = kind

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the transport layer"""
        return {
            "kind": self.kind,
            "reason": self.reason,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind!r}, reason={self.reason!r})"


class NotFound(LedgerError):
    """Account, movement, currency, favorite or catalog item absent"""
    kind = "NotFound"


class Unauthorized(LedgerError):
    """Principal is unknown or inactive"""
    kind = "Unauthorized"


class Forbidden(LedgerError):
    """Principal lacks the required role or ownership"""
    kind = "Forbidden"


class InvalidArgument(LedgerError, ValueError):
    """Malformed amount or missing field"""
    kind = "InvalidArgument"


class BusinessRuleViolation(LedgerError):
    """A business rule rejected the movement"""
    kind = "BusinessRuleViolation"


class InsufficientFunds(BusinessRuleViolation):
    kind = "InsufficientFunds"


class TransferCapExceeded(BusinessRuleViolation):
    kind = "TransferCapExceeded"


class DailyCapExceeded(BusinessRuleViolation):
    kind = "DailyCapExceeded"


class SameAccount(BusinessRuleViolation):
    kind = "SameAccount"


class InactiveAccount(BusinessRuleViolation):
    kind = "InactiveAccount"


class ItemUnavailable(BusinessRuleViolation):
    kind = "ItemUnavailable"


class SelfFavorite(BusinessRuleViolation):
    kind = "SelfFavorite"


class AlreadyReversed(LedgerError):
    kind = "AlreadyReversed"


class ReversalWindowExpired(LedgerError):
    kind = "ReversalWindowExpired"


class Conflict(LedgerError):
    """Uniqueness violation or concurrent-update contention"""
    kind = "Conflict"


class OwnerAlreadyHasAccount(Conflict):
    kind = "OwnerAlreadyHasAccount"


class DuplicateFavorite(Conflict):
    kind = "DuplicateFavorite"


class StorageTimeout(LedgerError):
    """Storage or lock wait exceeded its timeout; safe to retry"""
    kind = "StorageTimeout"
    retryable = True


class LedgerIntegrityError(LedgerError):
    """
    Fatal: a commit may have been partially applied, or stored balances no
    longer agree with the journal. Never a business rejection.
    """
    kind = "LedgerIntegrityError"
