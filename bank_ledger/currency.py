"""
Multi-Currency Support Module

Stores currency rate snapshots and converts amounts between the base currency
and foreign currencies. Rates are "units of base currency per 1 unit of the
currency". NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Union
import re

from .errors import InvalidArgument, NotFound
from .storage import StorageInterface, StorageRecord

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
MIN_AMOUNT = CENT

DEFAULT_RATES: Dict[str, Decimal] = {
    "USD": Decimal("7.8"),
    "EUR": Decimal("8.5"),
    "MXN": Decimal("0.45"),
    "GBP": Decimal("10.1"),
}

CURRENCY_NAMES: Dict[str, str] = {
    "GTQ": "Quetzal",
    "USD": "US Dollar",
    "EUR": "Euro",
    "MXN": "Mexican Peso",
    "GBP": "Pound Sterling",
    "JPY": "Japanese Yen",
    "CAD": "Canadian Dollar",
}


def currency_name(code: str) -> str:
    """Display name for a currency code, falling back to the code itself"""
    return CURRENCY_NAMES.get(code, code)


def normalize_code(code: str) -> str:
    """Normalize and validate a 3-letter ISO 4217 code"""
    normalized = (code or "").strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise InvalidArgument(f"Currency must be a 3-letter ISO 4217 code, got {code!r}")
    return normalized


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        InvalidArgument: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidArgument("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    # Handle comma as decimal separator (European format)
    if ',' in clean_value and '.' in clean_value:
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise InvalidArgument(f"Cannot convert '{value}' to Decimal")


def parse_amount(value: Union[Decimal, int, str]) -> Decimal:
    """
    Coerce a caller-supplied amount to a cent-precision Decimal without
    checking its sign

    Raises:
        InvalidArgument: If the value is malformed
    """
    if isinstance(value, bool) or value is None:
        raise InvalidArgument(f"Invalid amount: {value!r}")
    if isinstance(value, str):
        amount = decimal_from_string(value)
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise InvalidArgument(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidArgument(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class Currency(StorageRecord):
    """Currency rate snapshot"""
    code: str
    name: str
    rate: Decimal  # Units of base currency per 1 unit of this currency
    is_active: bool = True
    rate_updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.rate, Decimal):
            self.rate = Decimal(str(self.rate))
        if self.rate <= 0:
            raise InvalidArgument(f"Rate for {self.code} must be positive")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['rate_updated_at'] = self.rate_updated_at.isoformat() if self.rate_updated_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Currency':
        data = dict(data)
        data['rate'] = Decimal(data['rate'])
        if data.get('rate_updated_at'):
            data['rate_updated_at'] = datetime.fromisoformat(data['rate_updated_at'])
        return super().from_dict(data)


class CurrencyRepository:
    """Persists currency rows keyed by code"""

    def __init__(self, storage: StorageInterface, table_name: str = "currencies"):
        self.storage = storage
        self.table_name = table_name

    def get(self, code: str) -> Optional[Currency]:
        data = self.storage.load(self.table_name, normalize_code(code))
        return Currency.from_dict(data) if data else None

    def list_currencies(self, text_filter: Optional[str] = None, include_inactive: bool = False) -> List[Currency]:
        """
        List currencies sorted by code

        Args:
            text_filter: Case-insensitive substring matched against code or name
            include_inactive: Include deactivated currencies
        """
        currencies = [Currency.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if not include_inactive:
            currencies = [c for c in currencies if c.is_active]
        if text_filter:
            needle = text_filter.lower()
            currencies = [c for c in currencies if needle in c.code.lower() or needle in c.name.lower()]
        currencies.sort(key=lambda c: c.code)
        return currencies

    def upsert(self, code: str, rate: Decimal, name: Optional[str] = None,
               now: Optional[datetime] = None, is_active: Optional[bool] = None) -> Currency:
        """Insert or update a currency rate snapshot"""
        code = normalize_code(code)
        now = now or datetime.now(timezone.utc)
        existing = self.get(code)
        currency = Currency(
            id=code,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            code=code,
            name=name or (existing.name if existing else currency_name(code)),
            rate=rate,
            is_active=is_active if is_active is not None else (existing.is_active if existing else True),
            rate_updated_at=now
        )
        self.storage.save(self.table_name, code, currency.to_dict())
        return currency

    def count(self) -> int:
        return self.storage.count(self.table_name)


@dataclass(frozen=True)
class Conversion:
    """Result of converting an amount between two currencies"""
    amount: Decimal
    converted_amount: Decimal
    from_code: str
    to_code: str
    rate: Decimal  # Units of to_code per 1 unit of from_code

    def rounded(self) -> Decimal:
        """Converted amount rounded to cents for display"""
        return self.converted_amount.quantize(CENT, rounding=ROUND_HALF_UP)


class CurrencyConverter:
    """
    Stateless conversion through the base currency.

    A→B is (amount × rateA) ÷ rateB; the base currency has rate 1 by definition.
    """

    def __init__(self, repository: CurrencyRepository, base_code: str = "GTQ"):
        self.repository = repository
        self.base_code = normalize_code(base_code)

    def rate_of(self, code: str) -> Decimal:
        """Units of base currency per 1 unit of ``code``"""
        code = normalize_code(code)
        if code == self.base_code:
            return Decimal('1')
        currency = self.repository.get(code)
        if currency is None or not currency.is_active:
            raise NotFound(f"Currency {code} not found or not available")
        return currency.rate

    def to_base(self, amount: Decimal, code: str) -> Decimal:
        return Decimal(amount) * self.rate_of(code)

    def from_base(self, amount: Decimal, code: str) -> Decimal:
        return Decimal(amount) / self.rate_of(code)

    def convert(self, amount: Decimal, from_code: str, to_code: str) -> Conversion:
        """
        Convert an amount between two currencies

        Args:
            amount: Amount expressed in ``from_code``
            from_code: Source currency code
            to_code: Target currency code

        Returns:
            Conversion with the converted amount and the effective rate

        Raises:
            NotFound: If either currency is unknown or inactive
        """
        amount = Decimal(amount)
        from_code = normalize_code(from_code)
        to_code = normalize_code(to_code)
        if from_code == to_code:
            return Conversion(amount, amount, from_code, to_code, Decimal('1'))

        from_rate = self.rate_of(from_code)
        to_rate = self.rate_of(to_code)
        converted = self.from_base(self.to_base(amount, from_code), to_code)
        return Conversion(amount, converted, from_code, to_code, from_rate / to_rate)

    def convert_balance(self, balance: Decimal, to_code: str) -> Conversion:
        """Express a base-currency account balance in another currency"""
        return self.convert(balance, self.base_code, to_code)
