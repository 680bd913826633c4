"""
Exchange Rate Refresh Module

Pulls a rate table from a third-party provider and stores it as currency
snapshots. Provider failures never clear stored rates: the refresh reports
failure and the previous snapshot stays in effect.
"""

import httpx
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Union

from .audit import AuditEventType, AuditTrail
from .clock import Clock, utc_now
from .config import LedgerConfig
from .currency import (
    DEFAULT_RATES, Currency, CurrencyRepository, currency_name, normalize_code
)
from .errors import InvalidArgument, NotFound
from .logging_config import get_logger, log_action
from .principals import Principal, require_admin

logger = get_logger("bank_ledger.rates")


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateProvider(ABC):
    """Source of base-denominated exchange rates"""

    @abstractmethod
    def fetch_rates(self, base: str) -> Dict[str, Decimal]:
        """
        Fetch the current rate table

        Args:
            base: Base currency code

        Returns:
            Units of base currency per 1 unit of each currency

        Raises:
            RateProviderUnavailable: If rates cannot be fetched
        """
        pass


class HttpRateProvider(RateProvider):
    """REST client for an ExchangeRate-API style ``/latest/{base}`` endpoint"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 8.0,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_config(cls, config: LedgerConfig) -> 'HttpRateProvider':
        return cls(config.rate_provider_url, config.rate_provider_api_key, timeout=config.rate_provider_timeout)

    def fetch_rates(self, base: str) -> Dict[str, Decimal]:
        if not self.base_url or not self.api_key:
            raise RateProviderUnavailable("Rate provider URL or API key not configured")

        base = normalize_code(base)
        try:
            response = self._client.get(f"{self.base_url}{self.api_key}/latest/{base}")
        except httpx.HTTPError as e:
            raise RateProviderUnavailable(f"Rate provider request failed: {e}") from e

        if response.status_code != 200:
            raise RateProviderUnavailable(
                f"Rate provider returned {response.status_code}: {response.text}"
            )

        try:
            conversion_rates = response.json()["conversion_rates"]
        except (ValueError, KeyError, TypeError) as e:
            raise RateProviderUnavailable("Rate provider response has no conversion_rates") from e

        rates: Dict[str, Decimal] = {}
        for code, per_base in conversion_rates.items():
            if code == base:
                continue
            try:
                value = Decimal(str(per_base))
            except InvalidOperation:
                logger.warning(f"Skipping malformed rate for {code}: {per_base!r}")
                continue
            if value <= 0:
                logger.warning(f"Skipping non-positive rate for {code}: {per_base!r}")
                continue
            # Provider quotes foreign units per 1 base; store base units per 1 foreign
            rates[code] = Decimal('1') / value
        return rates

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class StaticRateProvider(RateProvider):
    """Fixed rate table for offline runs and tests"""

    def __init__(self, rates: Optional[Dict[str, Decimal]] = None):
        self.rates = dict(rates if rates is not None else DEFAULT_RATES)

    def fetch_rates(self, base: str) -> Dict[str, Decimal]:
        return dict(self.rates)


@dataclass
class RefreshResult:
    """Outcome of one refresh attempt"""
    success: bool
    refreshed_at: datetime
    updated: List[str] = field(default_factory=list)
    error: Optional[str] = None


def _to_rate(value: Union[Decimal, str, int, float]) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise InvalidArgument(f"Invalid rate: {value!r}")
    if not rate.is_finite() or rate <= 0:
        raise InvalidArgument(f"Rate must be a positive number, got {value!r}")
    return rate


class RateRefresher:
    """
    Keeps stored currency rates in step with the provider and applies
    administrative overrides
    """

    def __init__(
        self,
        repository: CurrencyRepository,
        provider: RateProvider,
        audit_trail: Optional[AuditTrail] = None,
        base_code: str = "GTQ",
        clock: Clock = utc_now
    ):
        self.repository = repository
        self.provider = provider
        self.audit_trail = audit_trail
        self.base_code = normalize_code(base_code)
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: LedgerConfig,
        repository: CurrencyRepository,
        audit_trail: Optional[AuditTrail] = None
    ) -> 'RateRefresher':
        """Use the HTTP provider when one is configured, the default table otherwise"""
        if config.rate_provider_url and config.rate_provider_api_key:
            provider: RateProvider = HttpRateProvider.from_config(config)
        else:
            logger.info("No rate provider configured, using the default rate table")
            provider = StaticRateProvider()
        return cls(repository, provider, audit_trail=audit_trail, base_code=config.base_currency)

    def refresh_rates(self) -> RefreshResult:
        """
        Fetch the provider table and upsert every currency in it

        Returns:
            RefreshResult; on provider failure ``success`` is False and the
            stored rates are left untouched
        """
        now = self.clock()
        try:
            rates = self.provider.fetch_rates(self.base_code)
        except RateProviderUnavailable as e:
            logger.warning(f"Rate refresh failed, keeping stored rates: {e}")
            return RefreshResult(success=False, refreshed_at=now, error=str(e))

        updated = []
        for code, rate in sorted(rates.items()):
            code = normalize_code(code)
            if code == self.base_code:
                continue
            self.repository.upsert(code, rate, name=currency_name(code), now=now)
            updated.append(code)

        log_action(
            logger, "info", "Exchange rates refreshed",
            action="refresh_rates", resource="currencies",
            extra={"currencies": len(updated)}
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.RATES_REFRESHED,
                entity_type="currency",
                entity_id=self.base_code,
                metadata={"updated": updated}
            )
        return RefreshResult(success=True, refreshed_at=now, updated=updated)

    def restore_official_rates(self, principal: Principal) -> RefreshResult:
        """Discard manual overrides by re-pulling the provider table (administrators only)"""
        rejection = require_admin(principal, "restore official rates")
        if rejection:
            raise rejection
        result = self.refresh_rates()
        log_action(
            logger, "info" if result.success else "warning", "Official rates restore requested",
            user_id=principal.id, action="restore_official_rates", resource="currencies",
            extra={"success": result.success}
        )
        return result

    def override_rate(self, principal: Principal, code: str, rate: Union[Decimal, str]) -> Currency:
        """
        Manually set the rate of an existing currency (administrators only)

        Raises:
            Unauthorized/Forbidden: If the principal is not an active administrator
            NotFound: If the currency does not exist
            InvalidArgument: If the rate is not positive
        """
        rejection = require_admin(principal, "override exchange rates")
        if rejection:
            raise rejection
        code = normalize_code(code)
        existing = self.repository.get(code)
        if existing is None:
            raise NotFound(f"Currency {code} not found")

        currency = self.repository.upsert(code, _to_rate(rate), now=self.clock())
        self._log_override(principal, currency, previous_rate=existing.rate)
        return currency

    def upsert_currency(
        self,
        principal: Principal,
        code: str,
        name: Optional[str],
        rate: Union[Decimal, str],
        is_active: Optional[bool] = None
    ) -> Currency:
        """Create or replace a currency row (administrators only)"""
        rejection = require_admin(principal, "manage currencies")
        if rejection:
            raise rejection
        code = normalize_code(code)
        if code == self.base_code:
            raise InvalidArgument(f"{code} is the base currency; its rate is always 1")
        existing = self.repository.get(code)
        currency = self.repository.upsert(
            code, _to_rate(rate), name=name, now=self.clock(), is_active=is_active
        )
        self._log_override(principal, currency, previous_rate=existing.rate if existing else None)
        return currency

    def seed_defaults(self) -> int:
        """Insert the default rate table when no currencies are stored yet"""
        if self.repository.count() > 0:
            logger.debug("Currencies already present, skipping default seed")
            return 0
        now = self.clock()
        for code, rate in DEFAULT_RATES.items():
            self.repository.upsert(code, rate, now=now)
        logger.info(f"Seeded {len(DEFAULT_RATES)} default currencies")
        return len(DEFAULT_RATES)

    def list_currencies(self, text_filter: Optional[str] = None) -> List[Currency]:
        """Active currencies whose code or name contains ``text_filter``"""
        return self.repository.list_currencies(text_filter=text_filter)

    def _log_override(self, principal: Principal, currency: Currency,
                      previous_rate: Optional[Decimal]) -> None:
        log_action(
            logger, "info", "Exchange rate set manually",
            user_id=principal.id, action="override_rate", resource=f"currency:{currency.code}",
            extra={"rate": str(currency.rate), "previous_rate": str(previous_rate) if previous_rate else None}
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.RATE_OVERRIDDEN,
                entity_type="currency",
                entity_id=currency.code,
                metadata={
                    "rate": currency.rate,
                    "previous_rate": previous_rate
                },
                user_id=principal.id
            )


class RateRefreshScheduler:
    """
    Runs ``RateRefresher.refresh_rates`` on a daemon thread: once on start,
    then every ``interval`` until stopped.
    """

    def __init__(self, refresher: RateRefresher, interval: timedelta = timedelta(hours=24),
                 clock: Clock = utc_now):
        if interval <= timedelta(0):
            raise InvalidArgument("Refresh interval must be positive")
        self.refresher = refresher
        self.interval = interval
        self.clock = clock
        self.last_result: Optional[RefreshResult] = None
        self.last_run_at: Optional[datetime] = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: LedgerConfig, refresher: RateRefresher) -> 'RateRefreshScheduler':
        return cls(refresher, timedelta(hours=config.rate_refresh_interval_hours))

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            # A thread left over from a timed-out stop keeps its own, already set, event
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,), name="rate-refresh", daemon=True
            )
            self._thread.start()
        logger.info(f"Rate refresh scheduler started (every {self.interval})")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            if stop_event is not None:
                stop_event.set()
        if thread is not None:
            thread.join(timeout)
        with self._lock:
            if self._thread is thread:
                self._thread = None
                self._stop_event = None
        if thread is not None and thread.is_alive():
            logger.warning("Rate refresh thread still finishing a refresh after stop")
        logger.info("Rate refresh scheduler stopped")

    def run_once(self) -> RefreshResult:
        self.last_run_at = self.clock()
        self.last_result = self.refresher.refresh_rates()
        return self.last_result

    def _run(self, stop_event: threading.Event) -> None:
        while True:
            try:
                self.run_once()
            except Exception:
                logger.exception("Unexpected error during scheduled rate refresh")
            if stop_event.wait(self.interval.total_seconds()):
                break
