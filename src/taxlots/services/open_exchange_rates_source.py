"""Daily fiat rates from Open Exchange Rates (https://docs.openexchangerates.org).

One historical request returns every currency against a single base, so the
source keeps one snapshot per day and answers any pair for that day from it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from taxlots.config import config

from .rate_types import RateQuote

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openexchangerates.org/api"
SOURCE_NAME = "open-exchange-rates-historical"


class OpenExchangeRatesAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class CurrencyNotAvailable(OpenExchangeRatesAPIError):
    pass


def _error_message(payload: Any, default: str) -> str:
    if isinstance(payload, Mapping):
        return payload.get("description") or payload.get("message") or default
    return default


@dataclass(frozen=True)
class HistoricalRates:
    """Every published rate for one day, as units per one ``base``."""

    date: date
    timestamp: datetime
    base: str
    rates: dict[str, Decimal]

    @classmethod
    def from_payload(cls, target_date: date, payload: Mapping[str, Any]) -> HistoricalRates:
        published_at = payload.get("timestamp")
        base = payload.get("base")
        rates = payload.get("rates")
        if published_at is None or base is None or not isinstance(rates, Mapping):
            raise OpenExchangeRatesAPIError("Open Exchange Rates payload missing required fields", payload=payload)
        return cls(
            date=target_date,
            timestamp=datetime.fromtimestamp(int(published_at), tz=timezone.utc),
            base=str(base).upper(),
            rates={str(code).upper(): Decimal(str(rate)) for code, rate in rates.items()},
        )

    def units_per_base(self, currency: str) -> Decimal:
        if currency == self.base:
            return Decimal("1")
        try:
            return self.rates[currency]
        except KeyError:
            raise CurrencyNotAvailable(
                f"Currency {currency} not available in Open Exchange Rates data for {self.date}"
            ) from None

    def cross_rate(self, base: str, quote: str) -> Decimal:
        """Units of ``quote`` per one ``base``, derived through the snapshot's own base."""
        if base == quote:
            return Decimal("1")
        return self.units_per_base(quote) / self.units_per_base(base)


class OpenExchangeRatesClient:
    def __init__(
        self,
        *,
        app_id: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 5,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self._app_id = app_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

        # Free plans answer 429 when the hourly quota is exhausted.
        adapter = HTTPAdapter(
            max_retries=Retry(
                total=retry_attempts,
                backoff_factor=retry_backoff_seconds,
                status_forcelist=[429],
                allowed_methods=frozenset({"GET"}),
                raise_on_status=False,
            )
        )
        for prefix in ("https://", "http://"):
            self._session.mount(prefix, adapter)

    @property
    def app_id(self) -> str:
        app_id = self._app_id or config().open_exchange_rates_app_id
        if not app_id:
            msg = "Open Exchange Rates app id is not configured (TAXLOTS_OPEN_EXCHANGE_RATES_APP_ID)"
            raise OpenExchangeRatesAPIError(msg)
        return app_id

    def get_historical_rates(self, *, target_date: date) -> HistoricalRates:
        payload = self._get_json(f"/historical/{target_date.isoformat()}.json")
        return HistoricalRates.from_payload(target_date, payload)

    def _get_json(self, path: str) -> Mapping[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request("GET", url, params={"app_id": self.app_id}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise OpenExchangeRatesAPIError("Open Exchange Rates request failed") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise OpenExchangeRatesAPIError(
                _error_message(payload, "Open Exchange Rates request failed"),
                status_code=response.status_code,
                payload=payload,
            ) from exc

        if not isinstance(payload, Mapping):
            raise OpenExchangeRatesAPIError("Open Exchange Rates returned a non-object payload", payload=payload)
        if payload.get("error"):
            raise OpenExchangeRatesAPIError(
                _error_message(payload, "Open Exchange Rates error"), status_code=payload.get("status"), payload=payload
            )
        return payload


class OpenExchangeRatesSource:
    """Rate source backed by one cached historical snapshot per day.

    Safe to share between threads: concurrent lookups for the same day wait
    for a single request.
    """

    def __init__(self, *, client: OpenExchangeRatesClient | None = None, source_name: str = SOURCE_NAME) -> None:
        self.client = client or OpenExchangeRatesClient()
        self.source_name = source_name
        self._snapshots: dict[date, HistoricalRates] = {}
        self._lock = threading.Lock()

    def snapshot(self, on: date) -> HistoricalRates:
        with self._lock:
            cached = self._snapshots.get(on)
            if cached is None:
                logger.debug("Fetching Open Exchange Rates snapshot for %s", on)
                cached = self._snapshots[on] = self.client.get_historical_rates(target_date=on)
            return cached

    def fetch_rate(self, base: str, quote: str, on: date) -> RateQuote:
        base, quote = base.upper(), quote.upper()
        snapshot = self.snapshot(on)
        return RateQuote(
            on=snapshot.date,
            base=base,
            quote=quote,
            rate=snapshot.cross_rate(base, quote),
            source=self.source_name,
            fetched_at=snapshot.timestamp,
        )


__all__ = [
    "CurrencyNotAvailable",
    "HistoricalRates",
    "OpenExchangeRatesAPIError",
    "OpenExchangeRatesClient",
    "OpenExchangeRatesSource",
]
