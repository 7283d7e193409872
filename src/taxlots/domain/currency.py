from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Mapping, Protocol

from .errors import RateUnavailable

# ISO 4217 minor unit exponents that differ from the usual two decimals.
_MINOR_UNIT_EXCEPTIONS: dict[str, int] = {
    "BHD": 3,
    "BIF": 0,
    "CLP": 0,
    "IQD": 3,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "PYG": 0,
    "TND": 3,
    "UGX": 0,
    "VND": 0,
    "XAF": 0,
    "XOF": 0,
}
DEFAULT_MINOR_UNITS = 2


class RateLookup(Protocol):
    """External rate capability: units of ``quote`` per one unit of ``base`` on ``on``.

    Returns ``None`` when no rate is known for that day.
    """

    def lookup_rate(self, base: str, quote: str, on: date) -> Decimal | None: ...


class StaticRateTable(RateLookup):
    """In-memory rates keyed by (base, quote, date)."""

    def __init__(self, rates: Mapping[tuple[str, str, date], Decimal] | None = None) -> None:
        self._rates: dict[tuple[str, str, date], Decimal] = {}
        for (base, quote, on), rate in (rates or {}).items():
            self.add(base, quote, on, rate)

    def add(self, base: str, quote: str, on: date, rate: Decimal) -> None:
        if rate <= 0:
            msg = f"Rate for {base}/{quote} on {on} must be > 0"
            raise ValueError(msg)
        self._rates[(base.upper(), quote.upper(), on)] = rate

    def lookup_rate(self, base: str, quote: str, on: date) -> Decimal | None:
        return self._rates.get((base.upper(), quote.upper(), on))

    def __len__(self) -> int:
        return len(self._rates)


class CurrencyNormalizer:
    """Convert amounts between currencies using an external rate lookup.

    :meth:`convert` never rounds; callers round once with :meth:`round_amount`
    when the final figure is produced, so intermediate sums do not compound
    rounding error. Rates are memoized for the lifetime of the normalizer.
    """

    def __init__(self, rate_lookup: RateLookup, *, minor_units: Mapping[str, int] | None = None) -> None:
        self._rate_lookup = rate_lookup
        self._minor_units = {code.upper(): digits for code, digits in (minor_units or {}).items()}
        self._cache: dict[tuple[str, str, date], Decimal | None] = {}

    def convert(self, amount: Decimal, from_currency: str, to_currency: str, as_of: datetime | date) -> Decimal:
        base = from_currency.upper()
        quote = to_currency.upper()
        if base == quote:
            return amount
        on = as_of.date() if isinstance(as_of, datetime) else as_of
        return amount * self.rate(base, quote, on)

    def rate(self, base: str, quote: str, on: date) -> Decimal:
        rate = self._cached_lookup(base, quote, on)
        if rate is not None:
            return rate

        inverse = self._cached_lookup(quote, base, on)
        if inverse is not None:
            return Decimal(1) / inverse

        raise RateUnavailable(base=base, quote=quote, on=on)

    def round_amount(self, amount: Decimal, currency: str) -> Decimal:
        exponent = Decimal(1).scaleb(-self.minor_units(currency))
        return amount.quantize(exponent, rounding=ROUND_HALF_EVEN)

    def minor_units(self, currency: str) -> int:
        code = currency.upper()
        if code in self._minor_units:
            return self._minor_units[code]
        return _MINOR_UNIT_EXCEPTIONS.get(code, DEFAULT_MINOR_UNITS)

    def _cached_lookup(self, base: str, quote: str, on: date) -> Decimal | None:
        key = (base, quote, on)
        if key not in self._cache:
            self._cache[key] = self._rate_lookup.lookup_rate(base, quote, on)
        return self._cache[key]


__all__ = ["CurrencyNormalizer", "RateLookup", "StaticRateTable"]
