from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from taxlots.domain.currency import CurrencyNormalizer, StaticRateTable
from taxlots.domain.errors import RateUnavailable

DAY = date(2024, 3, 1)


class _CountingLookup:
    def __init__(self, table: StaticRateTable) -> None:
        self.table = table
        self.calls = 0

    def lookup_rate(self, base: str, quote: str, on: date) -> Decimal | None:
        self.calls += 1
        return self.table.lookup_rate(base, quote, on)


def test_convert_same_currency_is_identity() -> None:
    normalizer = CurrencyNormalizer(StaticRateTable())

    assert normalizer.convert(Decimal("12.345"), "usd", "USD", DAY) == Decimal("12.345")


def test_convert_uses_direct_rate_without_rounding() -> None:
    normalizer = CurrencyNormalizer(StaticRateTable({("EUR", "USD", DAY): Decimal("1.0825")}))

    converted = normalizer.convert(Decimal("10.01"), "EUR", "USD", datetime(2024, 3, 1, 18, tzinfo=timezone.utc))

    assert converted == Decimal("10.835825")


def test_convert_falls_back_to_inverse_rate() -> None:
    normalizer = CurrencyNormalizer(StaticRateTable({("USD", "EUR", DAY): Decimal("0.8")}))

    assert normalizer.convert(Decimal("8"), "EUR", "USD", DAY) == Decimal("10")


def test_missing_rate_raises_rate_unavailable() -> None:
    normalizer = CurrencyNormalizer(StaticRateTable())

    with pytest.raises(RateUnavailable) as exc_info:
        normalizer.convert(Decimal("1"), "GBP", "USD", DAY)

    assert (exc_info.value.base, exc_info.value.quote, exc_info.value.on) == ("GBP", "USD", DAY)


def test_rates_are_memoized() -> None:
    lookup = _CountingLookup(StaticRateTable({("EUR", "USD", DAY): Decimal("1.1")}))
    normalizer = CurrencyNormalizer(lookup)

    normalizer.convert(Decimal("1"), "EUR", "USD", DAY)
    normalizer.convert(Decimal("2"), "EUR", "USD", DAY)

    assert lookup.calls == 1


@pytest.mark.parametrize(
    "amount, expected",
    [
        ("100.005", "100.00"),
        ("100.015", "100.02"),
        ("100.025", "100.02"),
        ("-100.005", "-100.00"),
        ("0.004999", "0.00"),
    ],
)
def test_round_amount_is_half_even(amount: str, expected: str) -> None:
    normalizer = CurrencyNormalizer(StaticRateTable())

    assert str(normalizer.round_amount(Decimal(amount), "USD")) == expected


def test_minor_units_follow_currency_and_overrides() -> None:
    normalizer = CurrencyNormalizer(StaticRateTable(), minor_units={"btc": 8})

    assert normalizer.round_amount(Decimal("1234.5"), "JPY") == Decimal("1234")
    assert str(normalizer.round_amount(Decimal("1.23456"), "KWD")) == "1.235"
    assert str(normalizer.round_amount(Decimal("0.123456789"), "BTC")) == "0.12345679"


def test_static_rate_table_rejects_non_positive_rates() -> None:
    with pytest.raises(ValueError):
        StaticRateTable({("EUR", "USD", DAY): Decimal("0")})
