from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

from taxlots.services.rate_store import JsonlRateStore
from taxlots.services.rate_types import RateQuote


def _quote(base: str, quote: str, rate: str, on: date, fetched_at: datetime) -> RateQuote:
    return RateQuote(on=on, base=base, quote=quote, rate=Decimal(rate), source="test", fetched_at=fetched_at)


def test_store_returns_rate_for_the_requested_day(tmp_path: Path) -> None:
    store = JsonlRateStore(root_dir=tmp_path)
    fetched_at = datetime(2024, 3, 2, 0, 0, tzinfo=timezone.utc)
    store.write(_quote("EUR", "USD", "1.0841", date(2024, 3, 1), fetched_at))

    result = store.read("eur", "usd", date(2024, 3, 1))

    assert result is not None
    assert result.rate == Decimal("1.0841")
    assert result.fetched_at == fetched_at
    assert (tmp_path / "rates" / "EUR-USD.jsonl").exists()


def test_store_returns_none_for_unknown_day_or_pair(tmp_path: Path) -> None:
    store = JsonlRateStore(root_dir=tmp_path)
    store.write(_quote("EUR", "USD", "1.08", date(2024, 3, 1), datetime(2024, 3, 2, tzinfo=timezone.utc)))

    assert store.read("EUR", "USD", date(2024, 3, 2)) is None
    assert store.read("GBP", "USD", date(2024, 3, 1)) is None


def test_store_prefers_the_most_recently_fetched_record(tmp_path: Path) -> None:
    store = JsonlRateStore(root_dir=tmp_path)
    on = date(2024, 3, 1)
    store.write(_quote("EUR", "USD", "1.09", on, datetime(2024, 3, 5, tzinfo=timezone.utc)))
    store.write(_quote("EUR", "USD", "1.08", on, datetime(2024, 3, 2, tzinfo=timezone.utc)))

    result = store.read("EUR", "USD", on)

    assert result is not None
    assert result.rate == Decimal("1.09")
