from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal


@dataclass(frozen=True)
class RateQuote:
    """Daily exchange rate: units of ``quote`` per one unit of ``base`` on ``on``."""

    on: date
    base: str
    quote: str
    rate: Decimal
    source: str
    fetched_at: datetime


__all__ = ["RateQuote"]
