from __future__ import annotations

from datetime import date
from typing import Protocol

from .rate_types import RateQuote


class RateSource(Protocol):
    def fetch_rate(self, base: str, quote: str, on: date) -> RateQuote: ...


__all__ = ["RateSource"]
