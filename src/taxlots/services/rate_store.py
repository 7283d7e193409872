from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from .rate_types import RateQuote


class RateStore(Protocol):
    def write(self, quote: RateQuote) -> None: ...

    def read(self, base: str, quote: str, on: date) -> RateQuote | None: ...


class JsonlRateStore(RateStore):
    """Append-only JSONL cache, one file per currency pair.

    When a day was written more than once the most recently fetched record wins.
    """

    def __init__(self, *, root_dir: Path) -> None:
        self.root_dir = root_dir

    def write(self, quote: RateQuote) -> None:
        path = self._file_path(quote.base, quote.quote)
        path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "on": quote.on.isoformat(),
            "base": quote.base,
            "quote": quote.quote,
            "rate": str(quote.rate),
            "source": quote.source,
            "fetched_at": quote.fetched_at.isoformat(),
        }
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record))
            handle.write("\n")

    def read(self, base: str, quote: str, on: date) -> RateQuote | None:
        path = self._file_path(base, quote)
        if not path.exists():
            return None

        target = on.isoformat()
        best_record: dict[str, str] | None = None
        best_fetched: datetime | None = None

        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                record = json.loads(line)
                if record["on"] != target:
                    continue

                fetched_at = datetime.fromisoformat(record["fetched_at"])
                if best_fetched is None or fetched_at > best_fetched:
                    best_record = record
                    best_fetched = fetched_at

        if best_record is None or best_fetched is None:
            return None

        return RateQuote(
            on=date.fromisoformat(best_record["on"]),
            base=best_record["base"],
            quote=best_record["quote"],
            rate=Decimal(best_record["rate"]),
            source=best_record["source"],
            fetched_at=best_fetched,
        )

    def _file_path(self, base: str, quote: str) -> Path:
        return self.root_dir / "rates" / f"{base.upper()}-{quote.upper()}.jsonl"


__all__ = ["JsonlRateStore", "RateStore"]
