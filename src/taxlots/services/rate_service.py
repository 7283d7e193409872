from __future__ import annotations

import logging
import threading
from datetime import date
from decimal import Decimal
from pathlib import Path

from taxlots.config import config

from .open_exchange_rates_source import OpenExchangeRatesAPIError, OpenExchangeRatesSource
from .rate_sources import RateSource
from .rate_store import JsonlRateStore, RateStore

logger = logging.getLogger(__name__)


class RateService:
    """Cache-first rate lookup usable as the engine's rate collaborator.

    Fetched quotes are persisted to ``store`` so repeated runs over the same
    history never hit the network twice for the same day. Lookups are
    serialized, so one service can back partitions processed on a thread pool.
    """

    def __init__(self, source: RateSource, store: RateStore) -> None:
        self.source = source
        self.store = store
        self._lock = threading.Lock()

    def lookup_rate(self, base: str, quote: str, on: date) -> Decimal | None:
        base = base.upper()
        quote = quote.upper()
        if base == quote:
            return Decimal("1")

        with self._lock:
            existing = self.store.read(base, quote, on)
            if existing is not None:
                return existing.rate

            try:
                fetched = self.source.fetch_rate(base, quote, on)
            except OpenExchangeRatesAPIError as exc:
                logger.warning("No %s/%s rate for %s: %s", base, quote, on, exc)
                return None

            self.store.write(fetched)
            return fetched.rate


def build_default_service(cache_dir: Path | None = None) -> RateService:
    root_dir = cache_dir or config().rate_cache_dir
    root_dir.mkdir(parents=True, exist_ok=True)
    return RateService(source=OpenExchangeRatesSource(), store=JsonlRateStore(root_dir=root_dir))


__all__ = ["RateService", "build_default_service"]
