from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from time import perf_counter
from typing import Sequence

from taxlots.config import config
from taxlots.db.db import init_db
from taxlots.db.repositories import MatchRepository, OperationRepository, ParcelRepository, TaxableEventRepository
from taxlots.domain.currency import RateLookup
from taxlots.domain.engine import AggregationEngine, RunResult
from taxlots.domain.policy import EngineConfig
from taxlots.domain.views import build_views, summarize_years
from taxlots.importers.operations_csv import load_operations_csv, load_rates_csv
from taxlots.services.rate_service import build_default_service
from taxlots.utils.formatting import format_decimal
from taxlots.utils.view_render import render_views, render_year_summaries

logger = logging.getLogger(__name__)


def run(
    operations_csv: Path,
    policy_file: Path,
    *,
    rates_csv: Path | None,
    db_file: Path,
    workers: int | None,
) -> RunResult:
    engine_config = EngineConfig.from_file(policy_file)
    if workers is not None:
        engine_config = engine_config.model_copy(update={"max_workers": workers})

    rate_lookup: RateLookup = load_rates_csv(rates_csv) if rates_csv is not None else build_default_service()

    session = init_db(db_file, reset=True)
    operation_repository = OperationRepository(session)
    parcel_repository = ParcelRepository(session)
    match_repository = MatchRepository(session)
    event_repository = TaxableEventRepository(session)

    # Get data
    operations = load_operations_csv(operations_csv)
    operation_repository.create_many(operations)
    operations = operation_repository.list()

    # Process
    started = perf_counter()
    engine = AggregationEngine(engine_config, rate_lookup)
    result = engine.run(operations)
    logger.info(
        "Processed %d operations into %d taxable events in %.2fs",
        len(operations),
        len(result.events),
        perf_counter() - started,
    )

    parcel_repository.replace_all(result.parcels)
    match_repository.replace_all(result.matches)
    event_repository.replace_all(result.events)

    # Print summary
    print(f"Imported {len(operations)} operations from {operations_csv}")
    print_parcel_summary(result)
    views = build_views(event_repository.list(), engine_config.classification.discount_rate)
    render_views(views)
    render_year_summaries(summarize_years(views))
    for failure in result.failures:
        logger.error("Partition %s/%s failed: %s", failure.account_id, failure.asset_id, failure.message)
    return result


def print_parcel_summary(result: RunResult) -> None:
    open_parcels = [parcel for parcel in result.parcels if parcel.is_open]
    print("Parcel summary:")
    print(f"  Parcels:      {len(result.parcels)}")
    print(f"  Open parcels: {len(open_parcels)}")
    print(f"  Matches:      {len(result.matches)}")
    for parcel in open_parcels:
        print(f"    {parcel.account_id}/{parcel.asset_id} {parcel.id}: {format_decimal(parcel.remaining_quantity)}")


def main(argv: Sequence[str] | None = None) -> int:
    settings = config()
    parser = argparse.ArgumentParser(description="Match disposals to parcels and produce taxable events.")
    parser.add_argument("--operations", type=Path, required=True)
    parser.add_argument("--policy", type=Path, default=settings.policy_file, required=settings.policy_file is None)
    parser.add_argument("--rates", type=Path, default=None, help="CSV of base,quote,date,rate; defaults to the API")
    parser.add_argument("--db", type=Path, default=settings.database_path)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    result = run(
        args.operations,
        args.policy,
        rates_csv=args.rates,
        db_file=args.db,
        workers=args.workers,
    )
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
