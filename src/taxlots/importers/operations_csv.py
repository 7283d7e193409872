from __future__ import annotations

import csv
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from pydantic import ValidationError

from taxlots.domain.currency import StaticRateTable
from taxlots.domain.operations import Operation, ParcelSelection

REQUIRED_COLUMNS = frozenset({"id", "kind", "account_id", "asset_id", "quantity", "unit_price", "currency", "timestamp"})
OPTIONAL_COLUMNS = (
    "transaction_id",
    "fee",
    "asset_kind",
    "label",
    "identification_method",
    "parcel_selection",
)
RATE_COLUMNS = frozenset({"base", "quote", "date", "rate"})


def load_operations_csv(csv_path: Path) -> list[Operation]:
    """Load operations in input order.

    Required columns: id,kind,account_id,asset_id,quantity,unit_price,currency,timestamp.
    Optional columns: transaction_id,fee,asset_kind,label,identification_method and
    parcel_selection written as ``parcel_id:quantity`` pairs separated by ``;``.
    Timestamps must carry a UTC offset (``Z`` is accepted).
    """
    with csv_path.open(newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise ValueError(f"Operations CSV {csv_path} is empty or missing headers")

        missing = REQUIRED_COLUMNS - set(reader.fieldnames)
        if missing:
            raise ValueError(f"Operations CSV {csv_path} missing required columns: {', '.join(sorted(missing))}")

        operations: list[Operation] = []
        for line_number, row in enumerate(reader, start=2):
            try:
                operations.append(_parse_operation(row))
            except (ValidationError, ValueError, InvalidOperation) as exc:
                msg = f"{csv_path}:{line_number}: invalid operation row: {exc}"
                raise ValueError(msg) from exc

    return operations


def load_rates_csv(csv_path: Path) -> StaticRateTable:
    """Load ``base,quote,date,rate`` rows (units of quote per one base) into a rate table."""
    table = StaticRateTable()
    with csv_path.open(newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise ValueError(f"Rates CSV {csv_path} is empty or missing headers")

        missing = RATE_COLUMNS - set(reader.fieldnames)
        if missing:
            raise ValueError(f"Rates CSV {csv_path} missing required columns: {', '.join(sorted(missing))}")

        for line_number, row in enumerate(reader, start=2):
            try:
                table.add(
                    row["base"].strip(),
                    row["quote"].strip(),
                    date.fromisoformat(row["date"].strip()),
                    Decimal(row["rate"].strip()),
                )
            except (ValueError, InvalidOperation) as exc:
                msg = f"{csv_path}:{line_number}: invalid rate row: {exc}"
                raise ValueError(msg) from exc

    return table


def _parse_operation(row: dict[str, str]) -> Operation:
    values: dict[str, object] = {column: row[column].strip() for column in REQUIRED_COLUMNS}
    values["timestamp"] = _parse_timestamp(row["timestamp"])
    for column in OPTIONAL_COLUMNS:
        raw = (row.get(column) or "").strip()
        if raw:
            values[column] = raw
    if "parcel_selection" in values:
        values["parcel_selection"] = _parse_selection(str(values["parcel_selection"]))
    return Operation.model_validate(values)


def _parse_timestamp(raw: str) -> datetime:
    normalized = raw.strip()
    if normalized.endswith(("Z", "z")):
        normalized = f"{normalized[:-1]}+00:00"
    ts = datetime.fromisoformat(normalized)
    if ts.tzinfo is None:
        raise ValueError(f"timestamp {raw!r} has no UTC offset")
    return ts


def _parse_selection(raw: str) -> tuple[ParcelSelection, ...]:
    selection: list[ParcelSelection] = []
    for item in raw.split(";"):
        item = item.strip()
        if not item:
            continue
        parcel_id, sep, quantity = item.rpartition(":")
        if not sep or not parcel_id:
            raise ValueError(f"parcel selection {item!r} must look like parcel_id:quantity")
        selection.append(ParcelSelection(parcel_id=parcel_id.strip(), quantity=quantity.strip()))
    return tuple(selection)


__all__ = ["load_operations_csv", "load_rates_csv"]
