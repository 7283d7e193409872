from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

from taxlots.db.db import init_db
from taxlots.db.repositories import MatchRepository, OperationRepository, ParcelRepository, TaxableEventRepository
from taxlots.domain.engine import AggregationEngine, RunResult
from taxlots.domain.errors import DuplicateOperation
from taxlots.domain.operations import OperationKind, OperationLabel, ParcelSelection
from tests.helpers.time_utils import make_operation

SYDNEY = timezone(timedelta(hours=10))


@pytest.fixture()
def operation_repo(test_session: Session) -> OperationRepository:
    return OperationRepository(test_session)


@pytest.fixture()
def engine_result(aggregation_engine: AggregationEngine) -> RunResult:
    operations = [
        make_operation(kind=OperationKind.ACQUISITION, quantity="10", unit_price="100", operation_id="buy-1"),
        make_operation(
            kind=OperationKind.ACQUISITION, quantity="5", unit_price="90", currency="EUR", operation_id="buy-2"
        ),
        make_operation(kind=OperationKind.DISPOSAL, quantity="12", unit_price="150", fee="3", operation_id="sell-1"),
        make_operation(
            kind=OperationKind.INCOME,
            quantity="1",
            unit_price="7.5",
            asset_id="USD",
            label=OperationLabel.DIVIDEND,
            operation_id="div-1",
        ),
    ]
    result = aggregation_engine.run(operations)
    assert result.succeeded
    return result


def test_operations_round_trip_with_optional_fields(operation_repo: OperationRepository) -> None:
    operation = make_operation(
        kind=OperationKind.DISPOSAL,
        quantity="-2.5",
        unit_price="101.25",
        timestamp=datetime(2024, 7, 1, 9, 30, tzinfo=SYDNEY),
        transaction_id="tx-1",
        fee="0.75",
        parcel_selection=(ParcelSelection(parcel_id="buy-1", quantity="2.5"),),
        operation_id="sell-1",
    )

    operation_repo.create_many([operation])

    stored = operation_repo.get("sell-1")
    assert stored == operation
    assert stored is not None
    assert stored.timestamp.utcoffset() == timedelta(hours=10)
    assert operation_repo.get("missing") is None


def test_operations_are_listed_chronologically_across_offsets(operation_repo: OperationRepository) -> None:
    # Later as text but earlier in time.
    early = make_operation(
        kind=OperationKind.ACQUISITION,
        quantity="1",
        timestamp=datetime(2024, 1, 1, 9, 0, tzinfo=SYDNEY),
        operation_id="early",
    )
    late = make_operation(
        kind=OperationKind.ACQUISITION,
        quantity="1",
        timestamp=datetime(2023, 12, 31, 23, 30, tzinfo=timezone.utc),
        operation_id="late",
    )
    tie = make_operation(kind=OperationKind.ACQUISITION, quantity="1", timestamp=late.timestamp, operation_id="tie")

    operation_repo.create_many([late, tie, early])

    assert [operation.id for operation in operation_repo.list()] == ["early", "late", "tie"]


def test_duplicate_operation_ids_are_rejected(operation_repo: OperationRepository) -> None:
    operation_repo.create_many([make_operation(kind=OperationKind.ACQUISITION, quantity="1", operation_id="dup")])

    with pytest.raises(DuplicateOperation):
        operation_repo.create_many([make_operation(kind=OperationKind.ACQUISITION, quantity="2", operation_id="dup")])

    with pytest.raises(DuplicateOperation):
        operation_repo.create_many(
            [
                make_operation(kind=OperationKind.ACQUISITION, quantity="1", operation_id="twice"),
                make_operation(kind=OperationKind.ACQUISITION, quantity="1", operation_id="twice"),
            ]
        )
    assert [operation.id for operation in operation_repo.list()] == ["dup"]


def test_results_round_trip_and_replace_is_idempotent(test_session: Session, engine_result: RunResult) -> None:
    parcel_repo = ParcelRepository(test_session)
    match_repo = MatchRepository(test_session)
    event_repo = TaxableEventRepository(test_session)

    for _ in range(2):
        parcel_repo.replace_all(engine_result.parcels)
        match_repo.replace_all(engine_result.matches)
        event_repo.replace_all(engine_result.events)

    assert sorted(parcel_repo.list(), key=lambda parcel: parcel.id) == sorted(
        engine_result.parcels, key=lambda parcel: parcel.id
    )
    assert sorted(match_repo.list(), key=lambda match: match.id) == sorted(
        engine_result.matches, key=lambda match: match.id
    )
    # Events keep the engine's output order.
    assert event_repo.list() == engine_result.events


def test_init_db_reset_starts_from_an_empty_file(tmp_path: Path) -> None:
    db_file = tmp_path / "ledger.db"
    session = init_db(db_file)
    OperationRepository(session).create_many([make_operation(kind=OperationKind.ACQUISITION, quantity="1")])
    session.close()

    reopened = init_db(db_file)
    assert len(OperationRepository(reopened).list()) == 1
    reopened.close()

    fresh = init_db(db_file, reset=True)
    assert OperationRepository(fresh).list() == []
    fresh.close()
