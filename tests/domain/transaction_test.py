from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from taxlots.domain.errors import InvalidTransaction
from taxlots.domain.operations import OperationKind
from taxlots.domain.transaction import TransactionBuilder, allocate_fees, group_into_transactions
from tests.helpers.time_utils import make_operation

TS = datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_builder_requires_operations() -> None:
    with pytest.raises(InvalidTransaction):
        TransactionBuilder().build()


def test_builder_rejects_differing_timestamps() -> None:
    builder = TransactionBuilder()
    builder.add_operation(make_operation(kind=OperationKind.ACQUISITION, quantity="1", timestamp=TS, transaction_id="t"))
    builder.add_operation(
        make_operation(kind=OperationKind.FEE, quantity="1", timestamp=TS + timedelta(seconds=1), transaction_id="t")
    )

    with pytest.raises(InvalidTransaction):
        builder.build()


def test_group_into_transactions_keeps_input_order() -> None:
    buy = make_operation(kind=OperationKind.ACQUISITION, quantity="1", timestamp=TS, transaction_id="t1")
    solo = make_operation(kind=OperationKind.INCOME, quantity="1", unit_price="5", asset_id="USD", timestamp=TS)
    cash = make_operation(
        kind=OperationKind.EXPENSE,
        quantity="100",
        unit_price="1",
        account_id="bank",
        asset_id="USD",
        timestamp=TS,
        transaction_id="t1",
    )

    transactions = group_into_transactions([buy, solo, cash])

    assert [transaction.id for transaction in transactions] == ["t1", solo.id]
    assert transactions[0].operations == (buy, cash)
    assert transactions[0].accounts == frozenset({"broker", "bank"})


def test_fee_operations_are_split_by_quantity() -> None:
    first = make_operation(kind=OperationKind.ACQUISITION, quantity="1", unit_price="10", timestamp=TS, transaction_id="t")
    second = make_operation(
        kind=OperationKind.ACQUISITION, quantity="2", unit_price="10", asset_id="BOLT", timestamp=TS, transaction_id="t"
    )
    fee = make_operation(
        kind=OperationKind.FEE, quantity="1", unit_price="1", asset_id="USD", timestamp=TS, transaction_id="t"
    )

    shares = allocate_fees(TransactionBuilder().add_operation(first).add_operation(second).add_operation(fee).build())

    first_share = sum(share.amount for share in shares[first.id])
    second_share = sum(share.amount for share in shares[second.id])
    assert first_share + second_share == Decimal("1")
    assert second_share > first_share
    assert shares[second.id][0].fee_operation_id == fee.id


def test_inline_fee_stays_with_its_operation() -> None:
    buy = make_operation(
        kind=OperationKind.ACQUISITION, quantity="1", unit_price="10", timestamp=TS, fee=Decimal("0.5")
    )

    shares = allocate_fees(TransactionBuilder().add_operation(buy).build())

    assert [(share.amount, share.currency, share.fee_operation_id) for share in shares[buy.id]] == [
        (Decimal("0.5"), "USD", None)
    ]
