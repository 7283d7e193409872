from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from .base_types import AccountId, OperationId, TransactionId
from .errors import InvalidTransaction
from .operations import Operation, OperationKind


class Transaction(BaseModel):
    """One economic event made of one or more operations sharing a timestamp."""

    model_config = ConfigDict(frozen=True)

    id: TransactionId
    operations: tuple[Operation, ...]
    accounts: frozenset[AccountId]
    timestamp: datetime

    @property
    def fee_operations(self) -> list[Operation]:
        return [operation for operation in self.operations if operation.kind == OperationKind.FEE]

    @property
    def ledger_operations(self) -> list[Operation]:
        """Operations that create or consume parcels."""
        return [operation for operation in self.operations if operation.is_inbound or operation.is_outbound]


class TransactionBuilder:
    def __init__(self) -> None:
        self._operations: list[Operation] = []

    def add_operation(self, operation: Operation) -> TransactionBuilder:
        self._operations.append(operation)
        return self

    def build(self) -> Transaction:
        if not self._operations:
            raise InvalidTransaction("Transaction needs at least one operation")

        first = self._operations[0]
        transaction_id = first.transaction_id or TransactionId(first.id)
        for operation in self._operations[1:]:
            if (operation.transaction_id or TransactionId(operation.id)) != transaction_id:
                raise InvalidTransaction(
                    f"Operation belongs to transaction {operation.transaction_id}, not {transaction_id}",
                    account_id=operation.account_id,
                    asset_id=operation.asset_id,
                    operation_id=operation.id,
                    timestamp=operation.timestamp,
                )
            if operation.timestamp != first.timestamp:
                raise InvalidTransaction(
                    f"Operations of transaction {transaction_id} must share a timestamp",
                    account_id=operation.account_id,
                    asset_id=operation.asset_id,
                    operation_id=operation.id,
                    timestamp=operation.timestamp,
                )

        return Transaction(
            id=transaction_id,
            operations=tuple(self._operations),
            accounts=frozenset(operation.account_id for operation in self._operations),
            timestamp=first.timestamp,
        )


def group_into_transactions(operations: Iterable[Operation]) -> list[Transaction]:
    """Group operations by transaction id, keeping first-appearance order.

    Operations without a transaction id form a transaction of their own.
    """
    builders: dict[TransactionId, TransactionBuilder] = {}
    for operation in operations:
        key = operation.transaction_id or TransactionId(operation.id)
        builders.setdefault(key, TransactionBuilder()).add_operation(operation)
    return [builder.build() for builder in builders.values()]


@dataclass(frozen=True)
class FeeShare:
    amount: Decimal
    currency: str
    fee_operation_id: OperationId | None = None


def allocate_fees(transaction: Transaction) -> dict[OperationId, list[FeeShare]]:
    """Attribute fees to the operations of ``transaction`` that touch parcels.

    An operation's own ``fee`` stays with it (income and expense operations
    included). FEE operations are apportioned
    pro-rata by absolute quantity across the transaction's ledger operations;
    the last recipient takes the remainder so shares add up exactly.
    """
    shares: dict[OperationId, list[FeeShare]] = {}
    targets = transaction.ledger_operations

    for operation in transaction.operations:
        if operation.fee and operation.kind != OperationKind.FEE:
            shares.setdefault(operation.id, []).append(FeeShare(amount=operation.fee, currency=operation.currency))

    if not targets:
        return shares

    total_weight = sum((operation.magnitude for operation in targets), start=Decimal(0))
    for fee_operation in transaction.fee_operations:
        fee_amount = fee_operation.gross_value
        allocated = Decimal(0)
        for index, operation in enumerate(targets):
            if index == len(targets) - 1:
                amount = fee_amount - allocated
            else:
                amount = fee_amount * operation.magnitude / total_weight
                allocated += amount
            shares.setdefault(operation.id, []).append(
                FeeShare(amount=amount, currency=fee_operation.currency, fee_operation_id=fee_operation.id)
            )
    return shares


__all__ = ["FeeShare", "Transaction", "TransactionBuilder", "allocate_fees", "group_into_transactions"]
