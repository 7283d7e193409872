"""Sequential processing of one (account, asset) partition.

A :class:`PartitionProcessor` owns its ledger slice exclusively for the
duration of a run. It starts either empty or from a clone of the partition's
last published state, so nothing becomes visible to other partitions (or to
the caller) until the engine publishes the finished snapshot.

When transfers do not realize gains, the outbound and inbound legs of a
transfer live in different partitions. Their processors then share a
:class:`CarriedBasis` and are stepped together, in one thread, in global
operation order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from enum import StrEnum
from typing import Callable

from .base_types import CurrencyCode, MatchId, OperationId, ParcelId, PartitionKey, TaxableEventId, TransactionId
from .classification import ClassificationPolicy
from .currency import CurrencyNormalizer, RateLookup
from .errors import InvalidTransaction, PolicyChangeNotSupported, RateUnavailable
from .identification import SHARE_QUANTUM, Allocation, identify
from .ledger_index import LedgerIndex
from .operations import Operation, OperationKind
from .policy import EngineConfig, EventGranularity, IdentificationMethod
from .records import Classification, Match, MatchedParcel, Parcel, TaxableEvent
from .transaction import FeeShare

logger = logging.getLogger(__name__)


class PartitionState(StrEnum):
    EMPTY = "EMPTY"
    ACCRUING = "ACCRUING"
    RECONCILED = "RECONCILED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class TransferLink:
    """Marks both legs of a transfer whose cost basis moves with the holding."""

    transaction_id: TransactionId
    inbound_quantity: Decimal


@dataclass(frozen=True)
class SequencedOperation:
    """An operation with its input sequence number and attributed fees."""

    sequence: int
    operation: Operation
    fees: tuple[FeeShare, ...] = ()
    link: TransferLink | None = None

    @property
    def order(self) -> tuple[datetime, int]:
        return self.operation.timestamp, self.sequence


class CarriedBasis:
    """Matched parcels handed from outbound transfer legs to the inbound legs of the same transaction."""

    def __init__(self) -> None:
        self._outbound: dict[TransactionId, tuple[Decimal, list[MatchedParcel]]] = {}

    def hand_over(self, link: TransferLink, match: Match) -> None:
        quantity, parcels = self._outbound.get(link.transaction_id, (Decimal(0), []))
        self._outbound[link.transaction_id] = (quantity + match.quantity, [*parcels, *match.parcels])

    def take(self, link: TransferLink, operation: Operation) -> list[MatchedParcel]:
        """Pieces of the carried basis for one inbound leg, scaled to its quantity.

        Quantities follow the leg's share of the outbound quantity, cost follows
        its share of the inbound quantity, holding starts are kept.
        """
        try:
            outbound_quantity, parcels = self._outbound[link.transaction_id]
        except KeyError:
            raise InvalidTransaction(
                f"Inbound transfer of {link.transaction_id} has no outbound leg to carry cost basis from",
                account_id=operation.account_id,
                asset_id=operation.asset_id,
                operation_id=operation.id,
                timestamp=operation.timestamp,
            ) from None

        quantity = operation.magnitude
        quantities = [
            (parcel.quantity * quantity / outbound_quantity).quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)
            for parcel in parcels[:-1]
        ]
        quantities.append(quantity - sum(quantities, start=Decimal(0)))
        return [
            MatchedParcel(
                parcel_id=parcel.parcel_id,
                quantity=piece,
                cost_basis=parcel.cost_basis * quantity / link.inbound_quantity,
                holding_start=parcel.holding_start,
            )
            for parcel, piece in zip(parcels, quantities)
            if piece > 0
        ]


@dataclass
class PartitionSnapshot:
    key: PartitionKey
    entries: list[SequencedOperation] = field(default_factory=list)
    ledger: LedgerIndex = field(default_factory=LedgerIndex)
    method: IdentificationMethod | None = None
    events: list[TaxableEvent] = field(default_factory=list)
    matches: list[Match] = field(default_factory=list)
    state: PartitionState = PartitionState.EMPTY

    @property
    def watermark(self) -> tuple[datetime, int] | None:
        if not self.entries:
            return None
        return self.entries[-1].order


class PartitionProcessor:
    def __init__(
        self,
        key: PartitionKey,
        *,
        config: EngineConfig,
        classifier: ClassificationPolicy,
        rate_lookup: RateLookup,
        base: PartitionSnapshot | None = None,
        checkpoint: Callable[[SequencedOperation], None] | None = None,
        carried: CarriedBasis | None = None,
    ) -> None:
        self.key = key
        self._config = config
        self._classifier = classifier
        self._normalizer = CurrencyNormalizer(rate_lookup, minor_units=config.minor_units)
        self._checkpoint = checkpoint
        self._carried = carried if carried is not None else CarriedBasis()
        self._reporting_currency = CurrencyCode(config.reporting_currency)

        if base is None:
            base = PartitionSnapshot(key=key)
        self._entries = list(base.entries)
        self._ledger = base.ledger.clone()
        self._method = base.method
        self._events = list(base.events)
        self._matches = list(base.matches)

    def step(self, entry: SequencedOperation) -> None:
        """Apply the next operation; callers feed operations in (timestamp, sequence) order."""
        if self._checkpoint is not None:
            self._checkpoint(entry)
        self._apply(entry)
        self._entries.append(entry)

    def snapshot(self) -> PartitionSnapshot:
        return PartitionSnapshot(
            key=self.key,
            entries=self._entries,
            ledger=self._ledger,
            method=self._method,
            events=self._events,
            matches=self._matches,
            state=PartitionState.RECONCILED,
        )

    def _apply(self, entry: SequencedOperation) -> None:
        operation = entry.operation
        if operation.is_inbound:
            self._acquire(entry)
        elif operation.is_outbound:
            self._dispose(entry)
        else:
            self._recognize(entry)

    def _acquire(self, entry: SequencedOperation) -> None:
        operation = entry.operation
        if entry.link is not None:
            self._receive(entry, entry.link)
            return

        cost = self._to_reporting(operation, operation.gross_value, operation.currency) + self._fees_total(entry)
        self._insert(operation, ParcelId(operation.id), operation.magnitude, operation.timestamp, cost)

    def _receive(self, entry: SequencedOperation, link: TransferLink) -> None:
        operation = entry.operation
        fees = self._fees_total(entry)
        pieces = self._carried.take(link, operation)
        for index, piece in enumerate(pieces):
            parcel_id = ParcelId(operation.id if len(pieces) == 1 else f"{operation.id}/{index}")
            cost = piece.cost_basis + fees * piece.quantity / operation.magnitude
            self._insert(operation, parcel_id, piece.quantity, piece.holding_start, cost)

    def _insert(
        self, operation: Operation, parcel_id: ParcelId, quantity: Decimal, acquired_at: datetime, cost: Decimal
    ) -> None:
        self._ledger.insert(
            Parcel(
                id=parcel_id,
                account_id=operation.account_id,
                asset_id=operation.asset_id,
                original_quantity=quantity,
                remaining_quantity=quantity,
                acquired_at=acquired_at,
                cost_basis=cost,
                cost_currency=self._reporting_currency,
                source_operation_id=operation.id,
                sequence=self._ledger.next_sequence(),
            )
        )

    def _dispose(self, entry: SequencedOperation) -> None:
        operation = entry.operation
        method = self._resolve_method(operation)

        # Identification is pure; the ledger is only touched once the whole match is known.
        allocations = identify(method, operation, self._ledger.open_parcels(operation.account_id, operation.asset_id))
        proceeds = self._to_reporting(operation, operation.gross_value, operation.currency) - self._fees_total(entry)

        for allocation in allocations:
            self._ledger.consume(allocation.parcel.id, allocation.quantity)
        self._method = method

        match = Match(
            id=MatchId(operation.id),
            disposal_operation_id=operation.id,
            account_id=operation.account_id,
            asset_id=operation.asset_id,
            method=method,
            disposed_at=operation.timestamp,
            quantity=operation.magnitude,
            parcels=tuple(
                MatchedParcel(
                    parcel_id=allocation.parcel.id,
                    quantity=allocation.quantity,
                    cost_basis=allocation.cost_basis,
                    holding_start=allocation.holding_start,
                )
                for allocation in allocations
            ),
        )
        self._matches.append(match)

        if entry.link is not None:
            self._carried.hand_over(entry.link, match)
            return
        if operation.kind == OperationKind.TRANSFER and not self._config.transfers_realize_gains:
            return
        self._events.extend(self._disposal_events(entry, match, allocations, proceeds))

    def _resolve_method(self, operation: Operation) -> IdentificationMethod:
        bound = self._method or self._config.identification.method_for(operation.account_id, operation.asset_id)
        requested = operation.requested_method
        if requested is not None and requested != bound:
            raise PolicyChangeNotSupported(
                f"Operation requests {requested} but ledger uses {bound}",
                account_id=operation.account_id,
                asset_id=operation.asset_id,
                operation_id=operation.id,
                timestamp=operation.timestamp,
            )
        return bound

    def _disposal_events(
        self,
        entry: SequencedOperation,
        match: Match,
        allocations: list[Allocation],
        proceeds: Decimal,
    ) -> list[TaxableEvent]:
        operation = entry.operation
        if self._config.event_granularity == EventGranularity.PER_PARCEL:
            groups = [[allocation] for allocation in allocations]
        else:
            groups = self._group_by_discount(operation, allocations)

        events: list[TaxableEvent] = []
        remaining_proceeds = proceeds
        for index, group in enumerate(groups):
            quantity = sum((allocation.quantity for allocation in group), start=Decimal(0))
            if index == len(groups) - 1:
                group_proceeds = remaining_proceeds
            else:
                group_proceeds = proceeds * quantity / match.quantity
                remaining_proceeds -= group_proceeds
            cost = sum((allocation.cost_basis for allocation in group), start=Decimal(0))
            gain = group_proceeds - cost
            holding_start = min(allocation.holding_start for allocation in group)
            result = self._classifier.classify(operation, gain=gain, holding_start=holding_start)

            events.append(
                TaxableEvent(
                    id=TaxableEventId(f"{operation.id}#{index}"),
                    classification=result.classification,
                    amount=self._round(abs(gain)),
                    currency=self._reporting_currency,
                    discount_eligible=result.discount_eligible,
                    financial_year=self._config.fiscal_year.label(operation.timestamp),
                    occurred_at=operation.timestamp,
                    account_id=operation.account_id,
                    asset_id=operation.asset_id,
                    operation_ids=(operation.id, *self._fee_operation_ids(entry)),
                    parcel_ids=tuple(allocation.parcel.id for allocation in group),
                    match_id=match.id,
                    quantity=quantity,
                    proceeds=self._round(group_proceeds),
                    cost_basis=self._round(cost),
                    label=operation.label,
                )
            )
        return events

    def _group_by_discount(self, operation: Operation, allocations: list[Allocation]) -> list[list[Allocation]]:
        groups: dict[bool, list[Allocation]] = {}
        for allocation in allocations:
            eligible = self._classifier.qualifies_for_discount(allocation.holding_start, operation.timestamp)
            groups.setdefault(eligible, []).append(allocation)
        return list(groups.values())

    def _recognize(self, entry: SequencedOperation) -> None:
        operation = entry.operation
        gross = self._to_reporting(operation, operation.gross_value, operation.currency)
        fees = self._fees_total(entry)
        if operation.kind == OperationKind.INCOME:
            net = gross - fees
        else:
            net = -(gross + fees)

        result = self._classifier.classify(operation)
        classification = result.classification
        if classification == Classification.INCOME and net < 0:
            classification = Classification.EXPENSE

        self._events.append(
            TaxableEvent(
                id=TaxableEventId(f"{operation.id}#0"),
                classification=classification,
                amount=self._round(abs(net)),
                currency=self._reporting_currency,
                discount_eligible=False,
                financial_year=self._config.fiscal_year.label(operation.timestamp),
                occurred_at=operation.timestamp,
                account_id=operation.account_id,
                asset_id=operation.asset_id,
                operation_ids=(operation.id, *self._fee_operation_ids(entry)),
                quantity=operation.magnitude,
                label=operation.label,
            )
        )

    def _fees_total(self, entry: SequencedOperation) -> Decimal:
        return sum(
            (self._to_reporting(entry.operation, share.amount, share.currency) for share in entry.fees),
            start=Decimal(0),
        )

    @staticmethod
    def _fee_operation_ids(entry: SequencedOperation) -> list[OperationId]:
        return [share.fee_operation_id for share in entry.fees if share.fee_operation_id is not None]

    def _to_reporting(self, operation: Operation, amount: Decimal, currency: str) -> Decimal:
        try:
            return self._normalizer.convert(amount, currency, self._reporting_currency, operation.timestamp)
        except RateUnavailable as err:
            raise RateUnavailable(
                base=err.base,
                quote=err.quote,
                on=err.on,
                account_id=operation.account_id,
                asset_id=operation.asset_id,
                operation_id=operation.id,
                timestamp=operation.timestamp,
            ) from err

    def _round(self, amount: Decimal) -> Decimal:
        return self._normalizer.round_amount(amount, self._reporting_currency)


__all__ = [
    "CarriedBasis",
    "PartitionProcessor",
    "PartitionSnapshot",
    "PartitionState",
    "SequencedOperation",
    "TransferLink",
]
