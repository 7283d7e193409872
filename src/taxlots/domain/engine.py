"""Aggregation engine: operation stream in, taxable events out.

Operations are partitioned by (account, asset). Partitions share no data, so
they are processed independently (optionally on a thread pool); within a
partition processing is strictly sequential in (timestamp, input sequence)
order. A partition's results are published only once the whole partition
has been processed, so a failure or a cancellation never leaks partial state.

The one exception is a transfer that moves cost basis instead of realizing a
gain: its outbound and inbound partitions are linked and processed together,
as one unit of work, in global (timestamp, input sequence) order.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from .base_types import AccountId, AssetId, OperationId, PartitionKey, TransactionId
from .classification import ClassificationPolicy
from .currency import RateLookup
from .errors import (
    DuplicateOperation,
    EngineError,
    InsufficientHoldings,
    InvalidParcelSelection,
    InvalidTransaction,
    LateOperationRejected,
    RateUnavailable,
    RunCancelled,
)
from .ledger_index import LedgerIndex
from .operations import Operation, OperationKind
from .partition import (
    CarriedBasis,
    PartitionProcessor,
    PartitionSnapshot,
    PartitionState,
    SequencedOperation,
    TransferLink,
)
from .policy import EngineConfig
from .records import Match, Parcel, TaxableEvent
from .transaction import Transaction, allocate_fees, group_into_transactions

logger = logging.getLogger(__name__)

# Failures confined to one partition. Anything else (including
# InsufficientParcelQuantity and PolicyChangeNotSupported) aborts the run.
PARTITION_ERRORS: tuple[type[EngineError], ...] = (
    InsufficientHoldings,
    InvalidParcelSelection,
    LateOperationRejected,
    RateUnavailable,
)


class CancellationToken:
    """Cooperative cancellation checked before every operation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, entry: SequencedOperation) -> None:
        if self._event.is_set():
            operation = entry.operation
            raise RunCancelled(
                "Run cancelled",
                account_id=operation.account_id,
                asset_id=operation.asset_id,
                operation_id=operation.id,
                timestamp=operation.timestamp,
            )


class PartitionFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: AccountId
    asset_id: AssetId
    error_type: str
    message: str
    operation_id: OperationId | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_error(cls, key: PartitionKey, error: EngineError) -> PartitionFailure:
        return cls(
            account_id=key[0],
            asset_id=key[1],
            error_type=type(error).__name__,
            message=str(error),
            operation_id=error.operation_id,
            timestamp=error.timestamp,
        )


class PartitionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: AccountId
    asset_id: AssetId
    state: PartitionState
    operations: int


class RunResult(BaseModel):
    events: list[TaxableEvent]
    matches: list[Match]
    parcels: list[Parcel]
    partitions: list[PartitionStatus]
    failures: list[PartitionFailure]
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.cancelled

    def to_json(self) -> str:
        return self.model_dump_json()


@dataclass
class _Work:
    """Partitions processed together; a single key unless transfers link them."""

    keys: list[PartitionKey]
    bases: dict[PartitionKey, PartitionSnapshot | None]
    entries: dict[PartitionKey, list[SequencedOperation]]


@dataclass
class _Outcome:
    keys: list[PartitionKey]
    snapshots: list[PartitionSnapshot] = field(default_factory=list)
    failures: dict[PartitionKey, PartitionFailure] = field(default_factory=dict)
    cancelled: bool = False


class AggregationEngine:
    """Produce taxable events from an operation stream under a fixed configuration.

    ``run`` processes a complete stream from scratch. ``ingest`` adds
    operations to the state kept from earlier calls: partitions receiving only
    newer operations continue from their reconciled ledger, partitions
    receiving operations older than what they already reconciled are either
    recomputed from their full history or rejected, per
    ``EngineConfig.allow_late_operations``.
    """

    def __init__(self, config: EngineConfig, rate_lookup: RateLookup) -> None:
        config.identification.check_consistency()
        self._config = config
        self._rate_lookup = rate_lookup
        self._classifier = ClassificationPolicy(config.classification)
        self._partitions: dict[PartitionKey, PartitionSnapshot] = {}
        self._failures: dict[PartitionKey, PartitionFailure] = {}
        self._operation_ids: set[OperationId] = set()
        self._transaction_ids: set[TransactionId] = set()
        self._links: dict[TransactionId, frozenset[PartitionKey]] = {}
        self._sequence = 0

    @property
    def config(self) -> EngineConfig:
        return self._config

    def reset(self) -> None:
        self._partitions.clear()
        self._failures.clear()
        self._operation_ids.clear()
        self._transaction_ids.clear()
        self._links.clear()
        self._sequence = 0

    def run(self, operations: Iterable[Operation], *, cancel: CancellationToken | None = None) -> RunResult:
        self.reset()
        return self.ingest(operations, cancel=cancel)

    def ingest(self, operations: Iterable[Operation], *, cancel: CancellationToken | None = None) -> RunResult:
        """Process ``operations`` on top of the current state.

        An error that aborts the run leaves the engine as it was before the
        call, so a corrected batch can be ingested afterwards.
        """
        batch = list(operations)
        saved = (self._sequence, set(self._operation_ids), set(self._transaction_ids), dict(self._links))
        try:
            pending = self._sequence_batch(batch)
            outcomes: list[_Outcome] = []
            work: list[_Work] = []
            for keys in self._groups(pending):
                planned = self._plan(keys, pending)
                if isinstance(planned, _Outcome):
                    outcomes.append(planned)
                else:
                    work.append(planned)
            outcomes.extend(self._execute(work, cancel))
        except Exception:
            self._sequence, self._operation_ids, self._transaction_ids, self._links = saved
            raise

        cancelled = False
        unpublished: set[PartitionKey] = set()
        for outcome in sorted(outcomes, key=lambda outcome: outcome.keys):
            for snapshot in outcome.snapshots:
                self._publish(snapshot)
            self._failures.update(outcome.failures)
            if not outcome.snapshots:
                unpublished.update(outcome.keys)
            cancelled = cancelled or outcome.cancelled

        self._forget(batch, unpublished)
        return self.result(cancelled=cancelled)

    def partition_state(self, account_id: str, asset_id: str) -> PartitionState:
        key = (AccountId(account_id), AssetId(asset_id))
        if key in self._failures:
            return PartitionState.FAILED
        snapshot = self._partitions.get(key)
        return snapshot.state if snapshot is not None else PartitionState.EMPTY

    def ledger(self) -> LedgerIndex:
        """Merged ledger end-state of every published partition."""
        index = LedgerIndex()
        for key in sorted(self._partitions):
            index.merge(self._partitions[key].ledger.clone())
        return index

    def result(self, *, cancelled: bool = False) -> RunResult:
        keys = sorted(self._partitions)
        events = [
            (event.occurred_at, key, position, event)
            for key in keys
            for position, event in enumerate(self._partitions[key].events)
        ]
        matches = [
            (match.disposed_at, key, position, match)
            for key in keys
            for position, match in enumerate(self._partitions[key].matches)
        ]
        statuses = [
            PartitionStatus(
                account_id=key[0],
                asset_id=key[1],
                state=self.partition_state(*key),
                operations=len(self._partitions[key].entries) if key in self._partitions else 0,
            )
            for key in sorted(set(keys) | set(self._failures))
        ]
        return RunResult(
            events=[item[-1] for item in sorted(events, key=lambda item: item[:3])],
            matches=[item[-1] for item in sorted(matches, key=lambda item: item[:3])],
            parcels=[parcel.model_copy() for key in keys for parcel in self._partitions[key].ledger.parcels()],
            partitions=statuses,
            failures=[self._failures[key] for key in sorted(self._failures)],
            cancelled=cancelled,
        )

    def _sequence_batch(self, operations: list[Operation]) -> dict[PartitionKey, list[SequencedOperation]]:
        """Validate a batch and turn it into per-partition work, without touching engine state on failure."""
        batch_ids: set[OperationId] = set()
        for operation in operations:
            if operation.id in self._operation_ids or operation.id in batch_ids:
                raise DuplicateOperation(
                    f"Duplicate operation id {operation.id}",
                    account_id=operation.account_id,
                    asset_id=operation.asset_id,
                    operation_id=operation.id,
                    timestamp=operation.timestamp,
                )
            batch_ids.add(operation.id)

        transactions = group_into_transactions(operations)
        for transaction in transactions:
            if transaction.id in self._transaction_ids:
                raise InvalidTransaction(f"Transaction {transaction.id} was already ingested in an earlier batch")

        sequences = {operation.id: self._sequence + position for position, operation in enumerate(operations)}
        pending: dict[PartitionKey, list[SequencedOperation]] = {}
        links: dict[TransactionId, frozenset[PartitionKey]] = {}
        for transaction in transactions:
            fees = allocate_fees(transaction)
            absorbs_fees = bool(transaction.ledger_operations)
            link = self._transfer_link(transaction)
            if link is not None:
                self._outbound_first(transaction, sequences)
                links[transaction.id] = frozenset(
                    operation.partition_key
                    for operation in transaction.operations
                    if operation.kind == OperationKind.TRANSFER
                )
            for operation in transaction.operations:
                if absorbs_fees and operation.kind == OperationKind.FEE:
                    continue
                pending.setdefault(operation.partition_key, []).append(
                    SequencedOperation(
                        sequence=sequences[operation.id],
                        operation=operation,
                        fees=tuple(fees.get(operation.id, ())),
                        link=link if operation.kind == OperationKind.TRANSFER else None,
                    )
                )

        self._sequence += len(operations)
        self._operation_ids.update(batch_ids)
        self._transaction_ids.update(transaction.id for transaction in transactions)
        self._links.update(links)
        return pending

    def _transfer_link(self, transaction: Transaction) -> TransferLink | None:
        """Link the legs of a transfer whose cost basis moves with the holding."""
        if self._config.transfers_realize_gains:
            return None
        legs = [operation for operation in transaction.operations if operation.kind == OperationKind.TRANSFER]
        inbound = [operation for operation in legs if operation.is_inbound]
        if not inbound or len(inbound) == len(legs):
            return None
        # A leg in another asset is an exchange, not a move.
        if len({operation.asset_id for operation in legs}) > 1:
            return None
        return TransferLink(
            transaction_id=transaction.id,
            inbound_quantity=sum((operation.magnitude for operation in inbound), start=Decimal(0)),
        )

    @staticmethod
    def _outbound_first(transaction: Transaction, sequences: dict[OperationId, int]) -> None:
        """Reassign the transaction's sequence numbers so its outbound legs come first."""
        slots = sorted(sequences[operation.id] for operation in transaction.operations)
        ordered = sorted(transaction.operations, key=lambda operation: operation.is_inbound)
        for slot, operation in zip(slots, ordered):
            sequences[operation.id] = slot

    def _groups(self, pending: dict[PartitionKey, list[SequencedOperation]]) -> list[list[PartitionKey]]:
        """Pending partitions with every partition transfers ever linked to them, one sorted list per group."""
        parent: dict[PartitionKey, PartitionKey] = {}

        def find(key: PartitionKey) -> PartitionKey:
            while parent.setdefault(key, key) != key:
                key = parent[key]
            return key

        for linked in self._links.values():
            first, *rest = sorted(linked)
            for key in rest:
                parent[find(key)] = find(first)

        groups: dict[PartitionKey, list[PartitionKey]] = {}
        for key in pending:
            groups.setdefault(find(key), [])
        for key in list(parent):
            members = groups.get(find(key))
            if members is not None:
                members.append(key)
        return sorted(sorted(members) for members in groups.values())

    def _plan(
        self, keys: list[PartitionKey], pending: dict[PartitionKey, list[SequencedOperation]]
    ) -> _Work | _Outcome:
        late = [entry for key in keys for entry in pending.get(key, ()) if self._is_late(key, entry)]
        if not late:
            members = [key for key in keys if key in pending]
            return _Work(
                keys=members,
                bases={key: self._partitions.get(key) for key in members},
                entries={key: pending[key] for key in members},
            )

        first_late = min(late, key=lambda entry: entry.order).operation
        if not self._config.allow_late_operations:
            error = LateOperationRejected(
                "Operation predates reconciled partition",
                account_id=first_late.account_id,
                asset_id=first_late.asset_id,
                operation_id=first_late.id,
                timestamp=first_late.timestamp,
            )
            members = [key for key in keys if key in pending]
            for key in members:
                logger.warning("Partition %s/%s failed: %s", *key, error)
            return _Outcome(keys=members, failures={key: PartitionFailure.from_error(key, error) for key in members})

        # Linked partitions are recomputed together, since carried cost basis crosses them.
        members = [key for key in keys if key in pending or key in self._partitions]
        entries = {
            key: [*(self._partitions[key].entries if key in self._partitions else ()), *pending.get(key, ())]
            for key in members
        }
        for key in members:
            logger.info(
                "Partition %s/%s: recomputing from %d operations after late operation %s",
                *key,
                len(entries[key]),
                first_late.id,
            )
        return _Work(keys=members, bases={key: None for key in members}, entries=entries)

    def _is_late(self, key: PartitionKey, entry: SequencedOperation) -> bool:
        base = self._partitions.get(key)
        watermark = base.watermark if base is not None else None
        return watermark is not None and entry.order < watermark

    def _execute(self, work: list[_Work], cancel: CancellationToken | None) -> list[_Outcome]:
        workers = min(self._config.max_workers, len(work))
        if workers <= 1:
            return [self._process(item, cancel) for item in work]

        outcomes: list[_Outcome] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="partition") as executor:
            futures = [executor.submit(self._process, item, cancel) for item in work]
            for future in as_completed(futures):
                outcomes.append(future.result())
        return outcomes

    def _process(self, work: _Work, cancel: CancellationToken | None) -> _Outcome:
        carried = CarriedBasis()
        processors = {
            key: PartitionProcessor(
                key,
                config=self._config,
                classifier=self._classifier,
                rate_lookup=self._rate_lookup,
                base=work.bases[key],
                checkpoint=cancel.raise_if_cancelled if cancel is not None else None,
                carried=carried,
            )
            for key in work.keys
        }
        ordered = sorted(
            ((key, entry) for key in work.keys for entry in work.entries[key]),
            key=lambda item: item[1].order,
        )
        try:
            for key, entry in ordered:
                processors[key].step(entry)
        except RunCancelled:
            for key in work.keys:
                logger.info("Partition %s/%s: cancelled, nothing published", *key)
            return _Outcome(keys=work.keys, cancelled=True)
        except PARTITION_ERRORS as err:
            for key in work.keys:
                logger.warning("Partition %s/%s failed: %s", *key, err)
            return _Outcome(keys=work.keys, failures={key: PartitionFailure.from_error(key, err) for key in work.keys})

        snapshots = [processors[key].snapshot() for key in work.keys]
        for snapshot in snapshots:
            logger.debug("Partition %s/%s: reconciled with %d events", *snapshot.key, len(snapshot.events))
        return _Outcome(keys=work.keys, snapshots=snapshots)

    def _forget(self, batch: list[Operation], unpublished: set[PartitionKey]) -> None:
        """Unregister transactions that reached no published partition, so they can be ingested again."""
        if not unpublished:
            return
        touched: dict[TransactionId, set[PartitionKey]] = {}
        for operation in batch:
            if operation.kind == OperationKind.FEE:
                continue
            transaction_id = operation.transaction_id or TransactionId(operation.id)
            touched.setdefault(transaction_id, set()).add(operation.partition_key)

        for operation in batch:
            transaction_id = operation.transaction_id or TransactionId(operation.id)
            if touched.get(transaction_id, {operation.partition_key}) <= unpublished:
                self._operation_ids.discard(operation.id)
                self._transaction_ids.discard(transaction_id)
                self._links.pop(transaction_id, None)

    def _publish(self, snapshot: PartitionSnapshot) -> None:
        self._partitions[snapshot.key] = snapshot
        self._failures.pop(snapshot.key, None)


__all__ = [
    "AggregationEngine",
    "CancellationToken",
    "PartitionFailure",
    "PartitionStatus",
    "RunResult",
]
