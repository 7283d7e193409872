from __future__ import annotations

from bisect import insort
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterator

from .base_types import AccountId, AssetId, ParcelId, PartitionKey
from .errors import InsufficientParcelQuantity
from .records import Parcel


def _ledger_order(parcel: Parcel) -> tuple[datetime, int]:
    return parcel.acquired_at, parcel.sequence


class LedgerIndex:
    """Per (account, asset) ordered collection of parcels.

    Parcels are kept ordered by acquisition timestamp, ties broken by the
    insertion sequence number. Fully consumed parcels stay in the index for
    audit but are hidden from :meth:`open_parcels`.
    """

    def __init__(self) -> None:
        self._ledgers: dict[PartitionKey, list[Parcel]] = defaultdict(list)
        self._by_id: dict[ParcelId, Parcel] = {}
        self._next_sequence = 0

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, parcel_id: object) -> bool:
        return parcel_id in self._by_id

    def next_sequence(self) -> int:
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    def insert(self, parcel: Parcel) -> None:
        if parcel.id in self._by_id:
            msg = f"Parcel {parcel.id} already present in ledger"
            raise ValueError(msg)
        if parcel.remaining_quantity != parcel.original_quantity:
            msg = f"Parcel {parcel.id} must be inserted unconsumed"
            raise ValueError(msg)

        insort(self._ledgers[(parcel.account_id, parcel.asset_id)], parcel, key=_ledger_order)
        self._by_id[parcel.id] = parcel
        self._next_sequence = max(self._next_sequence, parcel.sequence + 1)

    def open_parcels(self, account_id: AccountId, asset_id: AssetId) -> list[Parcel]:
        return [parcel for parcel in self._ledgers.get((account_id, asset_id), ()) if parcel.is_open]

    def open_quantity(self, account_id: AccountId, asset_id: AssetId) -> Decimal:
        return sum((parcel.remaining_quantity for parcel in self.open_parcels(account_id, asset_id)), start=Decimal(0))

    def consume(self, parcel_id: ParcelId, quantity: Decimal) -> Parcel:
        if quantity <= 0:
            msg = f"Consumed quantity must be > 0, got {quantity}"
            raise ValueError(msg)

        parcel = self.get(parcel_id)
        if quantity > parcel.remaining_quantity:
            raise InsufficientParcelQuantity(
                parcel_id=parcel_id,
                requested=quantity,
                remaining=parcel.remaining_quantity,
                account_id=parcel.account_id,
                asset_id=parcel.asset_id,
            )
        parcel.remaining_quantity = parcel.remaining_quantity - quantity
        return parcel

    def get(self, parcel_id: ParcelId) -> Parcel:
        try:
            return self._by_id[parcel_id]
        except KeyError as exc:
            msg = f"Unknown parcel {parcel_id}"
            raise KeyError(msg) from exc

    def parcels(self, account_id: AccountId | None = None, asset_id: AssetId | None = None) -> list[Parcel]:
        """All parcels (open and closed) in ledger order, optionally filtered."""
        return [
            parcel
            for key in sorted(self._ledgers)
            if (account_id is None or key[0] == account_id) and (asset_id is None or key[1] == asset_id)
            for parcel in self._ledgers[key]
        ]

    def partitions(self) -> Iterator[PartitionKey]:
        return iter(sorted(key for key, parcels in self._ledgers.items() if parcels))

    def clone(self) -> LedgerIndex:
        copy = LedgerIndex()
        for key, parcels in self._ledgers.items():
            cloned = [parcel.model_copy() for parcel in parcels]
            copy._ledgers[key] = cloned
            copy._by_id.update((parcel.id, parcel) for parcel in cloned)
        copy._next_sequence = self._next_sequence
        return copy

    def merge(self, other: LedgerIndex) -> None:
        """Adopt the partitions of ``other``, replacing any with the same key."""
        for key, parcels in other._ledgers.items():
            for stale in self._ledgers.pop(key, []):
                self._by_id.pop(stale.id, None)
            self._ledgers[key] = list(parcels)
            self._by_id.update((parcel.id, parcel) for parcel in parcels)
        self._next_sequence = max(self._next_sequence, other._next_sequence)


__all__ = ["LedgerIndex"]
