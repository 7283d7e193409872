"""Parcel identification methods.

Each method is a pure function from a disposal and the open parcels of its
(account, asset) ledger to an ordered list of allocations. Nothing here
mutates the ledger; the engine consumes the allocations afterwards, so a
failed identification leaves the ledger untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal
from typing import Callable, Sequence

from .errors import AllocationMismatch, InsufficientHoldings, InvalidParcelSelection
from .operations import Operation
from .policy import IdentificationMethod
from .records import Parcel

# Average-cost shares are truncated to this precision so that parcel quantities
# stay exact under repeated proportional consumption.
SHARE_QUANTUM = Decimal("1e-12")


@dataclass(frozen=True)
class Allocation:
    parcel: Parcel
    quantity: Decimal
    holding_start: datetime

    @property
    def cost_basis(self) -> Decimal:
        return self.parcel.cost_of(self.quantity)


Selector = Callable[[Operation, Sequence[Parcel]], list[Allocation]]


def identify(method: IdentificationMethod, disposal: Operation, open_parcels: Sequence[Parcel]) -> list[Allocation]:
    """Select the parcels ``disposal`` consumes under ``method``."""
    available = sum((parcel.remaining_quantity for parcel in open_parcels), start=Decimal(0))
    if disposal.magnitude > available:
        raise _insufficient("Not enough open parcels", disposal, available)

    allocations = _SELECTORS[method](disposal, open_parcels)

    allocated = sum((allocation.quantity for allocation in allocations), start=Decimal(0))
    if allocated != disposal.magnitude:
        raise AllocationMismatch(
            f"{method} allocated {allocated} for a disposal of {disposal.magnitude}",
            account_id=disposal.account_id,
            asset_id=disposal.asset_id,
            operation_id=disposal.id,
            timestamp=disposal.timestamp,
        )
    return allocations


def _take_in_order(disposal: Operation, parcels: Sequence[Parcel]) -> list[Allocation]:
    allocations: list[Allocation] = []
    remaining = disposal.magnitude
    for parcel in parcels:
        if remaining == 0:
            break
        take = min(remaining, parcel.remaining_quantity)
        allocations.append(Allocation(parcel=parcel, quantity=take, holding_start=parcel.acquired_at))
        remaining -= take
    return allocations


def _fifo(disposal: Operation, open_parcels: Sequence[Parcel]) -> list[Allocation]:
    return _take_in_order(disposal, open_parcels)


def _lifo(disposal: Operation, open_parcels: Sequence[Parcel]) -> list[Allocation]:
    return _take_in_order(disposal, list(reversed(open_parcels)))


def _specific(disposal: Operation, open_parcels: Sequence[Parcel]) -> list[Allocation]:
    if not disposal.parcel_selection:
        raise InvalidParcelSelection(
            "Specific identification requires a parcel selection",
            account_id=disposal.account_id,
            asset_id=disposal.asset_id,
            operation_id=disposal.id,
            timestamp=disposal.timestamp,
        )

    by_id = {parcel.id: parcel for parcel in open_parcels}
    allocations: list[Allocation] = []
    seen: set[str] = set()
    for choice in disposal.parcel_selection:
        if choice.parcel_id in seen:
            raise _invalid_selection(f"Parcel {choice.parcel_id} selected more than once", disposal)
        seen.add(choice.parcel_id)

        parcel = by_id.get(choice.parcel_id)
        if parcel is None:
            raise _invalid_selection(f"Parcel {choice.parcel_id} is not open in this ledger", disposal)
        if choice.quantity > parcel.remaining_quantity:
            raise _insufficient(f"Parcel {parcel.id} cannot cover selection", disposal, parcel.remaining_quantity)
        allocations.append(Allocation(parcel=parcel, quantity=choice.quantity, holding_start=parcel.acquired_at))

    selected = sum((allocation.quantity for allocation in allocations), start=Decimal(0))
    if selected < disposal.magnitude:
        raise _insufficient("Parcel selection does not cover disposal", disposal, selected)
    if selected > disposal.magnitude:
        raise _invalid_selection(f"Parcel selection of {selected} exceeds disposal of {disposal.magnitude}", disposal)
    return allocations


def _average_cost(disposal: Operation, open_parcels: Sequence[Parcel]) -> list[Allocation]:
    """Consume the pooled holding proportionally.

    Every open parcel gives up the same fraction of its remaining quantity and
    all allocations share the quantity-weighted average acquisition timestamp.
    """
    total = sum((parcel.remaining_quantity for parcel in open_parcels), start=Decimal(0))
    pooled_start = _weighted_timestamp(open_parcels, total)
    quantity = disposal.magnitude

    if quantity == total:
        shares = [parcel.remaining_quantity for parcel in open_parcels]
    else:
        shares = [
            (quantity * parcel.remaining_quantity / total).quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)
            for parcel in open_parcels[:-1]
        ]
        shares.append(quantity - sum(shares, start=Decimal(0)))
        _rebalance(shares, open_parcels)

    return [
        Allocation(parcel=parcel, quantity=share, holding_start=pooled_start)
        for parcel, share in zip(open_parcels, shares)
        if share > 0
    ]


def _rebalance(shares: list[Decimal], parcels: Sequence[Parcel]) -> None:
    # Truncated shares can leave the last parcel with more than it holds; hand the excess back.
    excess = shares[-1] - parcels[-1].remaining_quantity
    if excess <= 0:
        return
    shares[-1] = parcels[-1].remaining_quantity
    for index in range(len(shares) - 2, -1, -1):
        moved = min(parcels[index].remaining_quantity - shares[index], excess)
        shares[index] += moved
        excess -= moved
        if excess == 0:
            break


def _weighted_timestamp(parcels: Sequence[Parcel], total: Decimal) -> datetime:
    origin = parcels[0].acquired_at
    weighted = sum(
        (parcel.remaining_quantity * _microseconds(parcel.acquired_at - origin) for parcel in parcels),
        start=Decimal(0),
    )
    offset = (weighted / total).to_integral_value(rounding=ROUND_HALF_EVEN)
    return origin + timedelta(microseconds=int(offset))


def _microseconds(delta: timedelta) -> Decimal:
    return Decimal((delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds)


def _insufficient(reason: str, disposal: Operation, available: Decimal) -> InsufficientHoldings:
    return InsufficientHoldings(
        reason,
        quantity_needed=disposal.magnitude,
        quantity_available=available,
        account_id=disposal.account_id,
        asset_id=disposal.asset_id,
        operation_id=disposal.id,
        timestamp=disposal.timestamp,
    )


def _invalid_selection(reason: str, disposal: Operation) -> InvalidParcelSelection:
    return InvalidParcelSelection(
        reason,
        account_id=disposal.account_id,
        asset_id=disposal.asset_id,
        operation_id=disposal.id,
        timestamp=disposal.timestamp,
    )


_SELECTORS: dict[IdentificationMethod, Selector] = {
    IdentificationMethod.FIFO: _fifo,
    IdentificationMethod.LIFO: _lifo,
    IdentificationMethod.SPECIFIC: _specific,
    IdentificationMethod.AVERAGE_COST: _average_cost,
}


__all__ = ["Allocation", "identify"]
