from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal


class EngineError(Exception):
    """Base class for failures reported by the aggregation engine.

    Every error carries enough context (account, asset, operation, timestamp)
    for an operator to correct the input data and re-run.
    """

    def __init__(
        self,
        message: str,
        *,
        account_id: str | None = None,
        asset_id: str | None = None,
        operation_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        self.reason = message
        self.account_id = account_id
        self.asset_id = asset_id
        self.operation_id = operation_id
        self.timestamp = timestamp
        super().__init__(self._format(message))

    def _format(self, message: str) -> str:
        context = [
            f"{name}={value}"
            for name, value in (
                ("account", self.account_id),
                ("asset", self.asset_id),
                ("operation", self.operation_id),
                ("timestamp", self.timestamp.isoformat() if self.timestamp is not None else None),
            )
            if value is not None
        ]
        if not context:
            return message
        return f"{message} ({' '.join(context)})"


class InsufficientHoldings(EngineError):
    """Disposal exceeds the open parcel quantity of its (account, asset)."""

    def __init__(
        self,
        message: str,
        *,
        quantity_needed: Decimal,
        quantity_available: Decimal,
        account_id: str | None = None,
        asset_id: str | None = None,
        operation_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        self.quantity_needed = quantity_needed
        self.quantity_available = quantity_available
        super().__init__(
            f"{message}: needed={quantity_needed} available={quantity_available}",
            account_id=account_id,
            asset_id=asset_id,
            operation_id=operation_id,
            timestamp=timestamp,
        )


class InsufficientParcelQuantity(EngineError):
    """Consumption requested more than a parcel has left. Indicates a bug."""

    def __init__(
        self,
        *,
        parcel_id: str,
        requested: Decimal,
        remaining: Decimal,
        account_id: str | None = None,
        asset_id: str | None = None,
    ) -> None:
        self.parcel_id = parcel_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Parcel {parcel_id} cannot supply {requested}, only {remaining} remaining",
            account_id=account_id,
            asset_id=asset_id,
        )


class RateUnavailable(EngineError):
    def __init__(
        self,
        *,
        base: str,
        quote: str,
        on: date,
        account_id: str | None = None,
        asset_id: str | None = None,
        operation_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        self.base = base
        self.quote = quote
        self.on = on
        super().__init__(
            f"No {base}/{quote} rate for {on.isoformat()}",
            account_id=account_id,
            asset_id=asset_id,
            operation_id=operation_id,
            timestamp=timestamp,
        )


class PolicyChangeNotSupported(EngineError):
    """Identification method differs from the one bound to a ledger."""


class DuplicateOperation(EngineError):
    pass


class InvalidTransaction(EngineError):
    pass


class InvalidParcelSelection(EngineError):
    pass


class LateOperationRejected(EngineError):
    """Operation predates a reconciled partition and recomputation is disabled."""


class AllocationMismatch(EngineError):
    """An identification method allocated a quantity other than the one disposed."""


class RunCancelled(EngineError):
    pass


__all__ = [
    "AllocationMismatch",
    "DuplicateOperation",
    "EngineError",
    "InsufficientHoldings",
    "InsufficientParcelQuantity",
    "InvalidParcelSelection",
    "InvalidTransaction",
    "LateOperationRejected",
    "PolicyChangeNotSupported",
    "RateUnavailable",
    "RunCancelled",
]
