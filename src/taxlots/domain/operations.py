from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .asset import AssetKind, is_currency_code, normalize_isin
from .base_types import AccountId, AssetId, CurrencyCode, OperationId, ParcelId, PartitionKey, TransactionId
from .policy import IdentificationMethod


class OperationKind(StrEnum):
    ACQUISITION = "ACQUISITION"
    DISPOSAL = "DISPOSAL"
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    FEE = "FEE"
    TRANSFER = "TRANSFER"


class OperationLabel(StrEnum):
    """Finer description of cash movements as reported by the source platform."""

    DEPOSIT = "DEPOSIT"
    INCOME = "INCOME"
    DIVIDEND = "DIVIDEND"
    REWARD = "REWARD"
    WITHDRAWAL = "WITHDRAWAL"
    COST = "COST"
    INTEREST = "INTEREST"
    DONATION = "DONATION"


def _reject_float(value: Any) -> Any:
    # Binary floats cannot represent most decimal amounts exactly.
    if isinstance(value, float):
        msg = "amounts must be exact decimals (str, int or Decimal), not float"
        raise ValueError(msg)
    return value


class ParcelSelection(BaseModel):
    """Caller supplied parcel choice for specific identification."""

    model_config = ConfigDict(frozen=True)

    parcel_id: ParcelId
    quantity: Decimal

    @field_validator("quantity", mode="before")
    @classmethod
    def _exact_quantity(cls, value: Any) -> Any:
        return _reject_float(value)

    @model_validator(mode="after")
    def _validate_quantity(self) -> ParcelSelection:
        if self.quantity <= 0:
            raise ValueError("ParcelSelection.quantity must be > 0")
        return self


class Operation(BaseModel):
    """Atomic financial event. Immutable once imported.

    Quantity sign convention:
    - ACQUISITION quantities are positive.
    - DISPOSAL quantities may be given with either sign; the magnitude is disposed.
    - TRANSFER quantities are positive for inbound and negative for outbound movements.
    - INCOME, EXPENSE and FEE amounts are ``abs(quantity) * unit_price`` in ``currency``.
    """

    model_config = ConfigDict(frozen=True)

    id: OperationId
    kind: OperationKind
    account_id: AccountId
    asset_id: AssetId
    quantity: Decimal
    unit_price: Decimal
    currency: CurrencyCode
    timestamp: datetime
    transaction_id: TransactionId | None = None
    fee: Decimal | None = None
    asset_kind: AssetKind | None = None
    label: OperationLabel | None = None
    identification_method: IdentificationMethod | None = None
    parcel_selection: tuple[ParcelSelection, ...] | None = None

    @field_validator("quantity", "unit_price", "fee", mode="before")
    @classmethod
    def _exact_amounts(cls, value: Any) -> Any:
        return _reject_float(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _validate_fields(self) -> Operation:
        if not self.id:
            raise ValueError("Operation.id must be non-empty")
        if not self.account_id or not self.asset_id or not self.currency:
            raise ValueError("Operation account_id, asset_id and currency must be non-empty")
        if self.quantity == 0:
            raise ValueError("Operation.quantity must be non-zero")
        if self.kind == OperationKind.ACQUISITION and self.quantity < 0:
            raise ValueError("ACQUISITION quantity must be positive")
        if self.unit_price < 0:
            raise ValueError("Operation.unit_price must be >= 0")
        if self.fee is not None and self.fee < 0:
            raise ValueError("Operation.fee must be >= 0")
        if self.timestamp.tzinfo is None or self.timestamp.utcoffset() is None:
            raise ValueError("Operation.timestamp must be timezone-aware")
        if self.asset_kind == AssetKind.SECURITY:
            normalize_isin(self.asset_id)
        if self.asset_kind == AssetKind.CURRENCY and not is_currency_code(self.asset_id):
            raise ValueError(f"CURRENCY asset {self.asset_id!r} is not an ISO 4217 code")
        if self.parcel_selection is not None:
            if not self.is_outbound:
                raise ValueError("parcel_selection is only valid on outbound operations")
            if self.identification_method not in (None, IdentificationMethod.SPECIFIC):
                raise ValueError("parcel_selection requires SPECIFIC identification")
        elif self.identification_method == IdentificationMethod.SPECIFIC:
            raise ValueError("SPECIFIC identification requires parcel_selection")
        return self

    @property
    def partition_key(self) -> PartitionKey:
        return (self.account_id, self.asset_id)

    @property
    def magnitude(self) -> Decimal:
        return abs(self.quantity)

    @property
    def gross_value(self) -> Decimal:
        """Unrounded value of the operation in its own currency."""
        return self.magnitude * self.unit_price

    @property
    def is_inbound(self) -> bool:
        return self.kind == OperationKind.ACQUISITION or (self.kind == OperationKind.TRANSFER and self.quantity > 0)

    @property
    def is_outbound(self) -> bool:
        return self.kind == OperationKind.DISPOSAL or (self.kind == OperationKind.TRANSFER and self.quantity < 0)

    @property
    def requested_method(self) -> IdentificationMethod | None:
        if self.parcel_selection is not None:
            return IdentificationMethod.SPECIFIC
        return self.identification_method


__all__ = ["Operation", "OperationKind", "OperationLabel", "ParcelSelection"]
