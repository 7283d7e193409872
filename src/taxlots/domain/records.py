from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, model_validator

from .base_types import AccountId, AssetId, CurrencyCode, MatchId, OperationId, ParcelId, TaxableEventId
from .operations import OperationLabel
from .policy import IdentificationMethod


class Classification(StrEnum):
    CAPITAL_GAIN = "CAPITAL_GAIN"
    CAPITAL_LOSS = "CAPITAL_LOSS"
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class Parcel(BaseModel):
    """A quantity of one asset held in one account ("tax lot").

    Only ``remaining_quantity`` changes after creation, and only through
    :meth:`LedgerIndex.consume`. Closed parcels are kept for audit.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: ParcelId
    account_id: AccountId
    asset_id: AssetId
    original_quantity: Decimal
    remaining_quantity: Decimal
    acquired_at: datetime
    cost_basis: Decimal
    cost_currency: CurrencyCode
    source_operation_id: OperationId
    sequence: int

    @model_validator(mode="after")
    def _validate_quantities(self) -> Parcel:
        if self.original_quantity <= 0:
            raise ValueError("Parcel.original_quantity must be > 0")
        if self.remaining_quantity < 0:
            raise ValueError("Parcel.remaining_quantity must be >= 0")
        if self.remaining_quantity > self.original_quantity:
            raise ValueError("Parcel.remaining_quantity cannot exceed original_quantity")
        if self.cost_basis < 0:
            raise ValueError("Parcel.cost_basis must be >= 0")
        return self

    @property
    def is_open(self) -> bool:
        return self.remaining_quantity > 0

    @property
    def consumed_quantity(self) -> Decimal:
        return self.original_quantity - self.remaining_quantity

    def cost_of(self, quantity: Decimal) -> Decimal:
        """Unrounded share of the cost basis attributable to ``quantity`` units."""
        if quantity == self.original_quantity:
            return self.cost_basis
        return self.cost_basis * quantity / self.original_quantity


class MatchedParcel(BaseModel):
    model_config = ConfigDict(frozen=True)

    parcel_id: ParcelId
    quantity: Decimal
    cost_basis: Decimal
    holding_start: datetime


class Match(BaseModel):
    """Links one disposal to the parcels it consumed, by parcel identifier."""

    model_config = ConfigDict(frozen=True)

    id: MatchId
    disposal_operation_id: OperationId
    account_id: AccountId
    asset_id: AssetId
    method: IdentificationMethod
    disposed_at: datetime
    quantity: Decimal
    parcels: tuple[MatchedParcel, ...]

    @model_validator(mode="after")
    def _validate_consumption(self) -> Match:
        if not self.parcels:
            raise ValueError("Match must consume at least one parcel")
        consumed = sum((parcel.quantity for parcel in self.parcels), start=Decimal(0))
        if consumed != self.quantity:
            raise ValueError(f"Match consumes {consumed} but disposes {self.quantity}")
        return self


class TaxableEvent(BaseModel):
    """Tax-relevant outcome of a match or of an income/expense operation.

    ``amount`` is non-negative and rounded to the minor unit of ``currency``;
    the direction comes from ``classification``.
    """

    model_config = ConfigDict(frozen=True)

    id: TaxableEventId
    classification: Classification
    amount: Decimal
    currency: CurrencyCode
    discount_eligible: bool
    financial_year: str
    occurred_at: datetime
    account_id: AccountId
    asset_id: AssetId
    operation_ids: tuple[OperationId, ...]
    parcel_ids: tuple[ParcelId, ...] = ()
    match_id: MatchId | None = None
    quantity: Decimal | None = None
    proceeds: Decimal | None = None
    cost_basis: Decimal | None = None
    label: OperationLabel | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> TaxableEvent:
        if self.amount < 0:
            raise ValueError("TaxableEvent.amount must be >= 0")
        if not self.operation_ids:
            raise ValueError("TaxableEvent must reference at least one operation")
        if self.discount_eligible and self.classification != Classification.CAPITAL_GAIN:
            raise ValueError("Only capital gains can be discount eligible")
        return self

    @property
    def signed_amount(self) -> Decimal:
        if self.classification in (Classification.CAPITAL_LOSS, Classification.EXPENSE):
            return -self.amount
        return self.amount

    @property
    def is_capital(self) -> bool:
        return self.classification in (Classification.CAPITAL_GAIN, Classification.CAPITAL_LOSS)


__all__ = ["Classification", "Match", "MatchedParcel", "Parcel", "TaxableEvent"]
