from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class AwareDateTimeAsString(TypeDecorator):
    """ISO-8601 text that keeps the original UTC offset."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: object) -> str | None:
        if value is None:
            return None
        if value.tzinfo is None:
            msg = "Refusing to store a naive datetime"
            raise ValueError(msg)
        return value.isoformat()

    def process_result_value(self, value: str | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        return datetime.fromisoformat(value)


class Base(DeclarativeBase):
    pass


class OperationOrm(Base):
    __tablename__ = "operations"

    position: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(AwareDateTimeAsString, nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fee: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    asset_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    identification_method: Mapped[str | None] = mapped_column(String, nullable=True)
    parcel_selection: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)


class ParcelOrm(Base):
    __tablename__ = "parcels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    original_quantity: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(AwareDateTimeAsString, nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    cost_currency: Mapped[str] = mapped_column(String, nullable=False)
    source_operation_id: Mapped[str] = mapped_column(String, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)


class MatchOrm(Base):
    __tablename__ = "matches"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    disposal_operation_id: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    method: Mapped[str] = mapped_column(String, nullable=False)
    disposed_at: Mapped[datetime] = mapped_column(AwareDateTimeAsString, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)

    parcels: Mapped[list["MatchedParcelOrm"]] = relationship(
        cascade="all, delete-orphan",
        back_populates="match",
        lazy="joined",
        order_by="MatchedParcelOrm.position",
    )


class MatchedParcelOrm(Base):
    __tablename__ = "matched_parcels"

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    match_id: Mapped[str] = mapped_column(String, ForeignKey("matches.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    parcel_id: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    holding_start: Mapped[datetime] = mapped_column(AwareDateTimeAsString, nullable=False)

    match: Mapped[MatchOrm] = relationship(back_populates="parcels")


class TaxableEventOrm(Base):
    __tablename__ = "taxable_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    classification: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False)
    discount_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    financial_year: Mapped[str] = mapped_column(String, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(AwareDateTimeAsString, nullable=False)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    operation_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    parcel_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    match_id: Mapped[str | None] = mapped_column(String, nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    proceeds: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    cost_basis: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    # Position in the engine's deterministic output order.
    position: Mapped[int] = mapped_column(Integer, nullable=False)
