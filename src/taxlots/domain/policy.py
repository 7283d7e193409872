"""Immutable run configuration.

An :class:`EngineConfig` is loaded once per run and passed explicitly to the
engine; nothing in the domain reads ambient state. Statutory values (discount
threshold, fiscal year boundary, revenue treatment) are data, never code.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import PolicyChangeNotSupported


class IdentificationMethod(StrEnum):
    FIFO = "FIFO"
    LIFO = "LIFO"
    SPECIFIC = "SPECIFIC"
    AVERAGE_COST = "AVERAGE_COST"


class DiscountBoundary(StrEnum):
    INCLUSIVE = "INCLUSIVE"  # held >= threshold
    EXCLUSIVE = "EXCLUSIVE"  # held > threshold


class EventGranularity(StrEnum):
    PER_MATCH = "PER_MATCH"
    PER_PARCEL = "PER_PARCEL"


class MethodScope(BaseModel):
    """Identification method override. ``None`` acts as a wildcard."""

    model_config = ConfigDict(frozen=True)

    account_id: str | None = None
    asset_id: str | None = None
    method: IdentificationMethod

    @property
    def specificity(self) -> int:
        # exact > asset-only > account-only
        if self.account_id is not None and self.asset_id is not None:
            return 3
        if self.asset_id is not None:
            return 2
        if self.account_id is not None:
            return 1
        return 0

    def matches(self, account_id: str, asset_id: str) -> bool:
        return (self.account_id is None or self.account_id == account_id) and (
            self.asset_id is None or self.asset_id == asset_id
        )


class IdentificationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_method: IdentificationMethod = IdentificationMethod.FIFO
    scopes: tuple[MethodScope, ...] = ()

    def check_consistency(self) -> None:
        seen: dict[tuple[str | None, str | None], IdentificationMethod] = {}
        for scope in self.scopes:
            key = (scope.account_id, scope.asset_id)
            previous = seen.setdefault(key, scope.method)
            if previous != scope.method:
                raise PolicyChangeNotSupported(
                    f"Conflicting identification methods {previous} and {scope.method} for one scope",
                    account_id=scope.account_id,
                    asset_id=scope.asset_id,
                )

    def method_for(self, account_id: str, asset_id: str) -> IdentificationMethod:
        candidates = [scope for scope in self.scopes if scope.matches(account_id, asset_id)]
        if not candidates:
            return self.default_method
        return max(candidates, key=lambda scope: scope.specificity).method


class RevenueRule(BaseModel):
    """Marks (account, asset) combinations whose disposals are revenue, not capital."""

    model_config = ConfigDict(frozen=True)

    account_id: str | None = None
    asset_id: str | None = None

    @model_validator(mode="after")
    def _validate_scope(self) -> RevenueRule:
        if self.account_id is None and self.asset_id is None:
            raise ValueError("RevenueRule needs account_id, asset_id or both")
        return self

    def matches(self, account_id: str, asset_id: str) -> bool:
        return (self.account_id is None or self.account_id == account_id) and (
            self.asset_id is None or self.asset_id == asset_id
        )


class ClassificationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    discount_threshold: timedelta | None = None
    discount_boundary: DiscountBoundary = DiscountBoundary.INCLUSIVE
    discount_rate: Decimal = Decimal("0")
    revenue_rules: tuple[RevenueRule, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _threshold_in_days(cls, data: Any) -> Any:
        # Policy files may state the threshold as a whole number of days.
        if isinstance(data, dict) and "discount_threshold_days" in data:
            data = dict(data)
            days = data.pop("discount_threshold_days")
            data["discount_threshold"] = None if days is None else timedelta(days=days)
        return data

    @field_validator("discount_rate", mode="before")
    @classmethod
    def _exact_rate(cls, value: Any) -> Any:
        if isinstance(value, float):
            raise ValueError("discount_rate must be an exact decimal")
        return value

    @model_validator(mode="after")
    def _validate_fields(self) -> ClassificationConfig:
        if self.discount_threshold is not None and self.discount_threshold < timedelta(0):
            raise ValueError("discount_threshold must be >= 0")
        if not Decimal("0") <= self.discount_rate <= Decimal("1"):
            raise ValueError("discount_rate must be within [0, 1]")
        return self


class FiscalYearConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_month: int = Field(default=1, ge=1, le=12)
    start_day: int = Field(default=1, ge=1, le=31)
    timezone: str = "UTC"

    @model_validator(mode="after")
    def _validate_boundary(self) -> FiscalYearConfig:
        # 2023 is not a leap year, so Feb 29 boundaries are rejected too.
        try:
            date(2023, self.start_month, self.start_day)
        except ValueError as exc:
            raise ValueError(f"Invalid fiscal year boundary {self.start_month}/{self.start_day}") from exc
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {self.timezone!r}") from exc
        return self

    def start_year(self, timestamp: datetime) -> int:
        local = timestamp.astimezone(ZoneInfo(self.timezone)).date()
        boundary = date(local.year, self.start_month, self.start_day)
        return local.year if local >= boundary else local.year - 1

    def label(self, timestamp: datetime) -> str:
        year = self.start_year(timestamp)
        if (self.start_month, self.start_day) == (1, 1):
            return str(year)
        return f"{year}-{(year + 1) % 100:02d}"

    def bounds(self, start_year: int) -> tuple[date, date]:
        """First and last day of the financial year starting in ``start_year``."""
        start = date(start_year, self.start_month, self.start_day)
        end = date(start_year + 1, self.start_month, self.start_day) - timedelta(days=1)
        return start, end


class EngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    reporting_currency: str = "USD"
    identification: IdentificationConfig = IdentificationConfig()
    classification: ClassificationConfig = ClassificationConfig()
    fiscal_year: FiscalYearConfig = FiscalYearConfig()
    event_granularity: EventGranularity = EventGranularity.PER_MATCH
    transfers_realize_gains: bool = True
    allow_late_operations: bool = True
    minor_units: dict[str, int] = Field(default_factory=dict)
    max_workers: int = Field(default=1, ge=1)

    @field_validator("reporting_currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("reporting_currency must be non-empty")
        return value

    @classmethod
    def from_file(cls, path: Path) -> EngineConfig:
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


__all__ = [
    "ClassificationConfig",
    "DiscountBoundary",
    "EngineConfig",
    "EventGranularity",
    "FiscalYearConfig",
    "IdentificationConfig",
    "IdentificationMethod",
    "MethodScope",
    "RevenueRule",
]
