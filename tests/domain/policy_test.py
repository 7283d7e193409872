from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from taxlots.domain.errors import PolicyChangeNotSupported
from taxlots.domain.policy import EngineConfig, FiscalYearConfig, IdentificationConfig, IdentificationMethod, MethodScope


def test_most_specific_scope_wins() -> None:
    config = IdentificationConfig(
        default_method=IdentificationMethod.FIFO,
        scopes=(
            MethodScope(account_id="broker", method=IdentificationMethod.LIFO),
            MethodScope(asset_id="ACME", method=IdentificationMethod.AVERAGE_COST),
            MethodScope(account_id="broker", asset_id="ACME", method=IdentificationMethod.SPECIFIC),
        ),
    )

    assert config.method_for("broker", "ACME") == IdentificationMethod.SPECIFIC
    assert config.method_for("bank", "ACME") == IdentificationMethod.AVERAGE_COST
    assert config.method_for("broker", "BOLT") == IdentificationMethod.LIFO
    assert config.method_for("bank", "BOLT") == IdentificationMethod.FIFO


def test_conflicting_scopes_are_rejected() -> None:
    config = IdentificationConfig(
        scopes=(
            MethodScope(asset_id="ACME", method=IdentificationMethod.LIFO),
            MethodScope(asset_id="ACME", method=IdentificationMethod.FIFO),
        )
    )

    with pytest.raises(PolicyChangeNotSupported):
        config.check_consistency()


def test_calendar_fiscal_year_labels() -> None:
    fiscal_year = FiscalYearConfig()

    assert fiscal_year.label(datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc)) == "2024"
    assert fiscal_year.label(datetime(2025, 1, 1, tzinfo=timezone.utc)) == "2025"


def test_july_fiscal_year_in_local_timezone() -> None:
    fiscal_year = FiscalYearConfig(start_month=7, start_day=1, timezone="Australia/Sydney")

    # 2024-06-30 15:00 UTC is already 1 July in Sydney.
    assert fiscal_year.label(datetime(2024, 6, 30, 15, tzinfo=timezone.utc)) == "2024-25"
    assert fiscal_year.label(datetime(2024, 6, 30, 13, tzinfo=timezone.utc)) == "2023-24"
    assert fiscal_year.bounds(2024) == (date(2024, 7, 1), date(2025, 6, 30))


@pytest.mark.parametrize("month, day, tz", [(2, 30, "UTC"), (2, 29, "UTC"), (1, 1, "Mars/Olympus")])
def test_invalid_fiscal_year_boundaries(month: int, day: int, tz: str) -> None:
    with pytest.raises(ValidationError):
        FiscalYearConfig(start_month=month, start_day=day, timezone=tz)


def test_engine_config_from_file(tmp_path: Path) -> None:
    policy = tmp_path / "policy.json"
    policy.write_text(
        """
        {
          "reporting_currency": "aud",
          "identification": {"default_method": "LIFO"},
          "classification": {"discount_threshold_days": 365, "discount_rate": "0.5"},
          "fiscal_year": {"start_month": 7, "start_day": 1, "timezone": "Australia/Sydney"},
          "allow_late_operations": false,
          "max_workers": 4
        }
        """,
        encoding="utf-8",
    )

    config = EngineConfig.from_file(policy)

    assert config.reporting_currency == "AUD"
    assert config.identification.default_method == IdentificationMethod.LIFO
    assert config.classification.discount_threshold == timedelta(days=365)
    assert str(config.classification.discount_rate) == "0.5"
    assert config.allow_late_operations is False
    assert config.max_workers == 4


def test_engine_config_is_immutable() -> None:
    config = EngineConfig()

    with pytest.raises(ValidationError):
        config.reporting_currency = "EUR"  # type: ignore[misc]


def test_float_discount_rate_is_rejected() -> None:
    with pytest.raises(ValidationError):
        EngineConfig.model_validate({"classification": {"discount_rate": 0.5}})
