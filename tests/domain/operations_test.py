from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from taxlots.domain.asset import AssetKind, is_valid_isin, normalize_isin
from taxlots.domain.operations import Operation, OperationKind, ParcelSelection
from taxlots.domain.policy import IdentificationMethod

TS = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _operation(**overrides: object) -> Operation:
    values: dict[str, object] = {
        "id": "op-1",
        "kind": OperationKind.ACQUISITION,
        "account_id": "broker",
        "asset_id": "ACME",
        "quantity": Decimal("10"),
        "unit_price": Decimal("100"),
        "currency": "usd",
        "timestamp": TS,
    }
    values.update(overrides)
    return Operation.model_validate(values)


def test_operation_normalizes_currency_and_exposes_gross_value() -> None:
    operation = _operation(fee=Decimal("1.5"))

    assert operation.currency == "USD"
    assert operation.gross_value == Decimal("1000")
    assert operation.partition_key == ("broker", "ACME")
    assert operation.is_inbound and not operation.is_outbound


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": Decimal("0")},
        {"quantity": Decimal("-1")},
        {"quantity": 1.5},
        {"unit_price": Decimal("-1")},
        {"fee": Decimal("-0.01")},
        {"timestamp": datetime(2024, 5, 1)},
        {"id": ""},
    ],
)
def test_invalid_operations_are_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        _operation(**overrides)


def test_transfer_sign_decides_direction() -> None:
    inbound = _operation(kind=OperationKind.TRANSFER, quantity=Decimal("2"))
    outbound = _operation(kind=OperationKind.TRANSFER, quantity=Decimal("-2"))

    assert inbound.is_inbound
    assert outbound.is_outbound
    assert outbound.magnitude == Decimal("2")


def test_parcel_selection_rules() -> None:
    selection = (ParcelSelection(parcel_id="p1", quantity=Decimal("1")),)

    disposal = _operation(kind=OperationKind.DISPOSAL, quantity=Decimal("-1"), parcel_selection=selection)
    assert disposal.requested_method == IdentificationMethod.SPECIFIC

    with pytest.raises(ValidationError):
        _operation(parcel_selection=selection)
    with pytest.raises(ValidationError):
        _operation(kind=OperationKind.DISPOSAL, identification_method=IdentificationMethod.SPECIFIC)
    with pytest.raises(ValidationError):
        _operation(
            kind=OperationKind.DISPOSAL,
            identification_method=IdentificationMethod.FIFO,
            parcel_selection=selection,
        )


def test_security_assets_require_an_isin() -> None:
    _operation(asset_id="US0378331005", asset_kind=AssetKind.SECURITY)

    with pytest.raises(ValidationError):
        _operation(asset_id="ACME", asset_kind=AssetKind.SECURITY)


def test_currency_assets_require_a_currency_code() -> None:
    _operation(asset_id="EUR", asset_kind=AssetKind.CURRENCY)

    with pytest.raises(ValidationError):
        _operation(asset_id="euro", asset_kind=AssetKind.CURRENCY)


def test_isin_normalization_ignores_hyphens() -> None:
    assert normalize_isin("US-0378331-005") == "US0378331005"
    assert is_valid_isin("US0378331005")
    assert not is_valid_isin("US03783310")
    assert not is_valid_isin("1S0378331005")
