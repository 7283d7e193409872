from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

import pytest

from taxlots.domain.records import Classification, TaxableEvent
from taxlots.domain.views import build_views, summarize_years

_EVENT_IDS = count()


def _event(
    classification: Classification,
    amount: str,
    *,
    year: str = "2024",
    eligible: bool = False,
    currency: str = "USD",
) -> TaxableEvent:
    return TaxableEvent(
        id=f"ev-{next(_EVENT_IDS)}",
        classification=classification,
        amount=Decimal(amount),
        currency=currency,
        discount_eligible=eligible,
        financial_year=year,
        occurred_at=datetime(int(year), 6, 1, tzinfo=timezone.utc),
        account_id="broker",
        asset_id="ACME",
        operation_ids=("op-1",),
    )


def test_views_group_by_year_and_classification_in_stable_order() -> None:
    events = [
        _event(Classification.INCOME, "20.00"),
        _event(Classification.CAPITAL_GAIN, "10.00", year="2025"),
        _event(Classification.CAPITAL_LOSS, "30.00"),
        _event(Classification.EXPENSE, "5.00"),
        _event(Classification.CAPITAL_GAIN, "100.00", eligible=True),
        _event(Classification.CAPITAL_GAIN, "50.00"),
    ]

    views = build_views(events, "0.5")

    assert [(view.financial_year, view.classification) for view in views] == [
        ("2024", Classification.CAPITAL_GAIN),
        ("2024", Classification.CAPITAL_LOSS),
        ("2024", Classification.INCOME),
        ("2024", Classification.EXPENSE),
        ("2025", Classification.CAPITAL_GAIN),
    ]
    gains = views[0]
    assert gains.event_count == 2
    assert gains.gross_gain == Decimal("150.00")
    assert gains.discount_eligible_gain == Decimal("100.00")
    assert gains.discounted_gain == Decimal("100.00")
    assert gains.net_income == 0

    losses = views[1]
    assert losses.gross_gain == Decimal("-30.00")
    assert losses.discounted_gain == Decimal("-30.00")

    assert views[2].net_income == Decimal("20.00")
    assert views[3].net_income == Decimal("-5.00")
    assert views[3].gross_gain == 0


def test_views_are_rebuilt_identically_from_the_same_events() -> None:
    events = [
        _event(Classification.CAPITAL_GAIN, "12.34", eligible=True),
        _event(Classification.CAPITAL_LOSS, "1.00"),
    ]

    assert build_views(events, "0.5") == build_views(list(reversed(events)), "0.5")


def test_discount_is_rounded_half_even_to_amount_precision() -> None:
    views = build_views([_event(Classification.CAPITAL_GAIN, "0.05", eligible=True)], "0.5")

    # 0.025 rounds to 0.02.
    assert views[0].discounted_gain == Decimal("0.03")


def test_views_reject_mixed_currencies() -> None:
    events = [
        _event(Classification.CAPITAL_GAIN, "1.00", currency="USD"),
        _event(Classification.CAPITAL_GAIN, "1.00", currency="EUR"),
    ]

    with pytest.raises(ValueError, match="Cannot aggregate"):
        build_views(events)


@pytest.mark.parametrize("rate", [0.5, "1.5", "-0.1"])
def test_views_reject_invalid_discount_rates(rate: object) -> None:
    with pytest.raises(ValueError, match="discount_rate"):
        build_views([], rate)  # type: ignore[arg-type]


def test_no_events_yield_no_views() -> None:
    assert build_views([]) == []
    assert summarize_years([]) == []


def test_losses_offset_ineligible_gains_before_the_discount() -> None:
    events = [
        _event(Classification.CAPITAL_GAIN, "100.00", eligible=True),
        _event(Classification.CAPITAL_GAIN, "50.00"),
        _event(Classification.CAPITAL_LOSS, "30.00"),
        _event(Classification.INCOME, "20.00"),
        _event(Classification.EXPENSE, "5.00"),
    ]

    (summary,) = summarize_years(build_views(events, "0.5"))

    assert summary.capital_gains == Decimal("150.00")
    assert summary.capital_losses == Decimal("30.00")
    assert summary.net_capital_gain == Decimal("120.00")
    # The loss is fully absorbed by the 50.00 ineligible gain, so all 100.00 is discounted.
    assert summary.discounted_capital_gain == Decimal("70.00")
    assert summary.net_income == Decimal("15.00")


def test_losses_beyond_ineligible_gains_reduce_the_discounted_gain() -> None:
    events = [
        _event(Classification.CAPITAL_GAIN, "100.00", eligible=True),
        _event(Classification.CAPITAL_GAIN, "20.00"),
        _event(Classification.CAPITAL_LOSS, "50.00"),
    ]

    (summary,) = summarize_years(build_views(events, "0.5"))

    assert summary.net_capital_gain == Decimal("70.00")
    assert summary.discounted_capital_gain == Decimal("35.00")


def test_net_capital_loss_is_not_discounted() -> None:
    events = [
        _event(Classification.CAPITAL_GAIN, "10.00", eligible=True),
        _event(Classification.CAPITAL_LOSS, "40.00"),
    ]

    (summary,) = summarize_years(build_views(events, "0.5"))

    assert summary.net_capital_gain == Decimal("-30.00")
    assert summary.discounted_capital_gain == Decimal("-30.00")


def test_summaries_are_one_per_year() -> None:
    events = [
        _event(Classification.CAPITAL_GAIN, "1.00", year="2025"),
        _event(Classification.INCOME, "2.00", year="2023"),
    ]

    summaries = summarize_years(build_views(events))

    assert [summary.financial_year for summary in summaries] == ["2023", "2025"]
    assert summaries[0].net_capital_gain == 0
    assert summaries[0].net_income == Decimal("2.00")
