"""Aggregated views over taxable events, grouped by financial year and classification.

Pure functions: the same event set always yields the same views, so views can
be rebuilt whenever new events are produced.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict

from .records import Classification, TaxableEvent

_CLASSIFICATION_ORDER = {
    Classification.CAPITAL_GAIN: 0,
    Classification.CAPITAL_LOSS: 1,
    Classification.INCOME: 2,
    Classification.EXPENSE: 3,
}


class AggregatedView(BaseModel):
    """Totals of one (financial year, classification) group.

    Capital groups carry ``gross_gain`` (losses negative) and
    ``discounted_gain``; income and expense groups carry ``net_income``
    (expenses negative). The other figures are zero.
    """

    model_config = ConfigDict(frozen=True)

    financial_year: str
    classification: Classification
    event_count: int
    gross_gain: Decimal
    discount_eligible_gain: Decimal
    discounted_gain: Decimal
    net_income: Decimal
    currency: str
    discount_rate: Decimal = Decimal("0")


class FinancialYearSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    financial_year: str
    capital_gains: Decimal
    capital_losses: Decimal
    net_capital_gain: Decimal
    discounted_capital_gain: Decimal
    net_income: Decimal
    currency: str


def _check_rate(value: Any) -> Decimal:
    if isinstance(value, float):
        msg = "discount_rate must be an exact decimal"
        raise ValueError(msg)
    rate = Decimal(value)
    if not Decimal(0) <= rate <= Decimal(1):
        msg = f"discount_rate must be within [0, 1], got {rate}"
        raise ValueError(msg)
    return rate


def _quantum(amounts: Iterable[Decimal]) -> Decimal:
    exponent = min((amount.as_tuple().exponent for amount in amounts), default=0)
    return Decimal(1).scaleb(int(exponent))


def build_views(events: Iterable[TaxableEvent], discount_rate: Decimal | str | int = Decimal("0")) -> list[AggregatedView]:
    """Group ``events`` by (financial year, classification) and total them.

    ``discount_rate`` is the fraction removed from discount-eligible capital
    gains; the discounted figure is rounded half-even to the precision of the
    event amounts.
    """
    rate = _check_rate(discount_rate)
    groups: dict[tuple[str, Classification], list[TaxableEvent]] = {}
    currency: str | None = None
    for event in events:
        if currency is None:
            currency = event.currency
        elif event.currency != currency:
            msg = f"Cannot aggregate events in {event.currency} with events in {currency}"
            raise ValueError(msg)
        groups.setdefault((event.financial_year, event.classification), []).append(event)

    views: list[AggregatedView] = []
    for (year, classification), grouped in sorted(
        groups.items(), key=lambda item: (item[0][0], _CLASSIFICATION_ORDER[item[0][1]])
    ):
        total = sum((event.signed_amount for event in grouped), start=Decimal(0))
        eligible = sum((event.amount for event in grouped if event.discount_eligible), start=Decimal(0))
        capital = grouped[0].is_capital
        discounted = total - (eligible * rate).quantize(
            _quantum(event.amount for event in grouped), rounding=ROUND_HALF_EVEN
        )
        views.append(
            AggregatedView(
                financial_year=year,
                classification=classification,
                event_count=len(grouped),
                gross_gain=total if capital else Decimal(0),
                discount_eligible_gain=eligible,
                discounted_gain=discounted if capital else Decimal(0),
                net_income=Decimal(0) if capital else total,
                currency=grouped[0].currency,
                discount_rate=rate,
            )
        )
    return views


def summarize_years(views: Iterable[AggregatedView]) -> list[FinancialYearSummary]:
    """Combine the groups of each financial year into one summary.

    Capital losses are set off against gains that do not qualify for the
    discount first; the discount applies to whatever eligible gain remains.
    """
    by_year: dict[str, list[AggregatedView]] = {}
    for view in views:
        by_year.setdefault(view.financial_year, []).append(view)

    summaries: list[FinancialYearSummary] = []
    for year, year_views in sorted(by_year.items()):
        gains = sum(
            (view.gross_gain for view in year_views if view.classification == Classification.CAPITAL_GAIN),
            start=Decimal(0),
        )
        losses = -sum(
            (view.gross_gain for view in year_views if view.classification == Classification.CAPITAL_LOSS),
            start=Decimal(0),
        )
        eligible = sum((view.discount_eligible_gain for view in year_views), start=Decimal(0))
        rate = max((view.discount_rate for view in year_views), default=Decimal(0))

        ineligible = gains - eligible
        unabsorbed = max(losses - ineligible, Decimal(0))
        remaining_eligible = max(eligible - unabsorbed, Decimal(0))
        net = gains - losses
        if net > 0:
            discount = (remaining_eligible * rate).quantize(_quantum([gains, losses]), rounding=ROUND_HALF_EVEN)
            discounted = net - discount
        else:
            discounted = net

        summaries.append(
            FinancialYearSummary(
                financial_year=year,
                capital_gains=gains,
                capital_losses=losses,
                net_capital_gain=net,
                discounted_capital_gain=discounted,
                net_income=sum((view.net_income for view in year_views), start=Decimal(0)),
                currency=year_views[0].currency,
            )
        )
    return summaries


__all__ = ["AggregatedView", "FinancialYearSummary", "build_views", "summarize_years"]
