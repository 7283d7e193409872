from __future__ import annotations

from typing import Iterable

from taxlots.domain.views import AggregatedView, FinancialYearSummary

from .formatting import format_amount


def render_views(views: Iterable[AggregatedView]) -> None:
    views_list = list(views)
    currency = views_list[0].currency if views_list else ""
    print(f"Taxable totals by financial year ({currency}):" if currency else "Taxable totals by financial year:")
    if not views_list:
        print("  (no taxable events)")
        return

    columns = (
        ("Year", [row.financial_year for row in views_list], "<"),
        ("Classification", [row.classification.value for row in views_list], "<"),
        ("Events", [str(row.event_count) for row in views_list], ">"),
        ("Gross gain", [format_amount(row.gross_gain) for row in views_list], ">"),
        ("Discounted gain", [format_amount(row.discounted_gain) for row in views_list], ">"),
        ("Net income", [format_amount(row.net_income) for row in views_list], ">"),
    )
    print("\n".join(_table(columns)))


def render_year_summaries(summaries: Iterable[FinancialYearSummary]) -> None:
    summaries_list = list(summaries)
    print("Financial year summary:")
    if not summaries_list:
        print("  (no taxable events)")
        return

    columns = (
        ("Year", [row.financial_year for row in summaries_list], "<"),
        ("Gains", [format_amount(row.capital_gains) for row in summaries_list], ">"),
        ("Losses", [format_amount(row.capital_losses) for row in summaries_list], ">"),
        ("Net capital gain", [format_amount(row.net_capital_gain) for row in summaries_list], ">"),
        ("After discount", [format_amount(row.discounted_capital_gain) for row in summaries_list], ">"),
        ("Net income", [format_amount(row.net_income) for row in summaries_list], ">"),
    )
    print("\n".join(_table(columns)))


def _table(columns: tuple[tuple[str, list[str], str], ...]) -> list[str]:
    widths = [max(len(title), max((len(cell) for cell in cells), default=0)) for title, cells, _ in columns]
    header = " ".join(f"{title:{align}{width}}" for (title, _, align), width in zip(columns, widths))
    lines = [header, "-" * len(header)]
    for index in range(len(columns[0][1])):
        lines.append(
            " ".join(f"{cells[index]:{align}{width}}" for (_, cells, align), width in zip(columns, widths))
        )
    return lines


__all__ = ["render_views", "render_year_summaries"]
