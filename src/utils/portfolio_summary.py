from __future__ import annotations

from typing import Iterable

from domain.currency import ExchangeRate
from domain.holdings import Holding
from domain.portfolio import GroupTotal, PortfolioReport
from domain.transaction import Transaction

from .formatting import format_decimal, format_money, format_pct, render_table


def render_holdings(holdings: Iterable[Holding]) -> str:
    rows = [
        [
            holding.account,
            holding.asset,
            format_decimal(holding.quantity),
            format_decimal(holding.avg_cost),
            format_decimal(holding.cost_basis_total),
            holding.cost_basis_currency,
        ]
        for holding in holdings
    ]
    if not rows:
        return "Holdings:\n  (empty)"
    return "Holdings:\n" + render_table(
        ["Account", "Asset", "Quantity", "Avg cost", "Cost basis", "Ccy"], rows, align_left=2
    )


def render_transactions(transactions: Iterable[Transaction], voided: set[int] | None = None) -> str:
    voided = voided or set()
    rows: list[list[str]] = []
    for tx in transactions:
        request = tx.request
        summary = ", ".join(
            f"{key}={value}"
            for key, value in request.model_dump(exclude={"type", "timestamp", "notes", "external_id"}).items()
            if value is not None
        )
        status = "voided" if tx.id in voided else ""
        rows.append([str(tx.id), tx.timestamp.strftime("%Y-%m-%d %H:%M"), tx.type.value, status, summary])
    if not rows:
        return "Transactions:\n  (empty)"
    return "Transactions:\n" + render_table(["Id", "Timestamp", "Type", "Status", "Details"], rows, align_left=5)


def render_rate_history(history: Iterable[ExchangeRate]) -> str:
    rows = [
        [entry.timestamp.strftime("%Y-%m-%d %H:%M"), entry.pair, format_decimal(entry.rate), entry.source.value]
        for entry in history
    ]
    if not rows:
        return "Rates:\n  (empty)"
    return "Rates:\n" + render_table(["Timestamp", "Pair", "Rate", "Source"], rows, align_left=2)


def _group_rows(groups: list[GroupTotal]) -> list[list[str]]:
    return [
        [
            group.key,
            format_money(group.value),
            format_money(group.cost_basis),
            format_money(group.unrealized_pnl),
            format_pct(group.pnl_pct),
            str(group.unknown_count) if group.unknown_count else "",
        ]
        for group in groups
    ]


def render_portfolio(report: PortfolioReport) -> str:
    ccy = report.currency
    sections: list[str] = [f"Portfolio ({ccy}):"]
    if not report.positions:
        sections.append("  (empty)")
        return "\n".join(sections)

    position_rows = [
        [
            position.account,
            position.asset,
            format_decimal(position.quantity),
            format_money(position.price),
            format_money(position.value),
            format_money(position.cost_basis),
            format_money(position.unrealized_pnl),
            format_pct(position.pnl_pct),
        ]
        for position in report.positions
    ]
    sections.append(
        render_table(
            ["Account", "Asset", "Quantity", "Price", f"Value {ccy}", "Cost", "P&L", "P&L %"],
            position_rows,
            align_left=2,
        )
    )

    group_headers = [f"Value {ccy}", "Cost", "P&L", "P&L %", "Unknown"]
    for title, groups in (
        ("By account", report.by_account),
        ("By category", report.by_category),
        ("By asset", report.by_asset),
    ):
        sections.append(f"\n{title}:")
        sections.append(render_table([title.split()[-1].capitalize(), *group_headers], _group_rows(groups)))

    sections.append("\n" + render_table(["Total", *group_headers], _group_rows([report.total])))
    if report.unpriced_assets:
        sections.append(f"\nNo price for: {', '.join(report.unpriced_assets)} (P&L unknown)")
    return "\n".join(sections)
