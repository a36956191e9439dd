from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal

UNKNOWN = "?"


def format_decimal(value: Decimal) -> str:
    quantized = value.normalize()
    # Avoid scientific notation for integers.
    if quantized == quantized.to_integral():
        return f"{quantized:.0f}"
    return format(quantized, "f")


def format_money(value: Decimal | None, places: int = 2) -> str:
    if value is None:
        return UNKNOWN
    amount = value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)
    return f"{amount:,.{places}f}"


def format_pct(value: Decimal | None) -> str:
    if value is None:
        return UNKNOWN
    return f"{value:+.2f}%"


def render_table(headers: list[str], rows: list[list[str]], *, align_left: int = 1) -> str:
    """Fixed-width table; the first ``align_left`` columns are left-aligned, the rest right-aligned."""
    widths = [len(header) for header in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def _line(cells: list[str]) -> str:
        parts = [
            f"{cell:<{widths[i]}}" if i < align_left else f"{cell:>{widths[i]}}" for i, cell in enumerate(cells)
        ]
        return " ".join(parts).rstrip()

    header = _line(headers)
    lines = [header, "-" * len(header)]
    lines.extend(_line(row) for row in rows)
    return "\n".join(lines)
