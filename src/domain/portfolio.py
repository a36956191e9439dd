from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal, localcontext

from domain.account import DEFAULT_CATEGORY, Account
from domain.base_types import AccountId, AssetId
from domain.holdings import Holding

PCT_QUANTUM = Decimal("0.01")


@dataclass
class PositionValuation:
    account: AccountId
    category: str
    asset: AssetId
    quantity: Decimal
    avg_cost: Decimal
    cost_basis: Decimal
    cost_basis_currency: AssetId
    price: Decimal | None = None
    value: Decimal | None = None
    unrealized_pnl: Decimal | None = None
    pnl_pct: Decimal | None = None

    @property
    def pnl_known(self) -> bool:
        return self.unrealized_pnl is not None


@dataclass
class GroupTotal:
    """Sums over one group; value and P&L only count positions whose P&L is known."""

    key: str
    value: Decimal = Decimal(0)
    cost_basis: Decimal = Decimal(0)
    unrealized_pnl: Decimal = Decimal(0)
    unknown_count: int = 0

    def add(self, position: PositionValuation) -> None:
        if position.unrealized_pnl is None or position.value is None:
            self.unknown_count += 1
            return
        self.value += position.value
        self.cost_basis += position.cost_basis
        self.unrealized_pnl += position.unrealized_pnl

    @property
    def pnl_pct(self) -> Decimal | None:
        return _pct(self.unrealized_pnl, self.cost_basis)


@dataclass
class PortfolioReport:
    currency: AssetId
    positions: list[PositionValuation] = field(default_factory=list)
    by_account: list[GroupTotal] = field(default_factory=list)
    by_category: list[GroupTotal] = field(default_factory=list)
    by_asset: list[GroupTotal] = field(default_factory=list)
    total: GroupTotal = field(default_factory=lambda: GroupTotal(key="total"))
    unpriced_assets: list[AssetId] = field(default_factory=list)


def build_portfolio_report(
    holdings: Iterable[Holding],
    accounts: Iterable[Account],
    prices: Mapping[str, Decimal],
    *,
    currency: AssetId,
) -> PortfolioReport:
    """Value non-zero holdings with caller-supplied prices quoted in ``currency``.

    A holding without a price, or whose cost basis is kept in another currency, is reported with
    unknown value/P&L instead of failing the whole report.
    """
    categories = {account.name: account.category for account in accounts}
    report = PortfolioReport(currency=currency)

    by_account: dict[str, GroupTotal] = {}
    by_category: dict[str, GroupTotal] = {}
    by_asset: dict[str, GroupTotal] = {}
    unpriced: set[AssetId] = set()

    for holding in sorted(holdings, key=lambda h: h.key):
        if holding.quantity == 0:
            continue

        position = _value_position(holding, categories.get(holding.account, DEFAULT_CATEGORY), prices, currency)
        if position.price is None:
            unpriced.add(holding.asset)
        report.positions.append(position)

        for groups, key in (
            (by_account, position.account),
            (by_category, position.category),
            (by_asset, position.asset),
        ):
            groups.setdefault(key, GroupTotal(key=key)).add(position)
        report.total.add(position)

    report.by_account = [by_account[key] for key in sorted(by_account)]
    report.by_category = [by_category[key] for key in sorted(by_category)]
    report.by_asset = [by_asset[key] for key in sorted(by_asset)]
    report.unpriced_assets = sorted(unpriced)
    return report


def _value_position(
    holding: Holding, category: str, prices: Mapping[str, Decimal], currency: AssetId
) -> PositionValuation:
    position = PositionValuation(
        account=holding.account,
        category=category,
        asset=holding.asset,
        quantity=holding.quantity,
        avg_cost=holding.avg_cost,
        cost_basis=holding.cost_basis_total,
        cost_basis_currency=holding.cost_basis_currency,
    )

    price = Decimal(1) if holding.asset == currency else prices.get(holding.asset)
    if price is None:
        return position

    position.price = price
    position.value = holding.quantity * price
    if holding.cost_basis_currency == currency:
        position.unrealized_pnl = position.value - position.cost_basis
        position.pnl_pct = _pct(position.unrealized_pnl, position.cost_basis)
    return position


def _pct(pnl: Decimal, cost: Decimal) -> Decimal | None:
    if cost <= 0:
        return None
    with localcontext() as ctx:
        ctx.prec = 40
        return (pnl / cost * 100).quantize(PCT_QUANTUM, rounding=ROUND_HALF_EVEN)
