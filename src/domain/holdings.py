from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, field_validator, model_validator

from domain.base_types import AccountId, AssetId, normalize_code

HoldingKey = tuple[AccountId, AssetId]


class Holding(BaseModel):
    """Running quantity and average cost of one asset in one account.

    Derived state: always equal to the fold of the journal entries touching (account, asset).
    """

    account: AccountId
    asset: AssetId
    quantity: Decimal = Decimal(0)
    avg_cost: Decimal = Decimal(0)
    cost_basis_currency: AssetId
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> Holding:
        if self.quantity < 0:
            raise ValueError("Holding.quantity must be >= 0")
        if self.avg_cost < 0:
            raise ValueError("Holding.avg_cost must be >= 0")
        return self

    @property
    def key(self) -> HoldingKey:
        return self.account, self.asset

    @property
    def cost_basis_total(self) -> Decimal:
        return self.quantity * self.avg_cost

    def fingerprint(self) -> tuple[str, ...]:
        updated = self.updated_at.isoformat() if self.updated_at is not None else ""
        return str(self.quantity), str(self.avg_cost), self.cost_basis_currency, updated


class HoldingBook:
    """In-memory holding state the cost-basis calculator folds transactions into."""

    def __init__(self, holdings: Iterable[Holding] = ()) -> None:
        self._holdings: dict[HoldingKey, Holding] = {holding.key: holding for holding in holdings}

    def get(self, account: AccountId, asset: AssetId) -> Holding | None:
        holding = self._holdings.get((account, asset))
        return holding.model_copy() if holding is not None else None

    def balance(self, account: AccountId, asset: AssetId) -> Decimal:
        holding = self._holdings.get((account, asset))
        return holding.quantity if holding is not None else Decimal(0)

    def put_all(self, holdings: Iterable[Holding]) -> None:
        for holding in holdings:
            self._holdings[holding.key] = holding

    def snapshot(self) -> list[Holding]:
        return [self._holdings[key].model_copy() for key in sorted(self._holdings)]

    def __len__(self) -> int:
        return len(self._holdings)


class HoldingFilter(BaseModel):
    account: AccountId | None = None
    category: str | None = None
    asset: AssetId | None = None
    include_zero: bool = True

    @field_validator("asset", mode="before")
    @classmethod
    def _normalize_asset(cls, value: str | None) -> AssetId | None:
        return normalize_code(value) if value else None
