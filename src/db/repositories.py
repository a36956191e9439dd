from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from db import models
from domain.account import Account
from domain.base_types import AccountId, AccountType, AssetId, AssetKind, RateId, RateSource, TransactionId
from domain.currency import Currency, ExchangeRate
from domain.errors import HoldingMismatch
from domain.holdings import Holding
from domain.transaction import (
    ConversionRate,
    SwapRequest,
    Transaction,
    TransactionFilter,
    TransactionRequest,
    TransferRequest,
    VoidRequest,
    parse_transaction_request,
)


def _utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class CurrencyRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, currency: Currency) -> Currency:
        orm_currency = models.CurrencyOrm(
            code=currency.code,
            name=currency.name,
            symbol=currency.symbol,
            kind=currency.kind.value,
            precision=currency.precision,
            enabled=currency.enabled,
        )
        self._session.add(orm_currency)
        self._session.flush()
        return self._to_domain(orm_currency)

    def get(self, code: str) -> Currency | None:
        orm_currency = self._session.get(models.CurrencyOrm, code)
        if orm_currency is None:
            return None
        return self._to_domain(orm_currency)

    def list(self, *, include_disabled: bool = True) -> list[Currency]:
        stmt = select(models.CurrencyOrm).order_by(models.CurrencyOrm.code)
        if not include_disabled:
            stmt = stmt.where(models.CurrencyOrm.enabled.is_(True))
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def set_enabled(self, code: str, enabled: bool) -> Currency | None:
        orm_currency = self._session.get(models.CurrencyOrm, code)
        if orm_currency is None:
            return None
        orm_currency.enabled = enabled
        self._session.flush()
        return self._to_domain(orm_currency)

    @staticmethod
    def _to_domain(orm_currency: models.CurrencyOrm) -> Currency:
        return Currency(
            code=AssetId(orm_currency.code),
            name=orm_currency.name,
            symbol=orm_currency.symbol,
            kind=AssetKind(orm_currency.kind),
            precision=orm_currency.precision,
            enabled=orm_currency.enabled,
        )


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, account: Account) -> Account:
        orm_account = models.AccountOrm(
            name=account.name,
            account_type=account.account_type.value,
            category=account.category,
            sync_enabled=account.sync_enabled,
            archived=account.archived,
        )
        self._session.add(orm_account)
        self._session.flush()
        return self._to_domain(orm_account)

    def get(self, name: str) -> Account | None:
        orm_account = self._session.get(models.AccountOrm, name)
        if orm_account is None:
            return None
        return self._to_domain(orm_account)

    def list(self, *, category: str | None = None, include_archived: bool = True) -> list[Account]:
        stmt = select(models.AccountOrm).order_by(models.AccountOrm.name)
        if category is not None:
            stmt = stmt.where(models.AccountOrm.category == category)
        if not include_archived:
            stmt = stmt.where(models.AccountOrm.archived.is_(False))
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def update(self, account: Account) -> Account:
        orm_account = self._session.get(models.AccountOrm, account.name)
        if orm_account is None:
            raise KeyError(account.name)
        orm_account.account_type = account.account_type.value
        orm_account.category = account.category
        orm_account.sync_enabled = account.sync_enabled
        orm_account.archived = account.archived
        self._session.flush()
        return self._to_domain(orm_account)

    @staticmethod
    def _to_domain(orm_account: models.AccountOrm) -> Account:
        return Account(
            name=AccountId(orm_account.name),
            account_type=AccountType(orm_account.account_type),
            category=orm_account.category,
            sync_enabled=orm_account.sync_enabled,
            archived=orm_account.archived,
        )


class ExchangeRateRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, rate: ExchangeRate) -> ExchangeRate:
        orm_rate = models.ExchangeRateOrm(
            base=rate.base,
            quote=rate.quote,
            rate=rate.rate,
            timestamp=rate.timestamp,
            source=rate.source.value,
            note=rate.note,
        )
        self._session.add(orm_rate)
        self._session.flush()
        return self._to_domain(orm_rate)

    def latest(self, base: str, quote: str, *, at: datetime | None = None) -> ExchangeRate | None:
        """Most recent entry for the pair by (timestamp, id), optionally no later than ``at``."""
        stmt = (
            select(models.ExchangeRateOrm)
            .where(models.ExchangeRateOrm.base == base, models.ExchangeRateOrm.quote == quote)
            .order_by(models.ExchangeRateOrm.timestamp.desc(), models.ExchangeRateOrm.id.desc())
            .limit(1)
        )
        if at is not None:
            stmt = stmt.where(models.ExchangeRateOrm.timestamp <= at)
        orm_rate = self._session.scalar(stmt)
        if orm_rate is None:
            return None
        return self._to_domain(orm_rate)

    def history(self, base: str, quote: str) -> list[ExchangeRate]:
        stmt = (
            select(models.ExchangeRateOrm)
            .where(models.ExchangeRateOrm.base == base, models.ExchangeRateOrm.quote == quote)
            .order_by(models.ExchangeRateOrm.timestamp.desc(), models.ExchangeRateOrm.id.desc())
        )
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    @staticmethod
    def _to_domain(orm_rate: models.ExchangeRateOrm) -> ExchangeRate:
        return ExchangeRate(
            id=RateId(orm_rate.id),
            base=AssetId(orm_rate.base),
            quote=AssetId(orm_rate.quote),
            rate=orm_rate.rate,
            timestamp=_utc(orm_rate.timestamp),
            source=RateSource(orm_rate.source),
            note=orm_rate.note,
        )


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(
        self, request: TransactionRequest, *, cost_basis_currency: str, inserted_at: datetime
    ) -> Transaction:
        orm_tx = models.TransactionOrm(
            type=request.type.value,
            timestamp=request.timestamp,
            inserted_at=inserted_at,
            external_id=request.external_id,
            cost_basis_currency=cost_basis_currency,
            payload=request.model_dump_json(),
            conversion_rates="[]",
            **self._index_columns(request),
        )
        self._session.add(orm_tx)
        self._session.flush()
        return self._to_domain(orm_tx)

    def get(self, transaction_id: int) -> Transaction | None:
        orm_tx = self._session.get(models.TransactionOrm, transaction_id)
        if orm_tx is None:
            return None
        return self._to_domain(orm_tx)

    def find_by_external_id(self, external_id: str) -> Transaction | None:
        stmt = select(models.TransactionOrm).where(models.TransactionOrm.external_id == external_id)
        orm_tx = self._session.scalar(stmt)
        if orm_tx is None:
            return None
        return self._to_domain(orm_tx)

    def list(self, tx_filter: TransactionFilter | None = None) -> list[Transaction]:
        stmt = select(models.TransactionOrm).order_by(models.TransactionOrm.timestamp, models.TransactionOrm.id)
        if tx_filter is not None:
            if tx_filter.account is not None:
                stmt = stmt.where(
                    or_(
                        models.TransactionOrm.account == tx_filter.account,
                        models.TransactionOrm.counter_account == tx_filter.account,
                    )
                )
            if tx_filter.asset is not None:
                stmt = stmt.where(
                    or_(
                        models.TransactionOrm.asset == tx_filter.asset,
                        models.TransactionOrm.counter_asset == tx_filter.asset,
                        models.TransactionOrm.fee_asset == tx_filter.asset,
                    )
                )
            if tx_filter.since is not None:
                stmt = stmt.where(models.TransactionOrm.timestamp >= tx_filter.since)
            if tx_filter.until is not None:
                stmt = stmt.where(models.TransactionOrm.timestamp <= tx_filter.until)
            if tx_filter.type is not None:
                stmt = stmt.where(models.TransactionOrm.type == tx_filter.type.value)
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def latest_timestamp(self) -> datetime | None:
        """Latest timestamp among entries that affect holdings; voids are excluded."""
        stmt = (
            select(models.TransactionOrm.timestamp)
            .where(models.TransactionOrm.voids_id.is_(None))
            .order_by(models.TransactionOrm.timestamp.desc())
            .limit(1)
        )
        return _utc(self._session.scalar(stmt))

    def voided_ids(self) -> set[TransactionId]:
        stmt = select(models.TransactionOrm.voids_id).where(models.TransactionOrm.voids_id.is_not(None))
        return {TransactionId(value) for value in self._session.scalars(stmt)}

    def set_conversion_rates(self, transaction_id: int, rates: Iterable[ConversionRate]) -> None:
        orm_tx = self._session.get(models.TransactionOrm, transaction_id)
        if orm_tx is None:
            raise KeyError(transaction_id)
        orm_tx.conversion_rates = json.dumps([rate.model_dump(mode="json") for rate in rates])
        self._session.flush()

    @staticmethod
    def _index_columns(request: TransactionRequest) -> dict[str, object]:
        if isinstance(request, TransferRequest):
            return {
                "account": request.from_account,
                "counter_account": request.to_account,
                "asset": request.asset,
                "fee_asset": request.fee_asset,
            }
        if isinstance(request, SwapRequest):
            return {"account": request.account, "asset": request.from_asset, "counter_asset": request.to_asset}
        if isinstance(request, VoidRequest):
            return {"voids_id": request.transaction_id}
        return {"account": request.account, "asset": request.asset, "fee_asset": request.fee_asset}

    @staticmethod
    def _to_domain(orm_tx: models.TransactionOrm) -> Transaction:
        return Transaction(
            id=TransactionId(orm_tx.id),
            inserted_at=_utc(orm_tx.inserted_at),
            cost_basis_currency=AssetId(orm_tx.cost_basis_currency),
            conversion_rates=[ConversionRate(**entry) for entry in json.loads(orm_tx.conversion_rates)],
            request=parse_transaction_request(json.loads(orm_tx.payload)),
        )


class HoldingRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, account: str, asset: str) -> Holding | None:
        orm_holding = self._session.get(models.HoldingOrm, (account, asset))
        if orm_holding is None:
            return None
        return self._to_domain(orm_holding)

    def list(
        self,
        *,
        accounts: Iterable[str] | None = None,
        asset: str | None = None,
        include_zero: bool = True,
    ) -> list[Holding]:
        stmt = select(models.HoldingOrm).order_by(models.HoldingOrm.account, models.HoldingOrm.asset)
        if accounts is not None:
            stmt = stmt.where(models.HoldingOrm.account.in_(list(accounts)))
        if asset is not None:
            stmt = stmt.where(models.HoldingOrm.asset == asset)
        holdings = [self._to_domain(row) for row in self._session.scalars(stmt)]
        if not include_zero:
            # Quantities are stored as strings, so the zero check happens after decoding.
            holdings = [holding for holding in holdings if holding.quantity != 0]
        return holdings

    def save_all(self, holdings: Iterable[Holding]) -> None:
        for holding in holdings:
            orm_holding = self._session.get(models.HoldingOrm, (holding.account, holding.asset))
            if orm_holding is None:
                orm_holding = models.HoldingOrm(account=holding.account, asset=holding.asset)
                self._session.add(orm_holding)
            orm_holding.quantity = holding.quantity
            orm_holding.avg_cost = holding.avg_cost
            orm_holding.cost_basis_currency = holding.cost_basis_currency
            orm_holding.updated_at = holding.updated_at
        self._session.flush()

    def replace_all(self, holdings: Iterable[Holding]) -> None:
        holdings = list(holdings)
        keep = {holding.key for holding in holdings}
        for orm_holding in self._session.scalars(select(models.HoldingOrm)):
            if (orm_holding.account, orm_holding.asset) not in keep:
                self._session.delete(orm_holding)
        self.save_all(holdings)

    @staticmethod
    def _to_domain(orm_holding: models.HoldingOrm) -> Holding:
        return Holding(
            account=AccountId(orm_holding.account),
            asset=AssetId(orm_holding.asset),
            quantity=orm_holding.quantity,
            avg_cost=orm_holding.avg_cost,
            cost_basis_currency=AssetId(orm_holding.cost_basis_currency),
            updated_at=_utc(orm_holding.updated_at),
        )


class IntegrityIssueRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, mismatches: Iterable[HoldingMismatch], *, detected_at: datetime) -> int:
        details = [
            {"account": m.account, "asset": m.asset, "stored": m.stored, "rebuilt": m.rebuilt} for m in mismatches
        ]
        orm_issue = models.IntegrityIssueOrm(detected_at=detected_at, details=json.dumps(details))
        self._session.add(orm_issue)
        self._session.flush()
        return orm_issue.id

    def open_issue_ids(self) -> list[int]:
        stmt = (
            select(models.IntegrityIssueOrm.id)
            .where(models.IntegrityIssueOrm.resolved_at.is_(None))
            .order_by(models.IntegrityIssueOrm.id)
        )
        return list(self._session.scalars(stmt))

    def open_mismatches(self) -> list[HoldingMismatch]:
        stmt = (
            select(models.IntegrityIssueOrm)
            .where(models.IntegrityIssueOrm.resolved_at.is_(None))
            .order_by(models.IntegrityIssueOrm.id)
        )
        mismatches: list[HoldingMismatch] = []
        for orm_issue in self._session.scalars(stmt):
            for entry in json.loads(orm_issue.details):
                mismatches.append(
                    HoldingMismatch(
                        account=entry["account"],
                        asset=entry["asset"],
                        stored=tuple(entry["stored"]) if entry["stored"] is not None else None,
                        rebuilt=tuple(entry["rebuilt"]) if entry["rebuilt"] is not None else None,
                    )
                )
        return mismatches

    def resolve_all(self, *, resolved_at: datetime) -> int:
        stmt = select(models.IntegrityIssueOrm).where(models.IntegrityIssueOrm.resolved_at.is_(None))
        issues = list(self._session.scalars(stmt))
        for orm_issue in issues:
            orm_issue.resolved_at = resolved_at
        self._session.flush()
        return len(issues)
