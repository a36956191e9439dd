from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from itertools import product
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from config import AppSettings
from domain.base_types import AccountId, AssetId, TransactionId, normalize_code
from domain.cost_basis import CostBasisCalculator, TransactionEffect
from domain.currency import Currency, ExchangeRate
from domain.errors import AssetNotFound, ValidationError
from domain.holdings import Holding, HoldingBook, HoldingFilter
from domain.portfolio import PortfolioReport, build_portfolio_report
from domain.pricing import RecordedRates, RecordingRateProvider
from domain.transaction import (
    BaseRequest,
    Transaction,
    TransactionFilter,
    TransactionRequest,
    TransactionType,
    VoidRequest,
    parse_transaction_request,
)

from .exchange_rate_store import ExchangeRateStore
from .holding_ledger import HoldingLedger
from .journal import TransactionJournal
from .registry import AccountRegistry, CurrencyRegistry

logger = logging.getLogger(__name__)


@dataclass
class RecordResult:
    transaction: Transaction
    holdings: list[Holding] = field(default_factory=list)
    realized_gain: Decimal | None = None
    inferred_rate: ExchangeRate | None = None
    duplicate: bool = False

    @property
    def transaction_id(self) -> TransactionId:
        return self.transaction.id


class LedgerService:
    """Single entry point for ledger mutations and queries.

    Every mutating call is one unit of work on the session: journal append, holding updates and
    any inferred exchange rate are committed together, and any failure rolls all of them back.
    """

    def __init__(
        self,
        session: Session,
        *,
        cost_basis_currency: str = "USD",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self.cost_basis_currency = normalize_code(cost_basis_currency)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.journal = TransactionJournal(session)
        self.holdings = HoldingLedger(session, cost_basis_currency=self.cost_basis_currency)
        self.rates = ExchangeRateStore(session)
        self.currencies = CurrencyRegistry(session)
        self.accounts = AccountRegistry(session)

    @classmethod
    def from_settings(cls, session: Session, settings: AppSettings) -> LedgerService:
        return cls(session, cost_basis_currency=settings.reporting_currency)

    def record(self, request: TransactionRequest | Mapping[str, Any]) -> RecordResult:
        if not isinstance(request, BaseRequest):
            request = parse_transaction_request(dict(request))

        try:
            self.holdings.ensure_writable()
            existing = self.journal.find_by_external_id(request.external_id) if request.external_id else None
            if existing is not None:
                logger.debug("Skipping duplicate external_id=%s id=%s", request.external_id, existing.id)
                return RecordResult(transaction=existing, duplicate=True)

            if isinstance(request, VoidRequest):
                result = self._apply_void(request)
            else:
                result = self._apply(request)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "Recorded transaction id=%s type=%s timestamp=%s realized_gain=%s",
            result.transaction.id,
            result.transaction.type,
            result.transaction.timestamp.isoformat(),
            result.realized_gain,
        )
        if result.inferred_rate is not None:
            logger.info("Inferred rate pair=%s rate=%s", result.inferred_rate.pair, result.inferred_rate.rate)
        return result

    def record_initial_balance(
        self,
        account: str,
        asset: str,
        quantity: Decimal,
        cost_basis: Decimal,
        *,
        timestamp: datetime | None = None,
        notes: str | None = None,
        external_id: str | None = None,
    ) -> RecordResult:
        """Opening balance: a fee-free buy with no price, carrying ``cost_basis`` per unit."""
        request = parse_transaction_request(
            {
                "type": TransactionType.BUY,
                "account": account,
                "asset": asset,
                "quantity": quantity,
                "cost_basis": cost_basis,
                "timestamp": timestamp or self._clock(),
                "notes": notes or "Initial balance",
                "external_id": external_id,
            }
        )
        return self.record(request)

    def void(
        self, transaction_id: int, *, notes: str | None = None, timestamp: datetime | None = None
    ) -> Transaction:
        request = parse_transaction_request(
            {
                "type": TransactionType.VOID,
                "transaction_id": transaction_id,
                "timestamp": timestamp or self._clock(),
                "notes": notes,
            }
        )
        return self.record(request).transaction

    def get_holdings(self, holding_filter: HoldingFilter | None = None) -> list[Holding]:
        return self.holdings.list(holding_filter)

    def get_transactions(self, tx_filter: TransactionFilter | None = None) -> list[Transaction]:
        return self.journal.list(tx_filter)

    def get_transaction(self, transaction_id: int) -> Transaction:
        return self.journal.get(transaction_id)

    def portfolio_view(self, prices: Mapping[str, Decimal], *, currency: str | None = None) -> PortfolioReport:
        return build_portfolio_report(
            self.holdings.list(HoldingFilter(include_zero=False)),
            self.accounts.list(),
            {normalize_code(asset): Decimal(price) for asset, price in prices.items()},
            currency=normalize_code(currency or self.cost_basis_currency),
        )

    def set_exchange_rate(
        self,
        base: str,
        quote: str,
        rate: Decimal,
        *,
        timestamp: datetime | None = None,
        note: str | None = None,
    ) -> ExchangeRate:
        try:
            self.holdings.ensure_writable()
            stored = self.rates.set_rate(base, quote, rate, note=note, timestamp=timestamp or self._clock())
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return stored

    def get_exchange_rate(self, base: str, quote: str, *, at: datetime | None = None) -> Decimal:
        if at is None:
            return self.rates.current_rate(base, quote)
        return self.rates.rate_at(base, quote, at)

    def exchange_rate_history(self, base: str, quote: str) -> list[ExchangeRate]:
        return self.rates.history(base, quote)

    def rebuild_from_journal(self) -> list[Holding]:
        return self.holdings.rebuild_from_journal()

    def verify_integrity(self) -> None:
        self.holdings.verify()

    def repair_holdings(self) -> list[Holding]:
        return self.holdings.repair()

    def _apply(self, request: TransactionRequest) -> RecordResult:
        currencies = self._validate_references(request)
        calculator = CostBasisCalculator(currencies)
        latest = self.journal.latest_timestamp()

        transaction = self.journal.append(
            request, cost_basis_currency=self.cost_basis_currency, inserted_at=self._clock()
        )
        recorder = RecordingRateProvider(self.rates)

        if latest is not None and request.timestamp < latest:
            logger.debug("Back-dated transaction id=%s before %s; re-folding journal", transaction.id, latest)
            replay = calculator.replay(
                self.journal.list(),
                rates_for=lambda entry: recorder if entry.id == transaction.id else RecordedRates(entry.conversion_rates),
            )
            effect = replay.effects[transaction.id]
            self.holdings.replace(replay.book.snapshot())
            touched = [replay.book.get(h.account, h.asset) for h in effect.holdings]
            holdings = [h for h in touched if h is not None]
        else:
            book = HoldingBook(self.holdings.load(self._touched_keys(request)))
            effect = calculator.apply(book, transaction, recorder)
            self.holdings.save(effect.holdings)
            holdings = effect.holdings

        if recorder.used:
            transaction = self.journal.attach_conversion_rates(transaction.id, recorder.used)
        inferred = self._store_inferred_rate(effect)
        return RecordResult(
            transaction=transaction,
            holdings=holdings,
            realized_gain=effect.realized_gain,
            inferred_rate=inferred,
        )

    def _apply_void(self, request: VoidRequest) -> RecordResult:
        target = self.journal.get(request.transaction_id)
        if target.type == TransactionType.VOID:
            raise ValidationError("transaction_id", f"transaction #{target.id} is a void and cannot be voided")
        if target.id in self.journal.voided_ids():
            raise ValidationError("transaction_id", f"transaction #{target.id} is already voided")

        transaction = self.journal.append(
            request, cost_basis_currency=self.cost_basis_currency, inserted_at=self._clock()
        )
        # Replaying without the target reverses its effect; a later entry it funded makes this fail.
        replay = self.holdings.calculator().replay(self.journal.list())
        self.holdings.replace(replay.book.snapshot())
        logger.info("Voided transaction id=%s by id=%s", target.id, transaction.id)
        return RecordResult(transaction=transaction)

    def _store_inferred_rate(self, effect: TransactionEffect) -> ExchangeRate | None:
        if effect.inferred_rate is None:
            return None
        return self.rates.add(effect.inferred_rate)

    def _validate_references(self, request: TransactionRequest) -> dict[str, Currency]:
        for field_name, name in request.account_refs():
            account = self.accounts.get(name)
            if account.archived:
                raise ValidationError(field_name, f"account {account.name} is archived")

        currencies = self.currencies.as_mapping()
        if self.cost_basis_currency not in currencies:
            raise AssetNotFound(self.cost_basis_currency)
        for field_name, code in request.asset_refs():
            currency = currencies.get(code)
            if currency is None:
                raise AssetNotFound(code)
            if not currency.enabled:
                raise ValidationError(field_name, f"currency {code} is disabled")

        for field_name, code, amount in request.sized_amounts():
            _check_scale(field_name, currencies[code], amount)
        return currencies

    @staticmethod
    def _touched_keys(request: TransactionRequest) -> list[tuple[AccountId, AssetId]]:
        accounts = [name for _, name in request.account_refs()]
        assets = [code for _, code in request.asset_refs()]
        return list(product(accounts, assets))


def _check_scale(field_name: str, currency: Currency, amount: Decimal) -> None:
    """Quantities are rejected, never rounded, when finer than the asset's precision."""
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and -exponent > currency.precision:
        raise ValidationError(
            field_name, f"{amount} has more than {currency.precision} decimal places for {currency.code}"
        )
