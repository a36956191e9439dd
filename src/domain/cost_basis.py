from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, localcontext
from typing import Callable, Iterable, Mapping

from domain.base_types import AccountId, AssetId, RateSource, TransactionId
from domain.currency import Currency, ExchangeRate
from domain.errors import AssetNotFound, InsufficientBalance, ValidationError
from domain.holdings import Holding, HoldingBook
from domain.pricing import RateProvider, RecordedRates
from domain.transaction import (
    BuyRequest,
    SellRequest,
    SwapRequest,
    TradeRequest,
    Transaction,
    TransferRequest,
    VoidRequest,
)

# Wide enough that intermediate products and quotients never lose digits the
# final half-even rounding to the currency's precision depends on.
ARITHMETIC_PRECISION = 40


@dataclass
class TransactionEffect:
    holdings: list[Holding] = field(default_factory=list)
    realized_gain: Decimal | None = None
    inferred_rate: ExchangeRate | None = None


@dataclass
class ReplayResult:
    book: HoldingBook
    effects: dict[TransactionId, TransactionEffect]


class CostBasisCalculator:
    """Average-cost state transitions.

    ``apply`` is pure with respect to everything except the ``HoldingBook`` it is given: all
    touched holdings are computed first and written to the book only when every leg succeeded.
    """

    def __init__(self, currencies: Mapping[str, Currency]) -> None:
        self._currencies = dict(currencies)

    def apply(self, book: HoldingBook, transaction: Transaction, rates: RateProvider) -> TransactionEffect:
        request = transaction.request
        with localcontext() as ctx:
            ctx.prec = ARITHMETIC_PRECISION
            ctx.rounding = ROUND_HALF_EVEN
            if isinstance(request, BuyRequest):
                effect = self._apply_buy(book, transaction, request, rates)
            elif isinstance(request, SellRequest):
                effect = self._apply_sell(book, transaction, request, rates)
            elif isinstance(request, TransferRequest):
                effect = self._apply_transfer(book, transaction, request, rates)
            elif isinstance(request, SwapRequest):
                effect = self._apply_swap(book, transaction, request, rates)
            elif isinstance(request, VoidRequest):
                # A void has no effect of its own; folding without the voided entry reverses it.
                effect = TransactionEffect()
            else:  # pragma: no cover
                raise ValidationError("type", f"unsupported transaction type {request.type}")

        book.put_all(effect.holdings)
        return effect

    def replay(
        self,
        transactions: Iterable[Transaction],
        *,
        rates_for: Callable[[Transaction], RateProvider] | None = None,
    ) -> ReplayResult:
        """Fold the journal from empty state in (timestamp, id) order, skipping voided entries."""
        ordered = sorted(transactions, key=lambda tx: tx.replay_key)
        voided = {tx.request.transaction_id for tx in ordered if isinstance(tx.request, VoidRequest)}

        book = HoldingBook()
        effects: dict[TransactionId, TransactionEffect] = {}
        for tx in ordered:
            if tx.id in voided or isinstance(tx.request, VoidRequest):
                continue
            provider = rates_for(tx) if rates_for is not None else RecordedRates(tx.conversion_rates)
            effects[tx.id] = self.apply(book, tx, provider)
        return ReplayResult(book=book, effects=effects)

    def _apply_buy(
        self, book: HoldingBook, tx: Transaction, request: BuyRequest, rates: RateProvider
    ) -> TransactionEffect:
        acquired = request.quantity
        if request.fee and request.fee_asset == request.asset:
            acquired -= request.fee
            if acquired <= 0:
                raise ValidationError("fee", "fee consumes the whole bought quantity")

        holding = self._open(book, request.account, request.asset, tx.cost_basis_currency)
        if request.price is not None:
            price_currency = request.price_currency or tx.cost_basis_currency
            unit_cost = self._convert(request.price, price_currency, holding.cost_basis_currency, tx, rates)
        elif request.cost_basis is not None:
            unit_cost = self._convert(request.cost_basis, tx.cost_basis_currency, holding.cost_basis_currency, tx, rates)
        else:
            raise ValidationError("price", "price or cost_basis is required")

        touched = [self._acquire(holding, acquired, unit_cost, tx.timestamp)]
        touched.extend(self._trade_fee(book, tx, request))
        return TransactionEffect(holdings=touched)

    def _apply_sell(
        self, book: HoldingBook, tx: Transaction, request: SellRequest, rates: RateProvider
    ) -> TransactionEffect:
        removed = request.quantity
        if request.fee and request.fee_asset == request.asset:
            removed += request.fee

        holding = self._dispose(book.get(request.account, request.asset), request.account, request.asset, removed, tx)
        if request.price is None:
            raise ValidationError("price", "price is required for a sell")
        price_currency = request.price_currency or tx.cost_basis_currency
        proceeds_per_unit = self._convert(request.price, price_currency, holding.cost_basis_currency, tx, rates)
        realized = self._round_cost(request.quantity * (proceeds_per_unit - holding.avg_cost), holding.cost_basis_currency)

        touched = [holding]
        touched.extend(self._trade_fee(book, tx, request))
        return TransactionEffect(holdings=touched, realized_gain=realized)

    def _apply_transfer(
        self, book: HoldingBook, tx: Transaction, request: TransferRequest, rates: RateProvider
    ) -> TransactionEffect:
        source = self._dispose(
            book.get(request.from_account, request.asset), request.from_account, request.asset, request.quantity, tx
        )
        touched = [source]

        credited = request.credited_quantity
        if credited > 0:
            target = self._open(book, request.to_account, request.asset, tx.cost_basis_currency)
            carried_cost = self._convert(source.avg_cost, source.cost_basis_currency, target.cost_basis_currency, tx, rates)
            touched.append(self._acquire(target, credited, carried_cost, tx.timestamp))

        if request.fee and request.fee_asset is not None and request.fee_asset != request.asset:
            fee_holding = book.get(request.from_account, request.fee_asset)
            touched.append(self._dispose(fee_holding, request.from_account, request.fee_asset, request.fee, tx))
        return TransactionEffect(holdings=touched)

    def _apply_swap(
        self, book: HoldingBook, tx: Transaction, request: SwapRequest, rates: RateProvider
    ) -> TransactionEffect:
        source = self._dispose(
            book.get(request.account, request.from_asset), request.account, request.from_asset, request.from_quantity, tx
        )
        target = self._open(book, request.account, request.to_asset, tx.cost_basis_currency)
        basis = target.cost_basis_currency

        if request.rate is None:
            carried = request.from_quantity * source.avg_cost
            total_cost = self._convert(carried, source.cost_basis_currency, basis, tx, rates)
        elif request.to_asset == basis:
            total_cost = request.from_quantity * request.rate
        elif request.from_asset == basis:
            total_cost = request.from_quantity
        else:
            total_cost = self._convert(request.from_quantity * request.rate, request.to_asset, basis, tx, rates)

        acquired = self._acquire(target, request.to_quantity, total_cost / request.to_quantity, tx.timestamp)

        given_up_value = self._convert(total_cost, basis, source.cost_basis_currency, tx, rates)
        realized = self._round_cost(
            given_up_value - request.from_quantity * source.avg_cost, source.cost_basis_currency
        )

        inferred: ExchangeRate | None = None
        if self._currency(request.from_asset).is_fiat and self._currency(request.to_asset).is_fiat:
            inferred = ExchangeRate(
                base=request.from_asset,
                quote=request.to_asset,
                rate=request.rate if request.rate is not None else request.to_quantity / request.from_quantity,
                timestamp=tx.timestamp,
                source=RateSource.INFERRED_FROM_SWAP,
                note=f"Inferred from transaction #{tx.id}",
            )

        return TransactionEffect(holdings=[source, acquired], realized_gain=realized, inferred_rate=inferred)

    def _trade_fee(self, book: HoldingBook, tx: Transaction, request: TradeRequest) -> list[Holding]:
        """A fee in a third asset reduces that holding; one in the price currency is only recorded."""
        fee_asset = request.fee_asset
        if not request.fee or fee_asset is None or fee_asset == request.asset:
            return []
        if fee_asset == (request.price_currency or tx.cost_basis_currency):
            return []
        return [self._dispose(book.get(request.account, fee_asset), request.account, fee_asset, request.fee, tx)]

    def _open(self, book: HoldingBook, account: AccountId, asset: AssetId, cost_basis_currency: AssetId) -> Holding:
        holding = book.get(account, asset)
        if holding is None:
            self._currency(cost_basis_currency)
            holding = Holding(account=account, asset=asset, cost_basis_currency=cost_basis_currency)
        return holding

    def _acquire(self, holding: Holding, quantity: Decimal, unit_cost: Decimal, timestamp: datetime) -> Holding:
        new_quantity = holding.quantity + quantity
        if new_quantity == 0:
            avg_cost = Decimal(0)
        else:
            avg_cost = (holding.quantity * holding.avg_cost + quantity * unit_cost) / new_quantity
        return holding.model_copy(
            update={
                "quantity": self._round_quantity(new_quantity, holding.asset),
                "avg_cost": self._round_cost(avg_cost, holding.cost_basis_currency),
                "updated_at": timestamp,
            }
        )

    def _dispose(
        self, holding: Holding | None, account: AccountId, asset: AssetId, quantity: Decimal, tx: Transaction
    ) -> Holding:
        available = holding.quantity if holding is not None else Decimal(0)
        if holding is None or available < quantity:
            raise InsufficientBalance(account=account, asset=asset, requested=quantity, available=available)
        return holding.model_copy(
            update={
                "quantity": self._round_quantity(holding.quantity - quantity, asset),
                "updated_at": tx.timestamp,
            }
        )

    @staticmethod
    def _convert(amount: Decimal, from_id: AssetId, to_id: AssetId, tx: Transaction, rates: RateProvider) -> Decimal:
        if from_id == to_id:
            return amount
        return amount * rates.rate(from_id, to_id, tx.timestamp)

    def _round_quantity(self, value: Decimal, asset: AssetId) -> Decimal:
        return value.quantize(self._currency(asset).quantum, rounding=ROUND_HALF_EVEN)

    def _round_cost(self, value: Decimal, currency: AssetId) -> Decimal:
        return value.quantize(self._currency(currency).quantum, rounding=ROUND_HALF_EVEN)

    def _currency(self, code: AssetId) -> Currency:
        try:
            return self._currencies[code]
        except KeyError:
            raise AssetNotFound(code) from None
