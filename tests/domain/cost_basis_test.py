from decimal import Decimal

import pytest

from domain.base_types import RateSource
from domain.cost_basis import CostBasisCalculator, TransactionEffect
from domain.currency import DEFAULT_CURRENCIES
from domain.errors import AssetNotFound, InsufficientBalance, MissingExchangeRate, ValidationError
from domain.holdings import HoldingBook
from domain.pricing import RecordedRates
from domain.transaction import TransactionRequest
from tests.constants import BANCO, BINANCE, BNB, BTC, CRC, ETH, EUR, KRAKEN, LEDGER, USD, USDT
from tests.helpers.requests import buy, journaled, sell, swap, transfer, void
from tests.helpers.time_utils import day


@pytest.fixture()
def calculator() -> CostBasisCalculator:
    return CostBasisCalculator({currency.code: currency for currency in DEFAULT_CURRENCIES})


def _apply(
    calculator: CostBasisCalculator,
    book: HoldingBook,
    request: TransactionRequest,
    rates: dict[tuple[str, str], str] | None = None,
) -> TransactionEffect:
    tx = journaled(request, rates=rates)
    return calculator.apply(book, tx, RecordedRates(tx.conversion_rates))


def test_weighted_average_buy(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()

    _apply(calculator, book, buy(KRAKEN, BTC, "0.5", "40000"))
    first = book.get(KRAKEN, BTC)
    assert first is not None
    assert (first.quantity, first.avg_cost) == (Decimal("0.5"), Decimal("40000"))

    _apply(calculator, book, buy(KRAKEN, BTC, "0.5", "60000"))
    second = book.get(KRAKEN, BTC)
    assert second is not None
    assert second.quantity == Decimal("1.0")
    assert second.avg_cost == Decimal("50000")
    assert second.cost_basis_currency == USD


def test_sell_preserves_average_cost(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "10000"))

    effect = _apply(calculator, book, sell(KRAKEN, BTC, "0.4", "15000"))

    holding = book.get(KRAKEN, BTC)
    assert holding is not None
    assert holding.quantity == Decimal("0.6")
    assert holding.avg_cost == Decimal("10000")
    assert effect.realized_gain == Decimal("2000")


def test_oversell_is_rejected_without_changing_state(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "0.6", "10000"))

    with pytest.raises(InsufficientBalance) as exc_info:
        _apply(calculator, book, sell(KRAKEN, BTC, "1.0", "15000"))

    assert exc_info.value.account == KRAKEN
    assert exc_info.value.asset == BTC
    assert exc_info.value.requested == Decimal("1.0")
    assert exc_info.value.available == Decimal("0.6")
    assert book.balance(KRAKEN, BTC) == Decimal("0.6")


def test_sell_from_empty_account_reports_zero_available(calculator: CostBasisCalculator) -> None:
    with pytest.raises(InsufficientBalance) as exc_info:
        _apply(calculator, HoldingBook(), sell(KRAKEN, ETH, "1", "2000"))

    assert exc_info.value.available == Decimal(0)


def test_sell_fee_in_sold_asset_is_removed_with_the_quantity(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "100"))

    effect = _apply(calculator, book, sell(KRAKEN, BTC, "0.5", "200", fee=Decimal("0.01"), fee_asset=BTC))

    assert book.balance(KRAKEN, BTC) == Decimal("0.49")
    assert effect.realized_gain == Decimal("50")


def test_fee_in_price_currency_is_only_recorded(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "100"))

    effect = _apply(calculator, book, sell(KRAKEN, BTC, "0.5", "200", fee=Decimal("5"), fee_asset=USD))

    assert [h.key for h in effect.holdings] == [(KRAKEN, BTC)]
    assert book.get(KRAKEN, USD) is None


def test_buy_fee_in_bought_asset_reduces_acquired_quantity(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()

    _apply(calculator, book, buy(KRAKEN, BTC, "1", "100", fee=Decimal("0.01"), fee_asset=BTC))

    holding = book.get(KRAKEN, BTC)
    assert holding is not None
    assert holding.quantity == Decimal("0.99")
    assert holding.avg_cost == Decimal("100")


def test_buy_fee_in_third_asset_touches_two_holdings(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(BINANCE, BNB, "1", "300"))

    effect = _apply(calculator, book, buy(BINANCE, BTC, "0.1", "40000", fee=Decimal("0.1"), fee_asset=BNB))

    assert {h.key for h in effect.holdings} == {(BINANCE, BTC), (BINANCE, BNB)}
    bnb = book.get(BINANCE, BNB)
    assert bnb is not None
    assert bnb.quantity == Decimal("0.9")
    assert bnb.avg_cost == Decimal("300")


def test_buy_fee_in_missing_asset_rejects_the_whole_buy(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()

    with pytest.raises(InsufficientBalance):
        _apply(calculator, book, buy(KRAKEN, BTC, "0.1", "40000", fee=Decimal("0.1"), fee_asset=BNB))

    assert len(book) == 0


def test_fee_consuming_whole_buy_is_invalid(calculator: CostBasisCalculator) -> None:
    with pytest.raises(ValidationError) as exc_info:
        _apply(calculator, HoldingBook(), buy(KRAKEN, BTC, "0.01", "100", fee=Decimal("0.01"), fee_asset=BTC))

    assert exc_info.value.field == "fee"


def test_buy_priced_in_other_currency_is_converted(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()

    _apply(calculator, book, buy(KRAKEN, BTC, "2", "1000", price_currency=EUR), rates={(EUR, USD): "1.1"})

    holding = book.get(KRAKEN, BTC)
    assert holding is not None
    assert holding.avg_cost == Decimal("1100")


def test_missing_conversion_rate_is_reported(calculator: CostBasisCalculator) -> None:
    with pytest.raises(MissingExchangeRate) as exc_info:
        _apply(calculator, HoldingBook(), buy(KRAKEN, BTC, "2", "1000", price_currency=EUR))

    assert (exc_info.value.base, exc_info.value.quote) == (EUR, USD)


def test_initial_balance_uses_supplied_cost_basis(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()

    _apply(calculator, book, buy(LEDGER, BTC, "0.25", None, cost_basis=Decimal("25000")))

    holding = book.get(LEDGER, BTC)
    assert holding is not None
    assert (holding.quantity, holding.avg_cost) == (Decimal("0.25"), Decimal("25000"))


def test_unknown_asset_is_not_found(calculator: CostBasisCalculator) -> None:
    with pytest.raises(AssetNotFound):
        _apply(calculator, HoldingBook(), buy(KRAKEN, "DOGE", "10", "0.1"))


def test_transfer_carries_cost_basis(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, ETH, "2", "2000"))

    _apply(calculator, book, transfer(KRAKEN, LEDGER, ETH, "1"))

    source = book.get(KRAKEN, ETH)
    target = book.get(LEDGER, ETH)
    assert source is not None and target is not None
    assert (source.quantity, source.avg_cost) == (Decimal("1"), Decimal("2000"))
    assert (target.quantity, target.avg_cost) == (Decimal("1"), Decimal("2000"))


def test_transfer_fee_in_same_asset_is_taken_from_credited_amount(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "30000"))

    _apply(calculator, book, transfer(KRAKEN, LEDGER, BTC, "0.5", fee="0.0005"))

    assert book.balance(KRAKEN, BTC) == Decimal("0.5")
    target = book.get(LEDGER, BTC)
    assert target is not None
    assert target.quantity == Decimal("0.4995")
    assert target.avg_cost == Decimal("30000")


def test_transfer_fee_in_other_asset_is_charged_to_source(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "30000"))
    _apply(calculator, book, buy(KRAKEN, ETH, "1", "2000"))

    _apply(calculator, book, transfer(KRAKEN, LEDGER, BTC, "0.5", fee="0.01", fee_asset=ETH))

    assert book.balance(LEDGER, BTC) == Decimal("0.5")
    eth = book.get(KRAKEN, ETH)
    assert eth is not None
    assert eth.quantity == Decimal("0.99")
    assert eth.avg_cost == Decimal("2000")


def test_transfer_with_unfunded_fee_changes_nothing(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "30000"))

    with pytest.raises(InsufficientBalance) as exc_info:
        _apply(calculator, book, transfer(KRAKEN, LEDGER, BTC, "0.5", fee="0.01", fee_asset=ETH))

    assert exc_info.value.asset == ETH
    assert book.balance(KRAKEN, BTC) == Decimal("1")
    assert book.get(LEDGER, BTC) is None


def test_transfer_consumed_by_fee_leaves_target_untouched(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "30000"))

    effect = _apply(calculator, book, transfer(KRAKEN, LEDGER, BTC, "0.001", fee="0.001"))

    assert [h.key for h in effect.holdings] == [(KRAKEN, BTC)]
    assert book.balance(KRAKEN, BTC) == Decimal("0.999")
    assert book.get(LEDGER, BTC) is None


def test_swap_without_rate_carries_cost(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, ETH, "1", "2000"))

    effect = _apply(calculator, book, swap(KRAKEN, ETH, "1", USDT, "2000"))

    usdt = book.get(KRAKEN, USDT)
    assert usdt is not None
    assert usdt.quantity == Decimal("2000")
    assert usdt.avg_cost == Decimal("1")
    assert book.balance(KRAKEN, ETH) == Decimal(0)
    assert effect.realized_gain == Decimal(0)
    assert effect.inferred_rate is None


def test_swap_with_rate_into_cost_basis_currency(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, ETH, "1", "2000"))

    effect = _apply(calculator, book, swap(KRAKEN, ETH, "1", USD, "2500", rate="2500"))

    usd = book.get(KRAKEN, USD)
    assert usd is not None
    assert usd.avg_cost == Decimal("1")
    assert effect.realized_gain == Decimal("500")


def test_swap_with_rate_out_of_cost_basis_currency(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, USD, "1000", None, cost_basis=Decimal("1")))

    effect = _apply(calculator, book, swap(KRAKEN, USD, "1000", BTC, "0.02", rate="0.00002"))

    btc = book.get(KRAKEN, BTC)
    assert btc is not None
    assert btc.avg_cost == Decimal("50000")
    assert effect.realized_gain == Decimal(0)


def test_swap_with_rate_between_non_basis_assets_converts_value(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, ETH, "1", "1500"))

    effect = _apply(
        calculator, book, swap(KRAKEN, ETH, "1", BTC, "0.05", rate="0.05"), rates={(BTC, USD): "40000"}
    )

    btc = book.get(KRAKEN, BTC)
    assert btc is not None
    assert btc.avg_cost == Decimal("40000")
    assert effect.realized_gain == Decimal("500")


def test_fiat_swap_infers_exchange_rate(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(BANCO, CRC, "100000", None, cost_basis=Decimal("0.0018")))

    tx = journaled(swap(BANCO, CRC, "100000", USD, "181.82"))
    effect = calculator.apply(book, tx, RecordedRates([]))

    assert effect.inferred_rate is not None
    assert (effect.inferred_rate.base, effect.inferred_rate.quote) == (CRC, USD)
    assert effect.inferred_rate.rate == Decimal("0.0018182")
    assert effect.inferred_rate.source == RateSource.INFERRED_FROM_SWAP
    assert effect.inferred_rate.timestamp == tx.timestamp
    assert effect.inferred_rate.note == f"Inferred from transaction #{tx.id}"


def test_fiat_swap_with_explicit_rate_infers_that_rate(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(BANCO, EUR, "100", None, cost_basis=Decimal("1.10")))

    effect = _apply(calculator, book, swap(BANCO, EUR, "100", USD, "110.50", rate="1.1"))

    assert effect.inferred_rate is not None
    assert (effect.inferred_rate.base, effect.inferred_rate.quote) == (EUR, USD)
    assert effect.inferred_rate.rate == Decimal("1.1")
    assert effect.realized_gain == Decimal(0)


def test_realized_gain_rounds_half_even(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "100"))

    down = _apply(calculator, book, sell(KRAKEN, BTC, "0.5", "100.01"))
    up = _apply(calculator, book, sell(KRAKEN, BTC, "0.1", "100.15"))

    assert str(down.realized_gain) == "0.00"
    assert str(up.realized_gain) == "0.02"


def test_average_cost_rounds_half_even_to_currency_precision(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(KRAKEN, BTC, "1", "100"))
    _apply(calculator, book, buy(KRAKEN, BTC, "2", "101"))

    holding = book.get(KRAKEN, BTC)
    assert holding is not None
    assert str(holding.avg_cost) == "100.67"


def test_sub_cent_unit_cost_rounds_to_zero(calculator: CostBasisCalculator) -> None:
    book = HoldingBook()
    _apply(calculator, book, buy(BANCO, CRC, "100000", None, cost_basis=Decimal("0.0018")))

    holding = book.get(BANCO, CRC)
    assert holding is not None
    assert holding.avg_cost == Decimal("0.00")


def test_replay_orders_by_timestamp_and_skips_voided(calculator: CostBasisCalculator) -> None:
    first = journaled(buy(KRAKEN, BTC, "1", "100", timestamp=day(1)), tx_id=1)
    voided = journaled(buy(KRAKEN, BTC, "1", "200", timestamp=day(3)), tx_id=2)
    back_dated = journaled(sell(KRAKEN, BTC, "0.5", "300", timestamp=day(2)), tx_id=3)
    cancel = journaled(void(2, timestamp=day(4)), tx_id=4)

    result = calculator.replay([cancel, voided, back_dated, first])

    holding = result.book.get(KRAKEN, BTC)
    assert holding is not None
    assert (holding.quantity, holding.avg_cost) == (Decimal("0.5"), Decimal("100"))
    assert holding.updated_at == day(2)
    assert set(result.effects) == {1, 3}
    assert result.effects[3].realized_gain == Decimal("100")


def test_replay_uses_only_recorded_rates(calculator: CostBasisCalculator) -> None:
    recorded = journaled(buy(KRAKEN, BTC, "1", "1000", price_currency=EUR), tx_id=1, rates={(EUR, USD): "1.2"})
    unrecorded = journaled(buy(KRAKEN, ETH, "1", "1000", price_currency=EUR), tx_id=2)

    result = calculator.replay([recorded])
    btc = result.book.get(KRAKEN, BTC)
    assert btc is not None
    assert btc.avg_cost == Decimal("1200")

    with pytest.raises(MissingExchangeRate):
        calculator.replay([recorded, unrecorded])

