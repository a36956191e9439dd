from datetime import datetime, timezone
from decimal import Decimal

import pydantic
import pytest

from domain.holdings import Holding, HoldingBook
from tests.constants import BTC, ETH, KRAKEN, LEDGER, USD


def _holding(account: str, asset: str, quantity: str, avg_cost: str = "0") -> Holding:
    return Holding(
        account=account,
        asset=asset,
        quantity=Decimal(quantity),
        avg_cost=Decimal(avg_cost),
        cost_basis_currency=USD,
    )


def test_negative_quantity_is_rejected() -> None:
    with pytest.raises(pydantic.ValidationError):
        _holding(KRAKEN, BTC, "-0.1")


def test_book_hands_out_copies() -> None:
    book = HoldingBook([_holding(KRAKEN, BTC, "1", "100")])

    copy = book.get(KRAKEN, BTC)
    assert copy is not None
    copy.quantity = Decimal("5")

    assert book.balance(KRAKEN, BTC) == Decimal("1")
    assert book.get(LEDGER, BTC) is None
    assert book.balance(LEDGER, BTC) == Decimal(0)


def test_snapshot_is_sorted_by_account_then_asset() -> None:
    book = HoldingBook()
    book.put_all([_holding(LEDGER, BTC, "1"), _holding(KRAKEN, ETH, "2"), _holding(KRAKEN, BTC, "3")])

    assert [h.key for h in book.snapshot()] == [(KRAKEN, BTC), (KRAKEN, ETH), (LEDGER, BTC)]
    assert len(book) == 3


def test_fingerprint_and_cost_basis_total() -> None:
    holding = _holding(KRAKEN, BTC, "0.5", "40000")
    holding.updated_at = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert holding.cost_basis_total == Decimal("20000")
    assert holding.fingerprint() == ("0.5", "40000", "USD", "2024-01-01T00:00:00+00:00")
