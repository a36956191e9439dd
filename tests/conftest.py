from datetime import datetime, timezone
from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base
from domain.account import Account
from domain.base_types import AccountType
from services.ledger_service import LedgerService
from tests.constants import BANCO, BINANCE, KRAKEN, LEDGER, USD
from tests.helpers.time_utils import DEFAULT_TIME_GEN

engine: Engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
session_factory = sessionmaker(engine)

FIXED_NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_default_time_gen() -> None:
    DEFAULT_TIME_GEN.reset()


@pytest.fixture(scope="function")
def service(test_session: Session) -> LedgerService:
    """Ledger with default currencies and four accounts, reporting in USD."""
    ledger = LedgerService(test_session, cost_basis_currency=USD, clock=lambda: FIXED_NOW)
    ledger.currencies.seed_defaults()
    for account in (
        Account(name=KRAKEN, account_type=AccountType.EXCHANGE, category="trading"),
        Account(name=BINANCE, account_type=AccountType.EXCHANGE, category="trading"),
        Account(name=LEDGER, account_type=AccountType.HARDWARE_WALLET, category="cold"),
        Account(name=BANCO, account_type=AccountType.BANK, category="fiat"),
    ):
        ledger.accounts.add(account)
    return ledger
