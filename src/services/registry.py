from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy.orm import Session

from db.repositories import AccountRepository, CurrencyRepository, HoldingRepository
from domain.account import Account
from domain.base_types import normalize_code
from domain.currency import DEFAULT_CURRENCIES, Currency
from domain.errors import AccountInUse, AccountNotFound, AssetNotFound, ValidationError

logger = logging.getLogger(__name__)


class CurrencyRegistry:
    """Known currencies; only the ``enabled`` flag changes after creation."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._repository = CurrencyRepository(session)

    def list(self, *, include_disabled: bool = True) -> list[Currency]:
        return self._repository.list(include_disabled=include_disabled)

    def get(self, code: str) -> Currency:
        currency = self._repository.get(normalize_code(code))
        if currency is None:
            raise AssetNotFound(normalize_code(code))
        return currency

    def add(self, currency: Currency) -> Currency:
        if self._repository.get(currency.code) is not None:
            raise ValidationError("code", f"currency {currency.code} already exists")
        try:
            stored = self._repository.add(currency)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.info("Added currency code=%s kind=%s precision=%s", stored.code, stored.kind, stored.precision)
        return stored

    def set_enabled(self, code: str, enabled: bool) -> Currency:
        try:
            currency = self._repository.set_enabled(normalize_code(code), enabled)
            if currency is None:
                raise AssetNotFound(normalize_code(code))
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.info("Currency code=%s enabled=%s", currency.code, enabled)
        return currency

    def seed_defaults(self, currencies: Iterable[Currency] = DEFAULT_CURRENCIES) -> list[Currency]:
        """Insert the default set, skipping codes that already exist."""
        added: list[Currency] = []
        try:
            for currency in currencies:
                if self._repository.get(currency.code) is None:
                    added.append(self._repository.add(currency))
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        if added:
            logger.info("Seeded currencies codes=%s", ",".join(c.code for c in added))
        return added

    def as_mapping(self) -> dict[str, Currency]:
        return {currency.code: currency for currency in self._repository.list()}


class AccountRegistry:
    """Account CRUD.

    Deleting an account that still holds a non-zero quantity of anything raises ``AccountInUse``.
    Otherwise the account is archived rather than removed, so journal entries keep resolving.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._repository = AccountRepository(session)
        self._holdings = HoldingRepository(session)

    def list(self, *, category: str | None = None, include_archived: bool = True) -> list[Account]:
        return self._repository.list(category=category, include_archived=include_archived)

    def get(self, name: str) -> Account:
        account = self._repository.get(name.strip())
        if account is None:
            raise AccountNotFound(name.strip())
        return account

    def add(self, account: Account) -> Account:
        if self._repository.get(account.name) is not None:
            raise ValidationError("name", f"account {account.name} already exists")
        try:
            stored = self._repository.add(account)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.info("Added account name=%s type=%s category=%s", stored.name, stored.account_type, stored.category)
        return stored

    def set_sync_enabled(self, name: str, enabled: bool) -> Account:
        account = self.get(name)
        return self._update(account.model_copy(update={"sync_enabled": enabled}))

    def delete(self, name: str) -> Account:
        account = self.get(name)
        held = [h.asset for h in self._holdings.list(accounts=[account.name], include_zero=False)]
        if held:
            raise AccountInUse(account.name, held)
        archived = self._update(account.model_copy(update={"archived": True}))
        logger.info("Archived account name=%s", archived.name)
        return archived

    def _update(self, account: Account) -> Account:
        try:
            stored = self._repository.update(account)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return stored
