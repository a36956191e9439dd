from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.orm import Session

from db.repositories import AccountRepository, CurrencyRepository, HoldingRepository, IntegrityIssueRepository
from domain.base_types import AccountId, AssetId, normalize_code
from domain.cost_basis import CostBasisCalculator
from domain.errors import HoldingMismatch, IntegrityError
from domain.holdings import Holding, HoldingFilter

from .journal import TransactionJournal

logger = logging.getLogger(__name__)


class HoldingLedger:
    """Materialized holdings plus the checks that keep them equal to a replay of the journal."""

    def __init__(self, session: Session, *, cost_basis_currency: str) -> None:
        self._session = session
        self._cost_basis_currency = normalize_code(cost_basis_currency)
        self._holdings = HoldingRepository(session)
        self._accounts = AccountRepository(session)
        self._currencies = CurrencyRepository(session)
        self._issues = IntegrityIssueRepository(session)
        self._journal = TransactionJournal(session)

    def get(self, account: str, asset: str) -> Holding:
        holding = self._holdings.get(account, normalize_code(asset))
        if holding is None:
            return Holding(
                account=AccountId(account),
                asset=normalize_code(asset),
                cost_basis_currency=self._cost_basis_currency,
            )
        return holding

    def list(self, holding_filter: HoldingFilter | None = None) -> list[Holding]:
        holding_filter = holding_filter or HoldingFilter()
        accounts: list[str] | None = None
        if holding_filter.category is not None:
            accounts = [a.name for a in self._accounts.list(category=holding_filter.category)]
        if holding_filter.account is not None:
            if accounts is None or holding_filter.account in accounts:
                accounts = [holding_filter.account]
            else:
                accounts = []
        return self._holdings.list(
            accounts=accounts,
            asset=holding_filter.asset,
            include_zero=holding_filter.include_zero,
        )

    def load(self, keys: Iterable[tuple[AccountId, AssetId]]) -> list[Holding]:
        loaded: list[Holding] = []
        for account, asset in set(keys):
            holding = self._holdings.get(account, asset)
            if holding is not None:
                loaded.append(holding)
        return loaded

    def save(self, holdings: Iterable[Holding]) -> None:
        self._holdings.save_all(holdings)

    def replace(self, holdings: Iterable[Holding]) -> None:
        self._holdings.replace_all(holdings)

    def calculator(self) -> CostBasisCalculator:
        return CostBasisCalculator({currency.code: currency for currency in self._currencies.list()})

    def rebuild_from_journal(self) -> list[Holding]:
        """Fold the whole journal from empty state using only the rates recorded on each entry."""
        result = self.calculator().replay(self._journal.list())
        return result.book.snapshot()

    def compare(self) -> list[HoldingMismatch]:
        stored = {holding.key: holding.fingerprint() for holding in self._holdings.list()}
        rebuilt = {holding.key: holding.fingerprint() for holding in self.rebuild_from_journal()}

        mismatches: list[HoldingMismatch] = []
        for key in sorted(stored.keys() | rebuilt.keys()):
            if stored.get(key) != rebuilt.get(key):
                mismatches.append(
                    HoldingMismatch(account=key[0], asset=key[1], stored=stored.get(key), rebuilt=rebuilt.get(key))
                )
        return mismatches

    def verify(self) -> None:
        """Raise ``IntegrityError`` when stored holdings diverge from the replay.

        The divergence is recorded and committed first; it stays open, halting writes, until ``repair``.
        """
        mismatches = self.compare()
        if not mismatches:
            logger.info("Holdings match journal replay")
            return

        try:
            issue_id = self._issues.add(mismatches, detected_at=datetime.now(timezone.utc))
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.error("Holdings diverge from journal issue=%s count=%s", issue_id, len(mismatches))
        raise IntegrityError(mismatches, issue_id=issue_id)

    def ensure_writable(self) -> None:
        issue_ids = self._issues.open_issue_ids()
        if issue_ids:
            raise IntegrityError(self._issues.open_mismatches(), issue_id=issue_ids[0])

    def repair(self) -> list[Holding]:
        try:
            rebuilt = self.rebuild_from_journal()
            self._holdings.replace_all(rebuilt)
            resolved = self._issues.resolve_all(resolved_at=datetime.now(timezone.utc))
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.info("Repaired holdings count=%s resolved_issues=%s", len(rebuilt), resolved)
        return rebuilt
