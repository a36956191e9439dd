from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.orm import Session

from db.repositories import TransactionRepository
from domain.base_types import TransactionId
from domain.errors import TransactionNotFound
from domain.transaction import ConversionRate, Transaction, TransactionFilter, TransactionRequest

logger = logging.getLogger(__name__)


class TransactionJournal:
    """Append-only record of transaction requests.

    Entries are never edited or removed; a void is a new entry pointing at the one it cancels.
    Nothing here commits: the caller owns the unit of work.
    """

    def __init__(self, session: Session) -> None:
        self._repository = TransactionRepository(session)

    def append(
        self,
        request: TransactionRequest,
        *,
        cost_basis_currency: str,
        inserted_at: datetime | None = None,
    ) -> Transaction:
        transaction = self._repository.add(
            request,
            cost_basis_currency=cost_basis_currency,
            inserted_at=inserted_at or datetime.now(timezone.utc),
        )
        logger.debug("Journaled transaction id=%s type=%s", transaction.id, transaction.type)
        return transaction

    def list(self, tx_filter: TransactionFilter | None = None) -> list[Transaction]:
        return self._repository.list(tx_filter)

    def get(self, transaction_id: int) -> Transaction:
        transaction = self._repository.get(transaction_id)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        return transaction

    def find_by_external_id(self, external_id: str) -> Transaction | None:
        return self._repository.find_by_external_id(external_id)

    def latest_timestamp(self) -> datetime | None:
        return self._repository.latest_timestamp()

    def voided_ids(self) -> set[TransactionId]:
        return self._repository.voided_ids()

    def attach_conversion_rates(self, transaction_id: int, rates: Iterable[ConversionRate]) -> Transaction:
        self._repository.set_conversion_rates(transaction_id, rates)
        return self.get(transaction_id)
