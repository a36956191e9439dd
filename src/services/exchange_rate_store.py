from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

import pydantic
from sqlalchemy.orm import Session

from db.repositories import CurrencyRepository, ExchangeRateRepository
from domain.base_types import RateSource, normalize_code, to_utc
from domain.currency import ExchangeRate
from domain.errors import AssetNotFound, MissingExchangeRate, from_pydantic
from domain.pricing import RateProvider

logger = logging.getLogger(__name__)


class ExchangeRateStore(RateProvider):
    """Append-only rate history per pair.

    Lookups prefer the direct pair and fall back to the inverse of the reverse pair.
    """

    def __init__(self, session: Session) -> None:
        self._rates = ExchangeRateRepository(session)
        self._currencies = CurrencyRepository(session)

    def set_rate(
        self,
        base: str,
        quote: str,
        rate: Decimal,
        *,
        source: RateSource = RateSource.MANUAL,
        note: str | None = None,
        timestamp: datetime | None = None,
    ) -> ExchangeRate:
        try:
            entry = ExchangeRate(
                base=base,
                quote=quote,
                rate=rate,
                timestamp=timestamp or datetime.now(timezone.utc),
                source=source,
                note=note,
            )
        except pydantic.ValidationError as err:
            raise from_pydantic(err, default_field="rate") from err
        return self.add(entry)

    def add(self, entry: ExchangeRate) -> ExchangeRate:
        for code in (entry.base, entry.quote):
            if self._currencies.get(code) is None:
                raise AssetNotFound(code)
        stored = self._rates.add(entry)
        logger.info(
            "Stored rate pair=%s rate=%s source=%s timestamp=%s",
            stored.pair,
            stored.rate,
            stored.source,
            stored.timestamp.isoformat(),
        )
        return stored

    def current_rate(self, base: str, quote: str) -> Decimal:
        return self._lookup(normalize_code(base), normalize_code(quote), at=None)

    def rate_at(self, base: str, quote: str, timestamp: datetime) -> Decimal:
        return self._lookup(normalize_code(base), normalize_code(quote), at=to_utc(timestamp))

    def rate(self, base_id: str, quote_id: str, timestamp: datetime) -> Decimal:
        """Rate as of ``timestamp``; the current rate when nothing was recorded that early."""
        try:
            return self.rate_at(base_id, quote_id, timestamp)
        except MissingExchangeRate:
            return self.current_rate(base_id, quote_id)

    def history(self, base: str, quote: str) -> list[ExchangeRate]:
        return self._rates.history(normalize_code(base), normalize_code(quote))

    def _lookup(self, base: str, quote: str, *, at: datetime | None) -> Decimal:
        if base == quote:
            return Decimal(1)

        direct = self._rates.latest(base, quote, at=at)
        if direct is not None:
            return direct.rate

        reverse = self._rates.latest(quote, base, at=at)
        if reverse is not None:
            return reverse.inverse().rate

        raise MissingExchangeRate(base, quote)
