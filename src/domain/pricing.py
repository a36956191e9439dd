from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Protocol

from domain.errors import MissingExchangeRate
from domain.transaction import ConversionRate


class RateProvider(Protocol):
    """Lookup interface for base→quote conversion rates."""

    def rate(self, base_id: str, quote_id: str, timestamp: datetime) -> Decimal: ...


class RecordingRateProvider(RateProvider):
    """Delegates lookups and remembers every rate handed out, so a replay can reuse them."""

    def __init__(self, provider: RateProvider) -> None:
        self._provider = provider
        self._used: dict[tuple[str, str], Decimal] = {}

    def rate(self, base_id: str, quote_id: str, timestamp: datetime) -> Decimal:
        key = (base_id, quote_id)
        if key not in self._used:
            self._used[key] = self._provider.rate(base_id, quote_id, timestamp)
        return self._used[key]

    @property
    def used(self) -> list[ConversionRate]:
        return [ConversionRate(base=base, quote=quote, rate=rate) for (base, quote), rate in self._used.items()]


class RecordedRates(RateProvider):
    """Serves only the rates captured when a transaction was first applied."""

    def __init__(self, rates: Iterable[ConversionRate]) -> None:
        self._rates = {(entry.base, entry.quote): entry.rate for entry in rates}

    def rate(self, base_id: str, quote_id: str, timestamp: datetime) -> Decimal:
        try:
            return self._rates[(base_id, quote_id)]
        except KeyError:
            raise MissingExchangeRate(base_id, quote_id) from None
