from __future__ import annotations

from datetime import datetime
from decimal import Decimal, localcontext

from pydantic import BaseModel, field_validator, model_validator

from domain.base_types import AssetId, AssetKind, RateId, RateSource, normalize_code, to_utc

MAX_PRECISION = 18


class Currency(BaseModel):
    code: AssetId
    name: str
    symbol: str = ""
    kind: AssetKind
    precision: int
    enabled: bool = True

    @field_validator("code", mode="before")
    @classmethod
    def _normalize_code(cls, value: str) -> AssetId:
        return normalize_code(value)

    @model_validator(mode="after")
    def _validate_fields(self) -> Currency:
        if not self.code:
            raise ValueError("Currency.code must be non-empty")
        if not 0 <= self.precision <= MAX_PRECISION:
            raise ValueError(f"Currency.precision must be within 0..{MAX_PRECISION}")
        return self

    @property
    def is_fiat(self) -> bool:
        return self.kind == AssetKind.FIAT

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)


class ExchangeRate(BaseModel):
    """1 unit of ``base`` equals ``rate`` units of ``quote``."""

    id: RateId | None = None
    base: AssetId
    quote: AssetId
    rate: Decimal
    timestamp: datetime
    source: RateSource = RateSource.MANUAL
    note: str | None = None

    @field_validator("base", "quote", mode="before")
    @classmethod
    def _normalize_code(cls, value: str) -> AssetId:
        return normalize_code(value)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_utc(value)

    @model_validator(mode="after")
    def _validate_fields(self) -> ExchangeRate:
        if self.rate <= 0:
            raise ValueError("ExchangeRate.rate must be > 0")
        if self.base == self.quote:
            raise ValueError("ExchangeRate base and quote must differ")
        return self

    @property
    def pair(self) -> str:
        return f"{self.base}/{self.quote}"

    def inverse(self) -> ExchangeRate:
        with localcontext() as ctx:
            ctx.prec = 40
            inverted = Decimal(1) / self.rate
        return ExchangeRate(
            id=self.id,
            base=self.quote,
            quote=self.base,
            rate=inverted,
            timestamp=self.timestamp,
            source=self.source,
            note=f"Inverse of {self.pair}",
        )


DEFAULT_CURRENCIES: tuple[Currency, ...] = (
    Currency(code="USD", name="US Dollar", symbol="$", kind=AssetKind.FIAT, precision=2),
    Currency(code="CRC", name="Costa Rican Colón", symbol="₡", kind=AssetKind.FIAT, precision=2),
    Currency(code="EUR", name="Euro", symbol="€", kind=AssetKind.FIAT, precision=2),
    Currency(code="BTC", name="Bitcoin", symbol="₿", kind=AssetKind.CRYPTO, precision=8),
    Currency(code="ETH", name="Ethereum", symbol="Ξ", kind=AssetKind.CRYPTO, precision=18),
    Currency(code="USDT", name="Tether USD", symbol="USDT", kind=AssetKind.STABLECOIN, precision=6),
    Currency(code="USDC", name="USD Coin", symbol="USDC", kind=AssetKind.STABLECOIN, precision=6),
    Currency(code="BNB", name="Binance Coin", symbol="BNB", kind=AssetKind.CRYPTO, precision=8),
    Currency(code="SOL", name="Solana", symbol="SOL", kind=AssetKind.CRYPTO, precision=9),
)
