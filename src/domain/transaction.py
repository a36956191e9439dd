from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from domain.base_types import AccountId, AssetId, TransactionId, normalize_code, to_utc
from domain.errors import ValidationError, from_pydantic


class TransactionType(StrEnum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER = "transfer"
    SWAP = "swap"
    VOID = "void"


def _positive(value: Decimal) -> Decimal:
    if value <= 0:
        raise ValueError("must be > 0")
    return value


def _non_negative(value: Decimal | None) -> Decimal | None:
    if value is not None and value < 0:
        raise ValueError("must be >= 0")
    return value


def _account_name(value: object) -> object:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("must be non-empty")
    return value


class BaseRequest(BaseModel):
    """Fields shared by every request.

    Single-field rules are field validators, so pydantic reports the field. Rules spanning
    several fields raise ``ValidationError`` naming the field to correct.
    """

    timestamp: datetime
    notes: str | None = None
    external_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_utc(value)

    @field_validator("external_id", "notes")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    def account_refs(self) -> list[tuple[str, AccountId]]:
        return []

    def asset_refs(self) -> list[tuple[str, AssetId]]:
        return []

    def sized_amounts(self) -> list[tuple[str, AssetId, Decimal]]:
        """(field, asset, amount) triples that must fit the asset's precision."""
        return []


class TradeRequest(BaseRequest):
    account: AccountId
    asset: AssetId
    quantity: Decimal
    price: Decimal | None = None
    price_currency: AssetId | None = None
    fee: Decimal = Decimal(0)
    fee_asset: AssetId | None = None

    @field_validator("account", mode="before")
    @classmethod
    def _strip_account(cls, value: object) -> object:
        return _account_name(value)

    @field_validator("asset", "price_currency", "fee_asset", mode="before")
    @classmethod
    def _normalize_asset(cls, value: str | None) -> AssetId | None:
        return normalize_code(value) if value else None

    @field_validator("quantity")
    @classmethod
    def _positive_quantity(cls, value: Decimal) -> Decimal:
        return _positive(value)

    @field_validator("price", "fee")
    @classmethod
    def _non_negative_amount(cls, value: Decimal | None) -> Decimal | None:
        return _non_negative(value)

    @model_validator(mode="after")
    def _validate_fee(self) -> TradeRequest:
        if self.fee and self.fee_asset is None:
            raise ValidationError("fee_asset", "fee_asset is required when fee > 0")
        return self

    def account_refs(self) -> list[tuple[str, AccountId]]:
        return [("account", self.account)]

    def asset_refs(self) -> list[tuple[str, AssetId]]:
        refs = [("asset", self.asset)]
        if self.price_currency is not None:
            refs.append(("price_currency", self.price_currency))
        if self.fee_asset is not None:
            refs.append(("fee_asset", self.fee_asset))
        return refs

    def sized_amounts(self) -> list[tuple[str, AssetId, Decimal]]:
        amounts = [("quantity", self.asset, self.quantity)]
        if self.fee and self.fee_asset is not None:
            amounts.append(("fee", self.fee_asset, self.fee))
        return amounts


class BuyRequest(TradeRequest):
    """Acquisition at ``price`` per unit; a null price with ``cost_basis`` records an initial balance."""

    type: Literal[TransactionType.BUY] = TransactionType.BUY
    cost_basis: Decimal | None = None

    @field_validator("cost_basis")
    @classmethod
    def _non_negative_cost_basis(cls, value: Decimal | None) -> Decimal | None:
        return _non_negative(value)

    @model_validator(mode="after")
    def _validate_pricing(self) -> BuyRequest:
        if self.price is None and self.cost_basis is None:
            raise ValidationError("price", "price or cost_basis is required")
        if self.price is not None and self.cost_basis is not None:
            raise ValidationError("cost_basis", "cost_basis is only accepted when price is null")
        return self


class SellRequest(TradeRequest):
    type: Literal[TransactionType.SELL] = TransactionType.SELL

    @model_validator(mode="after")
    def _validate_pricing(self) -> SellRequest:
        if self.price is None:
            raise ValidationError("price", "price is required for a sell")
        return self


class TransferRequest(BaseRequest):
    """Move ``quantity`` between accounts; a fee in the same asset is taken out of the transferred amount."""

    type: Literal[TransactionType.TRANSFER] = TransactionType.TRANSFER
    from_account: AccountId
    to_account: AccountId
    asset: AssetId
    quantity: Decimal
    fee: Decimal = Decimal(0)
    fee_asset: AssetId | None = None

    @field_validator("from_account", "to_account", mode="before")
    @classmethod
    def _strip_account(cls, value: object) -> object:
        return _account_name(value)

    @field_validator("asset", "fee_asset", mode="before")
    @classmethod
    def _normalize_asset(cls, value: str | None) -> AssetId | None:
        return normalize_code(value) if value else None

    @field_validator("quantity")
    @classmethod
    def _positive_quantity(cls, value: Decimal) -> Decimal:
        return _positive(value)

    @field_validator("fee")
    @classmethod
    def _non_negative_fee(cls, value: Decimal) -> Decimal | None:
        return _non_negative(value)

    @model_validator(mode="after")
    def _validate_fields(self) -> TransferRequest:
        if self.from_account == self.to_account:
            raise ValidationError("to_account", "from_account and to_account must differ")
        if self.fee_asset is None:
            self.fee_asset = self.asset
        if self.fee_asset == self.asset and self.fee > self.quantity:
            raise ValidationError("fee", "fee cannot exceed the transferred quantity")
        return self

    def account_refs(self) -> list[tuple[str, AccountId]]:
        return [("from_account", self.from_account), ("to_account", self.to_account)]

    def asset_refs(self) -> list[tuple[str, AssetId]]:
        refs = [("asset", self.asset)]
        if self.fee_asset is not None and self.fee_asset != self.asset:
            refs.append(("fee_asset", self.fee_asset))
        return refs

    def sized_amounts(self) -> list[tuple[str, AssetId, Decimal]]:
        return [("quantity", self.asset, self.quantity), ("fee", self.fee_asset or self.asset, self.fee)]

    @property
    def credited_quantity(self) -> Decimal:
        if self.fee_asset == self.asset:
            return self.quantity - self.fee
        return self.quantity


class SwapRequest(BaseRequest):
    """Exchange ``from_quantity`` of one asset for ``to_quantity`` of another inside one account.

    ``rate`` is optional and quoted as 1 ``from_asset`` = ``rate`` ``to_asset``.
    """

    type: Literal[TransactionType.SWAP] = TransactionType.SWAP
    account: AccountId
    from_asset: AssetId
    from_quantity: Decimal
    to_asset: AssetId
    to_quantity: Decimal
    rate: Decimal | None = None

    @field_validator("account", mode="before")
    @classmethod
    def _strip_account(cls, value: object) -> object:
        return _account_name(value)

    @field_validator("from_asset", "to_asset", mode="before")
    @classmethod
    def _normalize_asset(cls, value: str) -> AssetId:
        return normalize_code(value)

    @field_validator("from_quantity", "to_quantity")
    @classmethod
    def _positive_quantity(cls, value: Decimal) -> Decimal:
        return _positive(value)

    @field_validator("rate")
    @classmethod
    def _positive_rate(cls, value: Decimal | None) -> Decimal | None:
        return _positive(value) if value is not None else None

    @model_validator(mode="after")
    def _validate_fields(self) -> SwapRequest:
        if self.from_asset == self.to_asset:
            raise ValidationError("to_asset", "from_asset and to_asset must differ")
        return self

    def account_refs(self) -> list[tuple[str, AccountId]]:
        return [("account", self.account)]

    def asset_refs(self) -> list[tuple[str, AssetId]]:
        return [("from_asset", self.from_asset), ("to_asset", self.to_asset)]

    def sized_amounts(self) -> list[tuple[str, AssetId, Decimal]]:
        return [("from_quantity", self.from_asset, self.from_quantity), ("to_quantity", self.to_asset, self.to_quantity)]


class VoidRequest(BaseRequest):
    type: Literal[TransactionType.VOID] = TransactionType.VOID
    transaction_id: TransactionId

    @field_validator("transaction_id")
    @classmethod
    def _positive_id(cls, value: TransactionId) -> TransactionId:
        if value <= 0:
            raise ValueError("must be > 0")
        return value


TransactionRequest = Annotated[
    Union[BuyRequest, SellRequest, TransferRequest, SwapRequest, VoidRequest],
    Field(discriminator="type"),
]

_REQUEST_ADAPTER: TypeAdapter[TransactionRequest] = TypeAdapter(TransactionRequest)


class ConversionRate(BaseModel):
    base: AssetId
    quote: AssetId
    rate: Decimal


class Transaction(BaseModel):
    """A journaled entry; never edited once committed."""

    id: TransactionId
    inserted_at: datetime
    cost_basis_currency: AssetId
    conversion_rates: list[ConversionRate] = Field(default_factory=list)
    request: TransactionRequest

    @field_validator("inserted_at")
    @classmethod
    def _normalize_inserted_at(cls, value: datetime) -> datetime:
        return to_utc(value)

    @property
    def type(self) -> TransactionType:
        return self.request.type

    @property
    def timestamp(self) -> datetime:
        return self.request.timestamp

    @property
    def external_id(self) -> str | None:
        return self.request.external_id

    @property
    def replay_key(self) -> tuple[datetime, int]:
        return self.request.timestamp, self.id


def parse_transaction_request(data: dict[str, Any]) -> TransactionRequest:
    """Build a request from raw values, reporting the first offending field as a ``ValidationError``."""
    raw_type = data.get("type")
    try:
        tx_type = TransactionType(str(raw_type).strip().lower())
    except ValueError as err:
        raise ValidationError("type", f"unknown transaction type {raw_type!r}") from err

    try:
        return _REQUEST_ADAPTER.validate_python({**data, "type": tx_type})
    except pydantic.ValidationError as err:
        raise from_pydantic(err, skip=1) from err


class TransactionFilter(BaseModel):
    """Journal query; ``since``/``until`` are inclusive and every set field must match."""

    account: AccountId | None = None
    asset: AssetId | None = None
    since: datetime | None = None
    until: datetime | None = None
    type: TransactionType | None = None

    @field_validator("asset", mode="before")
    @classmethod
    def _normalize_asset(cls, value: str | None) -> AssetId | None:
        return normalize_code(value) if value else None

    @field_validator("since", "until")
    @classmethod
    def _normalize_bounds(cls, value: datetime | None) -> datetime | None:
        return to_utc(value) if value is not None else None
