from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import NewType

AssetId = NewType("AssetId", str)
AccountId = NewType("AccountId", str)
TransactionId = NewType("TransactionId", int)
RateId = NewType("RateId", int)


class AssetKind(StrEnum):
    FIAT = "fiat"
    CRYPTO = "crypto"
    STABLECOIN = "stablecoin"


class AccountType(StrEnum):
    EXCHANGE = "exchange"
    HARDWARE_WALLET = "hardware_wallet"
    SOFTWARE_WALLET = "software_wallet"
    BANK = "bank"
    CUSTODIAL = "custodial"


class RateSource(StrEnum):
    MANUAL = "manual"
    INFERRED_FROM_SWAP = "inferred-from-swap"


def normalize_code(value: str) -> AssetId:
    return AssetId(value.strip().upper())


def to_utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
