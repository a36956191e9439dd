from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import pydantic


class LedgerError(Exception):
    """Base class for every error the ledger core surfaces to its caller."""


class ValidationError(LedgerError):
    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid field={field} reason={reason}")


class InsufficientBalance(LedgerError):
    def __init__(self, *, account: str, asset: str, requested: Decimal, available: Decimal) -> None:
        self.account = account
        self.asset = asset
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance for asset={asset} account={account} requested={requested} available={available}"
        )


class MissingExchangeRate(LedgerError):
    def __init__(self, base: str, quote: str) -> None:
        self.base = base
        self.quote = quote
        super().__init__(f"No exchange rate for pair={base}/{quote}")


class NotFound(LedgerError):
    kind = "record"

    def __init__(self, key: object) -> None:
        self.key = key
        super().__init__(f"{self.kind} not found: {key}")


class AccountNotFound(NotFound):
    kind = "account"


class AssetNotFound(NotFound):
    kind = "asset"


class TransactionNotFound(NotFound):
    kind = "transaction"


class AccountInUse(LedgerError):
    def __init__(self, account: str, assets: list[str]) -> None:
        self.account = account
        self.assets = assets
        super().__init__(f"Account {account} still holds assets={','.join(assets)}")


@dataclass(frozen=True)
class HoldingMismatch:
    account: str
    asset: str
    stored: tuple[str, ...] | None
    rebuilt: tuple[str, ...] | None


class IntegrityError(LedgerError):
    """Stored holdings disagree with the journal replay; writes stay halted until repaired."""

    def __init__(self, mismatches: list[HoldingMismatch], *, issue_id: int | None = None) -> None:
        self.mismatches = mismatches
        self.issue_id = issue_id
        keys = "; ".join(f"{m.account}/{m.asset}" for m in mismatches[:5])
        super().__init__(f"Holdings diverge from journal issue={issue_id} count={len(mismatches)} keys={keys}")


def from_pydantic(err: pydantic.ValidationError, *, default_field: str = "request", skip: int = 0) -> ValidationError:
    """Name the first offending field of a pydantic failure; ``skip`` drops union-tag prefixes from its location."""
    first = err.errors()[0]
    location = ".".join(str(part) for part in first["loc"][skip:]) or default_field
    return ValidationError(location, first["msg"])
