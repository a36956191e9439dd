from __future__ import annotations

import hashlib
import logging
from csv import DictReader
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import pydantic
from pydantic import BaseModel, field_validator

from domain.errors import LedgerError, ValidationError, from_pydantic
from domain.transaction import TransactionRequest, TransactionType, parse_transaction_request

if TYPE_CHECKING:
    from services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

CSV_COLUMNS = (
    "date",
    "type",
    "account",
    "asset",
    "quantity",
    "price",
    "price_currency",
    "cost_basis",
    "fee",
    "fee_asset",
    "to_account",
    "to_asset",
    "to_quantity",
    "rate",
    "notes",
    "external_id",
)

IMPORTABLE_TYPES = {TransactionType.BUY, TransactionType.SELL, TransactionType.TRANSFER, TransactionType.SWAP}


class CsvRow(BaseModel):
    """One line of the import file; blank cells mean "not given"."""

    date: datetime
    type: str
    account: str = ""
    asset: str = ""
    quantity: str = ""
    price: str = ""
    price_currency: str = ""
    cost_basis: str = ""
    fee: str = ""
    fee_asset: str = ""
    to_account: str = ""
    to_asset: str = ""
    to_quantity: str = ""
    rate: str = ""
    notes: str = ""
    external_id: str = ""

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: str | datetime) -> datetime:
        if isinstance(value, datetime):
            parsed = value
        else:
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed

    @field_validator("*", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value

    def to_request(self, fingerprint: str) -> TransactionRequest:
        tx_type = self.type.lower()
        if tx_type not in IMPORTABLE_TYPES:
            raise ValidationError("type", f"unsupported import type {self.type!r}")

        data: dict[str, object] = {
            "type": tx_type,
            "timestamp": self.date,
            "notes": self.notes or None,
            "external_id": self.external_id or fingerprint,
        }
        if tx_type in (TransactionType.BUY, TransactionType.SELL):
            data.update(
                account=self.account,
                asset=self.asset,
                quantity=self.quantity,
                price=self.price or None,
                price_currency=self.price_currency or None,
                fee=self.fee or "0",
                fee_asset=self.fee_asset or None,
            )
            if tx_type == TransactionType.BUY:
                data["cost_basis"] = self.cost_basis or None
        elif tx_type == TransactionType.TRANSFER:
            data.update(
                from_account=self.account,
                to_account=self.to_account,
                asset=self.asset,
                quantity=self.quantity,
                fee=self.fee or "0",
                fee_asset=self.fee_asset or None,
            )
        else:
            data.update(
                account=self.account,
                from_asset=self.asset,
                from_quantity=self.quantity,
                to_asset=self.to_asset,
                to_quantity=self.to_quantity,
                rate=self.rate or None,
            )
        return parse_transaction_request(data)


@dataclass
class ImportRowError:
    line: int
    message: str


@dataclass
class ImportSummary:
    imported: int = 0
    duplicates: int = 0
    errors: list[ImportRowError] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.imported + self.duplicates + len(self.errors)


def row_fingerprint(row: dict[str, str]) -> str:
    """Stable id for a row without ``external_id`` so re-importing the same file is idempotent."""
    canonical = "\x1f".join((row.get(column) or "").strip() for column in CSV_COLUMNS if column != "external_id")
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CsvImporter:
    def __init__(self, source_path: str | Path) -> None:
        self._source_path = Path(source_path)

    def read_rows(self) -> list[tuple[int, dict[str, str]]]:
        with self._source_path.open(encoding="utf-8", newline="") as handle:
            reader = DictReader(handle)
            missing = {"date", "type"} - set(reader.fieldnames or ())
            if missing:
                raise ValidationError("header", f"missing columns {','.join(sorted(missing))}")
            # Line 1 is the header.
            return [(index, row) for index, row in enumerate(reader, start=2)]

    def parse_row(self, row: dict[str, str]) -> TransactionRequest:
        try:
            csv_row = CsvRow.model_validate({key: value for key, value in row.items() if key is not None})
        except pydantic.ValidationError as err:
            raise from_pydantic(err) from err
        return csv_row.to_request(row_fingerprint(row))

    def perform_import(self, service: LedgerService) -> ImportSummary:
        """Record every row in its own unit of work; a bad row is reported and does not stop the rest."""
        summary = ImportSummary()
        for line, row in self.read_rows():
            try:
                result = service.record(self.parse_row(row))
            except LedgerError as err:
                logger.warning("Skipping line=%s file=%s: %s", line, self._source_path, err)
                summary.errors.append(ImportRowError(line=line, message=str(err)))
                continue
            if result.duplicate:
                summary.duplicates += 1
            else:
                summary.imported += 1

        logger.info(
            "Imported file=%s imported=%s duplicates=%s errors=%s",
            self._source_path,
            summary.imported,
            summary.duplicates,
            len(summary.errors),
        )
        return summary


def import_csv(service: LedgerService, path: str | Path) -> ImportSummary:
    return CsvImporter(path).perform_import(service)
