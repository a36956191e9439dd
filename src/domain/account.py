from __future__ import annotations

from pydantic import BaseModel, field_validator

from domain.base_types import AccountId, AccountType

DEFAULT_CATEGORY = "uncategorized"


class Account(BaseModel):
    name: AccountId
    account_type: AccountType
    category: str = DEFAULT_CATEGORY
    sync_enabled: bool = False
    archived: bool = False

    @field_validator("name", "category", mode="before")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be non-empty")
        return value
