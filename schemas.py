import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CredentialsIn(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=200)


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    budget_limit_cents: int = 0
    color: Optional[str] = Field(default="#6366f1", max_length=9)


class TransactionIn(BaseModel):
    category_id: int
    amount_cents: int
    description: str = Field(default="", max_length=500)
    date: dt.date


class ImportRecord(BaseModel):
    """An externally sourced transaction with its category already resolved."""

    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(..., min_length=1, max_length=120)
    category_id: int
    amount_cents: int
    description: str = Field(default="", max_length=500)
    date: str | dt.date
    external_category_hint: Optional[str] = Field(default=None, max_length=200)


class LinkTokenIn(BaseModel):
    user_id: int


class ExchangeTokenIn(BaseModel):
    public_token: str = Field(..., min_length=1)
    user_id: int


class SyncIn(BaseModel):
    item_id: Optional[str] = None
