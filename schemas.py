import datetime as dt
from datetime import date
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import AccountKind


LenientValue = Optional[Union[int, str]]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: AccountKind = AccountKind.standard
    color: Optional[str] = Field(default=None, max_length=9)
    initial_balance_cents: int = 0
    opened_on: Optional[date] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    kind: Optional[AccountKind] = None
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TransactionIn(BaseModel):
    account_id: int
    date: date
    amount_cents: int
    category: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionUpdate(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    date: Optional[dt.date] = None
    amount_cents: Optional[int] = None
    category: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionEntryIn(BaseModel):
    """One user entry, booked as one or two ledger transactions."""

    type: Literal["income", "expense", "transfer"]
    date: date
    amount_cents: Optional[int] = None
    # free-form decimal input such as "5,23" or "1,234.56"; used when amount_cents is absent
    amount: Optional[str] = Field(default=None, max_length=32)
    account_id: Optional[int] = None
    reimbursable_account_id: Optional[int] = None
    source_account_id: Optional[int] = None
    target_account_id: Optional[int] = None
    category: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionSearchIn(BaseModel):
    """Raw search request; every field is normalized leniently by filters.py."""

    query: Optional[str] = None
    account_id: LenientValue = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    period: Optional[str] = None
    tx_type: Optional[str] = None
    sort_by: Optional[str] = None
    sort_dir: Optional[str] = None
    limit: LenientValue = None
    offset: LenientValue = None


class LedgerOpenIn(BaseModel):
    database_url: str = Field(..., min_length=1)
