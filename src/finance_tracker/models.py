from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

from finance_tracker.domain.currencies import DEFAULT_CURRENCY, is_supported
from finance_tracker.domain.tags import normalize_tags
from finance_tracker.domain.timefmt import parse_date


class TransactionKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Decimal in memory, JSON number on the wire.
Amount = Annotated[
    Decimal,
    Field(gt=0),
    PlainSerializer(float, return_type=float, when_used="json"),
]


def _check_currency(value: str) -> str:
    if not is_supported(value):
        raise ValueError(f"unsupported currency {value}")
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Transaction(WireModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, frozen=True)

    id: str = Field(min_length=1)
    description: str = Field(min_length=1, max_length=200)
    amount: Amount
    kind: TransactionKind = Field(alias="type")
    category: str = Field(min_length=1, max_length=50)
    occurred_at: date = Field(alias="date")
    currency: str = DEFAULT_CURRENCY
    tags: list[str] = Field(default_factory=list)
    notes: str = Field(default="", max_length=500)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> date:
        return parse_date(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _default_currency(cls, value: Any) -> Any:
        return value or DEFAULT_CURRENCY

    @field_validator("currency")
    @classmethod
    def _supported_currency(cls, value: str) -> str:
        return _check_currency(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str]:
        return normalize_tags(value)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes_default(cls, value: Any) -> Any:
        return value or ""


class RecurrenceRule(WireModel):
    """A repeating obligation. ``next_due_date`` is the cursor."""

    rule_id: str = Field(alias="recurringId", min_length=1)
    user_id: str = Field(alias="userId")
    description: str = Field(min_length=1, max_length=200)
    amount: Amount
    kind: TransactionKind = Field(alias="type")
    category: str = Field(min_length=1, max_length=50)
    frequency: Frequency
    start_date: date = Field(alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")
    next_due_date: date = Field(alias="nextDueDate")
    currency: str = DEFAULT_CURRENCY
    active: bool = Field(default=True, alias="isActive")
    last_processed: datetime | None = Field(default=None, alias="lastProcessed")
    tags: list[str] = Field(default_factory=list)

    @field_validator("start_date", "next_due_date", mode="before")
    @classmethod
    def _coerce_dates(cls, value: Any) -> date:
        return parse_date(value)

    @field_validator("end_date", mode="before")
    @classmethod
    def _coerce_end_date(cls, value: Any) -> date | None:
        if value in (None, ""):
            return None
        return parse_date(value)

    @field_validator("currency")
    @classmethod
    def _supported_currency(cls, value: str) -> str:
        return _check_currency(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str]:
        return normalize_tags(value)

    @property
    def anchor_day(self) -> int:
        return self.start_date.day


class User(BaseModel):
    user_id: str
    email: str
    password_hash: str
    default_currency: str = DEFAULT_CURRENCY
    created_at: datetime


class Identity(BaseModel):
    """The caller behind a verified bearer token."""

    user_id: str
    email: str


class Session(WireModel):
    """Client-side view of an authenticated user, persisted between runs."""

    email: str
    token: str
    user_id: str = Field(alias="userId")
    default_currency: str = Field(default=DEFAULT_CURRENCY, alias="defaultCurrency")

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_user_id(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @field_validator("default_currency", mode="before")
    @classmethod
    def _default_currency(cls, value: Any) -> Any:
        return value or DEFAULT_CURRENCY


class ProcessedRule(BaseModel):
    rule_id: str
    transaction_id: str
    next_due_date: date


class ProcessingReport(BaseModel):
    now: datetime
    processed: list[ProcessedRule] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: bool = False

    @property
    def count(self) -> int:
        return len(self.processed)
