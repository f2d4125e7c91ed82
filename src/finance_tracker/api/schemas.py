from datetime import date
from typing import Annotated, Any

from pydantic import AfterValidator, Field, field_validator, model_validator

from finance_tracker.domain.currencies import DEFAULT_CURRENCY, is_supported
from finance_tracker.domain.tags import normalize_tags
from finance_tracker.domain.timefmt import parse_date
from finance_tracker.models import Amount, Frequency, TransactionKind, WireModel


def _check_currency(value: str) -> str:
    if not is_supported(value):
        raise ValueError("Unsupported currency")
    return value


CurrencyCode = Annotated[str, AfterValidator(_check_currency)]


def _optional_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    return parse_date(value)


class RegisterRequest(WireModel):
    email: str = ""
    password: str = ""
    default_currency: str | None = Field(default=None, alias="defaultCurrency")


class LoginRequest(WireModel):
    email: str = ""
    password: str = ""


class ReplaceTransactionsRequest(WireModel):
    # Items are validated one by one so errors can name their index.
    transactions: Any = None


class PreferencesUpdate(WireModel):
    default_currency: CurrencyCode | None = Field(default=None, alias="defaultCurrency")


class RecurrenceRuleCreate(WireModel):
    description: str = Field(min_length=1, max_length=200)
    amount: Amount
    kind: TransactionKind = Field(alias="type")
    category: str = Field(min_length=1, max_length=50)
    frequency: Frequency
    start_date: date = Field(alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")
    currency: CurrencyCode = DEFAULT_CURRENCY
    tags: list[str] = Field(default_factory=list)

    @field_validator("start_date", mode="before")
    @classmethod
    def _coerce_start(cls, value: Any) -> date:
        return parse_date(value)

    @field_validator("end_date", mode="before")
    @classmethod
    def _coerce_end(cls, value: Any) -> date | None:
        return _optional_date(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str]:
        return normalize_tags(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> "RecurrenceRuleCreate":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class RecurrenceRuleUpdate(WireModel):
    description: str | None = Field(default=None, min_length=1, max_length=200)
    amount: Amount | None = None
    kind: TransactionKind | None = Field(default=None, alias="type")
    category: str | None = Field(default=None, min_length=1, max_length=50)
    frequency: Frequency | None = None
    start_date: date | None = Field(default=None, alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")
    currency: CurrencyCode | None = None
    tags: list[str] | None = None
    active: bool | None = Field(default=None, alias="isActive")

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _coerce_dates(cls, value: Any) -> date | None:
        return _optional_date(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return normalize_tags(value)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)
