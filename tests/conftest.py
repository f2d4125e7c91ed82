from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from finance_tracker.models import Frequency, RecurrenceRule, Transaction, TransactionKind


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_transaction(tx_id: str = "t1", **overrides: Any) -> Transaction:
    values: dict[str, Any] = {
        "id": tx_id,
        "description": "Groceries",
        "amount": Decimal("50"),
        "kind": TransactionKind.EXPENSE,
        "category": "Food",
        "occurred_at": date(2024, 1, 10),
        "currency": "USD",
    }
    values.update(overrides)
    return Transaction(**values)


def make_rule(rule_id: str = "r1", user_id: str = "u1", **overrides: Any) -> RecurrenceRule:
    values: dict[str, Any] = {
        "rule_id": rule_id,
        "user_id": user_id,
        "description": "Rent",
        "amount": Decimal("1200"),
        "kind": TransactionKind.EXPENSE,
        "category": "Housing",
        "frequency": Frequency.MONTHLY,
        "start_date": date(2023, 12, 1),
        "next_due_date": date(2024, 1, 1),
        "currency": "USD",
    }
    values.update(overrides)
    return RecurrenceRule(**values)
