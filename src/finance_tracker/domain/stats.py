from collections import defaultdict
from collections.abc import Iterable
from decimal import Decimal
from typing import Any

from finance_tracker.models import Transaction, TransactionKind

# Amounts are grouped per currency and never summed across currencies.


def totals_by_currency(transactions: Iterable[Transaction]) -> dict[str, dict[str, Decimal]]:
    totals: dict[str, dict[str, Decimal]] = {}
    for tx in transactions:
        bucket = totals.setdefault(
            tx.currency,
            {TransactionKind.INCOME.value: Decimal("0"), TransactionKind.EXPENSE.value: Decimal("0")},
        )
        bucket[tx.kind.value] += tx.amount
    return totals


def balance_for(transactions: Iterable[Transaction], currency: str) -> Decimal:
    bucket = totals_by_currency(transactions).get(currency)
    if not bucket:
        return Decimal("0")
    return bucket[TransactionKind.INCOME.value] - bucket[TransactionKind.EXPENSE.value]


def _empty_kind_stats() -> dict[str, Any]:
    return {"total": 0.0, "count": 0, "avg": 0.0, "min": 0.0, "max": 0.0}


def _kind_stats(amounts: list[Decimal]) -> dict[str, Any]:
    if not amounts:
        return _empty_kind_stats()
    total = sum(amounts, Decimal("0"))
    return {
        "total": float(total),
        "count": len(amounts),
        "avg": float(total / len(amounts)),
        "min": float(min(amounts)),
        "max": float(max(amounts)),
    }


def summarize_by_currency(transactions: Iterable[Transaction]) -> dict[str, Any]:
    grouped: dict[str, dict[str, list[Decimal]]] = defaultdict(lambda: defaultdict(list))
    for tx in transactions:
        grouped[tx.currency][tx.kind.value].append(tx.amount)

    by_currency: dict[str, Any] = {}
    for currency in sorted(grouped):
        income = _kind_stats(grouped[currency][TransactionKind.INCOME.value])
        expense = _kind_stats(grouped[currency][TransactionKind.EXPENSE.value])
        by_currency[currency] = {
            "income": income,
            "expense": expense,
            "balance": income["total"] - expense["total"],
        }
    return {"byCurrency": by_currency}


def summarize_by_category(
    transactions: Iterable[Transaction],
    kind: TransactionKind | None = None,
    currency: str | None = None,
) -> list[dict[str, Any]]:
    grouped: dict[tuple[str, str, str], list[Decimal]] = defaultdict(list)
    for tx in transactions:
        if kind is not None and tx.kind is not kind:
            continue
        if currency is not None and tx.currency != currency:
            continue
        grouped[(tx.category, tx.kind.value, tx.currency)].append(tx.amount)

    rows = []
    for (category, kind_value, row_currency), amounts in grouped.items():
        total = sum(amounts, Decimal("0"))
        rows.append({
            "category": category,
            "type": kind_value,
            "currency": row_currency,
            "total": float(total),
            "count": len(amounts),
            "avgAmount": float(total / len(amounts)),
        })
    rows.sort(key=lambda row: row["total"], reverse=True)
    return rows
