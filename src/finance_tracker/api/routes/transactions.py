import asyncio
import math
from datetime import date
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import ValidationError as PydanticValidationError

from finance_tracker.api.dependencies import get_identity, get_store
from finance_tracker.api.errors import describe_validation_error
from finance_tracker.api.schemas import ReplaceTransactionsRequest
from finance_tracker.core import settings
from finance_tracker.domain.currencies import is_supported
from finance_tracker.domain.stats import summarize_by_category, summarize_by_currency
from finance_tracker.domain.timefmt import parse_date
from finance_tracker.errors import NotFoundError, ValidationError
from finance_tracker.logger import get_logger
from finance_tracker.models import Identity, Transaction, TransactionKind
from finance_tracker.storage.base import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, RecordStore, TransactionQuery

logger = get_logger(__name__)

router = APIRouter()


def _parse_int(raw: str | None, default: int) -> int:
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _parse_kind(raw: str | None) -> TransactionKind | None:
    if raw in {kind.value for kind in TransactionKind}:
        return TransactionKind(raw)
    return None


def _parse_optional_date(raw: str | None, name: str) -> date | None:
    if not raw:
        return None
    try:
        return parse_date(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid {name}") from exc


def build_query(
    page: str | None = None,
    limit: str | None = None,
    currency: str | None = None,
    kind: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> TransactionQuery:
    """Clamp paging and drop unknown currency/type filters instead of rejecting them."""
    page_number = max(1, _parse_int(page, 1))
    page_size = min(MAX_PAGE_SIZE, max(1, _parse_int(limit, DEFAULT_PAGE_SIZE)))
    return TransactionQuery(
        page=page_number,
        limit=page_size,
        currency=currency if is_supported(currency) else None,
        kind=_parse_kind(kind),
        start_date=_parse_optional_date(start_date, "startDate"),
        end_date=_parse_optional_date(end_date, "endDate"),
    )


def validate_transactions(items: Any) -> list[Transaction]:
    if not isinstance(items, list):
        raise ValidationError("Transactions must be an array")
    if len(items) > settings.BULK_REPLACE_LIMIT:
        raise ValidationError(f"Too many transactions (max {settings.BULK_REPLACE_LIMIT})")

    transactions: list[Transaction] = []
    errors: list[str] = []
    for index, item in enumerate(items):
        try:
            transactions.append(Transaction.model_validate(item))
        except PydanticValidationError as exc:
            errors.append(describe_validation_error(exc, prefix=f"Transaction {index}: "))
    if errors:
        raise ValidationError("; ".join(errors))
    return transactions


@router.get("/api/transactions")
async def list_transactions(
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
    page: str | None = None,
    limit: str | None = None,
    currency: str | None = None,
    kind: Annotated[str | None, Query(alias="type")] = None,
    start_date: Annotated[str | None, Query(alias="startDate")] = None,
    end_date: Annotated[str | None, Query(alias="endDate")] = None,
) -> dict[str, Any]:
    query = build_query(page, limit, currency, kind, start_date, end_date)
    transactions, total = store.list_transactions(identity.user_id, query)
    return {
        "transactions": [tx.to_wire() for tx in transactions],
        "pagination": {
            "page": query.page,
            "limit": query.limit,
            "total": total,
            "pages": math.ceil(total / query.limit),
        },
    }


@router.post("/api/transactions")
async def replace_transactions(
    payload: ReplaceTransactionsRequest,
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    transactions = validate_transactions(payload.transactions)
    count = await asyncio.to_thread(store.replace_transactions, identity.user_id, transactions)
    logger.info("[STORE] Replaced transactions for user %s (%d items).", identity.user_id, count)
    return {"message": "Transactions updated successfully", "count": count}


@router.post("/api/transactions/add", status_code=status.HTTP_201_CREATED)
async def add_transaction(
    payload: Annotated[Any, Body()],
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    try:
        transaction = Transaction.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(describe_validation_error(exc)) from exc
    store.add_transaction(identity.user_id, transaction)
    return {"message": "Transaction added successfully", "transactionId": transaction.id}


@router.get("/api/transactions/stats")
async def transaction_stats(
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    return summarize_by_currency(store.all_transactions(identity.user_id))


@router.get("/api/transactions/by-category")
async def transactions_by_category(
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
    kind: Annotated[str | None, Query(alias="type")] = None,
    currency: str | None = None,
) -> dict[str, Any]:
    rows = summarize_by_category(
        store.all_transactions(identity.user_id),
        kind=_parse_kind(kind),
        currency=currency if is_supported(currency) else None,
    )
    return {"categoryStats": rows}


@router.delete("/api/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, str]:
    if not store.delete_transaction(identity.user_id, transaction_id):
        raise NotFoundError("Transaction not found")
    return {"message": "Transaction deleted successfully"}
