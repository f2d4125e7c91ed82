from typing import Annotated, Any
from uuid import uuid4

from fastapi import APIRouter, Depends, status

from finance_tracker.api.dependencies import get_identity, get_store
from finance_tracker.api.schemas import RecurrenceRuleCreate, RecurrenceRuleUpdate
from finance_tracker.domain.recurrence import advance_past, first_due_date
from finance_tracker.errors import NotFoundError, ValidationError
from finance_tracker.logger import get_logger
from finance_tracker.models import Identity, RecurrenceRule
from finance_tracker.storage.base import RecordStore

logger = get_logger(__name__)

router = APIRouter()


@router.get("/api/recurring-transactions")
async def list_recurring(
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    rules = store.list_rules(identity.user_id)
    return {"recurringTransactions": [rule.to_wire() for rule in rules]}


@router.post("/api/recurring-transactions", status_code=status.HTTP_201_CREATED)
async def create_recurring(
    payload: RecurrenceRuleCreate,
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    rule = RecurrenceRule(
        rule_id=str(uuid4()),
        user_id=identity.user_id,
        description=payload.description,
        amount=payload.amount,
        kind=payload.kind,
        category=payload.category,
        frequency=payload.frequency,
        start_date=payload.start_date,
        end_date=payload.end_date,
        next_due_date=first_due_date(payload.start_date, payload.frequency),
        currency=payload.currency,
        tags=payload.tags,
    )
    store.add_rule(rule)
    logger.info(
        "[RECURRING] Rule %s created (%s, first due %s).",
        rule.rule_id,
        rule.frequency.value,
        rule.next_due_date.isoformat(),
    )
    return {"message": "Recurring transaction created successfully", "recurringTransaction": rule.to_wire()}


def _resolve_changes(rule: RecurrenceRule, update: RecurrenceRuleUpdate) -> dict[str, Any]:
    changes = update.changes()
    for field in ("description", "amount", "kind", "category", "frequency", "start_date", "currency", "active"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be empty")
    if changes.get("tags") is None:
        changes.pop("tags", None)

    start_date = changes.get("start_date", rule.start_date)
    end_date = changes.get("end_date", rule.end_date)
    if end_date is not None and end_date < start_date:
        raise ValidationError("End date must not be before start date")

    # A new schedule restarts the cursor from the start date, but never
    # behind a cycle that was already materialized.
    if "frequency" in changes or "start_date" in changes:
        frequency = changes.get("frequency", rule.frequency)
        cursor = first_due_date(start_date, frequency)
        if rule.last_processed is not None:
            cursor = advance_past(cursor, frequency, rule.last_processed.date(), anchor_day=start_date.day)
        changes["next_due_date"] = cursor
    return changes


@router.put("/api/recurring-transactions/{rule_id}")
async def update_recurring(
    rule_id: str,
    payload: RecurrenceRuleUpdate,
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    rule = store.get_rule(identity.user_id, rule_id)
    if rule is None:
        raise NotFoundError("Recurring transaction not found")
    updated = store.update_rule(identity.user_id, rule_id, _resolve_changes(rule, payload))
    if updated is None:
        raise NotFoundError("Recurring transaction not found")
    return {"message": "Recurring transaction updated successfully", "recurringTransaction": updated.to_wire()}


@router.delete("/api/recurring-transactions/{rule_id}")
async def delete_recurring(
    rule_id: str,
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, str]:
    if not store.deactivate_rule(identity.user_id, rule_id):
        raise NotFoundError("Recurring transaction not found")
    logger.info("[RECURRING] Rule %s deactivated.", rule_id)
    return {"message": "Recurring transaction deactivated successfully"}
