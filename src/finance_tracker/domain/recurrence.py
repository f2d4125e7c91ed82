from datetime import date, datetime, timedelta

from dateutil.relativedelta import relativedelta

from finance_tracker.models import Frequency, RecurrenceRule, Transaction

RECURRING_SUFFIX = " (Recurring)"


def advance(current: date, frequency: Frequency | str, anchor_day: int | None = None) -> date:
    """Move ``current`` forward by exactly one unit of ``frequency``.

    Monthly and yearly steps land on ``anchor_day`` (the rule's day of month)
    clamped to the target month's length, so a rule anchored on the 31st
    keeps returning to month end instead of drifting to the 28th/29th.
    """
    frequency = Frequency(frequency)
    if frequency is Frequency.DAILY:
        return current + timedelta(days=1)
    if frequency is Frequency.WEEKLY:
        return current + timedelta(weeks=1)

    # relativedelta clamps ``day`` to the length of the target month.
    day = anchor_day or current.day
    if frequency is Frequency.MONTHLY:
        return current + relativedelta(months=1, day=day)
    return current + relativedelta(years=1, day=day)


def first_due_date(start_date: date, frequency: Frequency | str) -> date:
    """Cursor for a newly created rule: one step after its start date."""
    return advance(start_date, frequency, anchor_day=start_date.day)


def advance_past(current: date, frequency: Frequency | str, floor: date, anchor_day: int | None = None) -> date:
    """Step ``current`` forward until it lies strictly after ``floor``."""
    while current <= floor:
        current = advance(current, frequency, anchor_day=anchor_day)
    return current


def is_due(rule: RecurrenceRule, today: date) -> bool:
    if not rule.active:
        return False
    if rule.next_due_date > today:
        return False
    return rule.end_date is None or rule.end_date >= today


def build_recurring_transaction(rule: RecurrenceRule, now: datetime, transaction_id: str) -> Transaction:
    description = rule.description
    if not description.endswith(RECURRING_SUFFIX):
        description = f"{description}{RECURRING_SUFFIX}"
    return Transaction(
        id=transaction_id,
        description=description[:200],
        amount=rule.amount,
        kind=rule.kind,
        category=rule.category,
        occurred_at=now.date(),
        currency=rule.currency,
        tags=list(rule.tags),
    )
