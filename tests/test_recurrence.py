import asyncio
import threading
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import make_rule, make_transaction
from finance_tracker.domain.recurrence import (
    RECURRING_SUFFIX,
    advance,
    advance_past,
    build_recurring_transaction,
    first_due_date,
    is_due,
)
from finance_tracker.models import Frequency, ProcessingReport, RecurrenceRule, Transaction
from finance_tracker.services.recurrence import RecurrenceEngine, RecurrenceScheduler
from finance_tracker.storage.memory import MemoryStore


def _at(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("frequency", list(Frequency))
def test_advance_always_moves_forward(frequency: Frequency) -> None:
    start = date(2023, 1, 1)
    for offset in range(0, 800, 7):
        current = start + timedelta(days=offset)
        once = advance(current, frequency)
        twice = advance(once, frequency)
        assert twice > once > current


def test_advance_steps_by_exactly_one_unit() -> None:
    current = date(2024, 3, 15)
    assert advance(current, Frequency.DAILY) == date(2024, 3, 16)
    assert advance(current, Frequency.WEEKLY) == date(2024, 3, 22)
    assert advance(current, Frequency.MONTHLY) == date(2024, 4, 15)
    assert advance(current, Frequency.YEARLY) == date(2025, 3, 15)
    assert advance(current, "monthly") == date(2024, 4, 15)


def test_advance_monthly_clamps_to_month_end_and_recovers_anchor() -> None:
    jan_31 = date(2024, 1, 31)
    feb = advance(jan_31, Frequency.MONTHLY, anchor_day=31)
    mar = advance(feb, Frequency.MONTHLY, anchor_day=31)
    apr = advance(mar, Frequency.MONTHLY, anchor_day=31)

    assert feb == date(2024, 2, 29)
    assert mar == date(2024, 3, 31)
    assert apr == date(2024, 4, 30)


def test_advance_yearly_from_leap_day() -> None:
    assert advance(date(2024, 2, 29), Frequency.YEARLY, anchor_day=29) == date(2025, 2, 28)


def test_first_due_date_is_one_step_after_start() -> None:
    assert first_due_date(date(2024, 1, 31), Frequency.MONTHLY) == date(2024, 2, 29)
    assert first_due_date(date(2024, 1, 1), Frequency.WEEKLY) == date(2024, 1, 8)


def test_advance_past_moves_strictly_after_floor() -> None:
    assert advance_past(date(2024, 1, 8), Frequency.WEEKLY, date(2024, 2, 15)) == date(2024, 2, 19)
    assert advance_past(date(2024, 2, 1), Frequency.MONTHLY, date(2024, 2, 1)) == date(2024, 3, 1)
    assert advance_past(date(2024, 3, 1), Frequency.MONTHLY, date(2024, 2, 15)) == date(2024, 3, 1)
    assert advance_past(date(2024, 2, 29), Frequency.MONTHLY, date(2024, 3, 1), anchor_day=31) == date(2024, 3, 31)


def test_is_due_respects_cursor_end_date_and_active() -> None:
    today = date(2024, 1, 15)
    assert is_due(make_rule(next_due_date=date(2024, 1, 15)), today)
    assert not is_due(make_rule(next_due_date=date(2024, 1, 16)), today)
    assert not is_due(make_rule(end_date=date(2024, 1, 14)), today)
    assert is_due(make_rule(end_date=date(2024, 1, 15)), today)
    assert not is_due(make_rule(active=False), today)


def test_build_recurring_transaction_copies_rule() -> None:
    rule = make_rule(tags=["home"], currency="EUR")
    tx = build_recurring_transaction(rule, _at(2024, 2, 15), "tx-1")

    assert tx.id == "tx-1"
    assert tx.description == f"Rent{RECURRING_SUFFIX}"
    assert tx.amount == rule.amount
    assert tx.kind is rule.kind
    assert tx.category == "Housing"
    assert tx.currency == "EUR"
    assert tx.occurred_at == date(2024, 2, 15)
    assert tx.tags == ["home"]


def test_materialize_due_monthly_rule_processed_late() -> None:
    store = MemoryStore()
    store.add_rule(make_rule(next_due_date=date(2024, 1, 1)))
    engine = RecurrenceEngine(store, id_factory=lambda: "generated")

    report = engine.materialize_due(_at(2024, 2, 15))

    assert report.count == 1
    assert report.failed == []
    transactions = store.all_transactions("u1")
    assert [tx.id for tx in transactions] == ["generated"]
    assert transactions[0].occurred_at == date(2024, 2, 15)
    rule = store.get_rule("u1", "r1")
    assert rule is not None
    assert rule.next_due_date == date(2024, 2, 1)
    assert rule.last_processed == _at(2024, 2, 15)


def test_materialize_due_forty_days_late_advances_one_month() -> None:
    store = MemoryStore()
    store.add_rule(make_rule(next_due_date=date(2024, 1, 1)))
    engine = RecurrenceEngine(store)

    report = engine.materialize_due(_at(2024, 2, 10))

    assert report.count == 1
    assert len(store.all_transactions("u1")) == 1
    assert store.get_rule("u1", "r1").next_due_date == date(2024, 2, 1)


def test_catch_up_needs_one_invocation_per_cycle() -> None:
    store = MemoryStore()
    store.add_rule(make_rule(next_due_date=date(2024, 1, 1)))
    engine = RecurrenceEngine(store)
    now = _at(2024, 3, 20)

    counts = [engine.materialize_due(now).count for _ in range(4)]

    assert counts == [1, 1, 1, 0]
    assert store.get_rule("u1", "r1").next_due_date == date(2024, 4, 1)
    assert len(store.all_transactions("u1")) == 3


def test_materialize_due_is_idempotent_for_same_now() -> None:
    store = MemoryStore()
    store.add_rule(make_rule(next_due_date=date(2024, 1, 1)))
    engine = RecurrenceEngine(store)
    now = _at(2024, 1, 15)

    first = engine.materialize_due(now)
    second = engine.materialize_due(now)

    assert first.count == 1
    assert second.count == 0
    assert len(store.all_transactions("u1")) == 1


def test_materialize_due_skips_inactive_and_expired_rules() -> None:
    store = MemoryStore()
    store.add_rule(make_rule("inactive", active=False))
    store.add_rule(make_rule("expired", end_date=date(2024, 1, 10)))
    store.add_rule(make_rule("future", next_due_date=date(2024, 2, 1)))
    engine = RecurrenceEngine(store)

    report = engine.materialize_due(_at(2024, 1, 15))

    assert report.count == 0
    assert store.all_transactions("u1") == []


def test_stale_rule_loses_compare_and_set() -> None:
    store = MemoryStore()
    store.add_rule(make_rule(next_due_date=date(2024, 1, 1)))
    engine = RecurrenceEngine(store)
    stale = store.list_due_rules(date(2024, 1, 15))[0]

    engine.materialize_due(_at(2024, 1, 15))
    applied = store.materialize_rule(
        stale,
        make_transaction("late"),
        date(2024, 2, 1),
        _at(2024, 1, 15),
    )

    assert applied is False
    assert len(store.all_transactions("u1")) == 1


class FlakyStore(MemoryStore):
    def __init__(self, failing_rule: str) -> None:
        super().__init__()
        self.failing_rule = failing_rule

    def materialize_rule(
        self,
        rule: RecurrenceRule,
        transaction: Transaction,
        next_due_date: date,
        processed_at: datetime,
    ) -> bool:
        if rule.rule_id == self.failing_rule:
            raise RuntimeError("store timeout")
        return super().materialize_rule(rule, transaction, next_due_date, processed_at)


def test_failure_in_one_rule_does_not_stop_others() -> None:
    store = FlakyStore("bad")
    store.add_rule(make_rule("bad", next_due_date=date(2024, 1, 1)))
    store.add_rule(make_rule("good", next_due_date=date(2024, 1, 2)))
    engine = RecurrenceEngine(store)

    report = engine.materialize_due(_at(2024, 1, 15))

    assert report.failed == ["bad"]
    assert [item.rule_id for item in report.processed] == ["good"]
    assert store.get_rule("u1", "bad").next_due_date == date(2024, 1, 1)


def test_duplicate_transaction_id_leaves_cursor_untouched() -> None:
    store = MemoryStore()
    store.add_transaction("u1", make_transaction("taken"))
    store.add_rule(make_rule(next_due_date=date(2024, 1, 1)))
    engine = RecurrenceEngine(store, id_factory=lambda: "taken")

    report = engine.materialize_due(_at(2024, 1, 15))

    assert report.failed == ["r1"]
    assert store.get_rule("u1", "r1").next_due_date == date(2024, 1, 1)
    assert len(store.all_transactions("u1")) == 1


@pytest.mark.anyio
async def test_scheduler_uses_injected_clock() -> None:
    now = _at(2024, 2, 15)
    engine = MagicMock()
    engine.materialize_due.return_value = ProcessingReport(now=now)
    scheduler = RecurrenceScheduler(engine, interval_seconds=3600, clock=lambda: now)

    report = await scheduler.run_once()

    engine.materialize_due.assert_called_once_with(now)
    assert report.skipped is False
    assert scheduler.last_report is report


@pytest.mark.anyio
async def test_scheduler_skips_overlapping_runs() -> None:
    now = _at(2024, 2, 15)
    release = threading.Event()

    def slow_run(run_now: datetime) -> ProcessingReport:
        release.wait(timeout=5)
        return ProcessingReport(now=run_now)

    engine = MagicMock()
    engine.materialize_due.side_effect = slow_run
    scheduler = RecurrenceScheduler(engine, interval_seconds=3600, clock=lambda: now)

    first = asyncio.create_task(scheduler.run_once())
    while not scheduler.busy:
        await asyncio.sleep(0)

    overlapping = await scheduler.run_once()
    release.set()
    completed = await first

    assert overlapping.skipped is True
    assert completed.skipped is False
    engine.materialize_due.assert_called_once()


@pytest.mark.anyio
async def test_scheduler_start_runs_immediately_and_stop_cancels() -> None:
    store = MemoryStore()
    store.add_rule(make_rule(next_due_date=date(2024, 1, 1)))
    scheduler = RecurrenceScheduler(RecurrenceEngine(store), interval_seconds=3600, clock=lambda: _at(2024, 1, 15))

    scheduler.start()
    for _ in range(200):
        if scheduler.last_report is not None:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert scheduler.last_report is not None
    assert scheduler.last_report.count == 1
    assert not scheduler.running
