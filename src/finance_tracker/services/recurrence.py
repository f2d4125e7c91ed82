import asyncio
from collections.abc import Callable
from datetime import datetime
from time import perf_counter
from uuid import uuid4

from finance_tracker.domain.recurrence import advance, build_recurring_transaction
from finance_tracker.domain.timefmt import format_duration, utcnow
from finance_tracker.errors import SchedulerError
from finance_tracker.logger import get_logger
from finance_tracker.models import ProcessedRule, ProcessingReport, RecurrenceRule
from finance_tracker.storage.base import RecordStore

logger = get_logger(__name__)


def _new_transaction_id() -> str:
    return str(uuid4())


class RecurrenceEngine:
    """Turns due recurrence rules into transactions, one cycle per call.

    A rule that is several cycles behind produces one transaction per
    invocation; catching up takes one invocation per missed cycle.
    """

    def __init__(self, store: RecordStore, id_factory: Callable[[], str] = _new_transaction_id) -> None:
        self.store = store
        self.id_factory = id_factory

    def _process_rule(self, rule: RecurrenceRule, now: datetime) -> ProcessedRule | None:
        next_due = advance(rule.next_due_date, rule.frequency, anchor_day=rule.anchor_day)
        transaction = build_recurring_transaction(rule, now, self.id_factory())
        applied = self.store.materialize_rule(rule, transaction, next_due, now)
        if not applied:
            logger.info("[RECURRING] Rule %s already processed for this cycle.", rule.rule_id)
            return None
        return ProcessedRule(rule_id=rule.rule_id, transaction_id=transaction.id, next_due_date=next_due)

    def materialize_due(self, now: datetime) -> ProcessingReport:
        start = perf_counter()
        report = ProcessingReport(now=now)
        due_rules = self.store.list_due_rules(now.date())
        if due_rules:
            logger.info("[RECURRING] Found %d due rule(s).", len(due_rules))

        for rule in due_rules:
            try:
                processed = self._process_rule(rule, now)
            except Exception as exc:
                error = SchedulerError(rule.rule_id, exc)
                logger.exception("[RECURRING] %s", error.message)
                report.failed.append(rule.rule_id)
                continue
            if processed is not None:
                report.processed.append(processed)
                logger.info(
                    "[RECURRING] Created transaction %s from rule %s. Next due %s.",
                    processed.transaction_id,
                    rule.rule_id,
                    processed.next_due_date.isoformat(),
                )

        if due_rules:
            logger.info(
                "[RECURRING] Processed %d rule(s), %d failed in %s.",
                report.count,
                len(report.failed),
                format_duration(perf_counter() - start),
            )
        return report


class RecurrenceScheduler:
    """Runs the engine on a fixed cadence, never more than one run at a time."""

    def __init__(
        self,
        engine: RecurrenceEngine,
        interval_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.last_report: ProcessingReport | None = None
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> ProcessingReport:
        now = self.clock()
        if self._lock.locked():
            logger.warning("[RECURRING] Previous run still active; skipping.")
            return ProcessingReport(now=now, skipped=True)
        async with self._lock:
            report = await asyncio.to_thread(self.engine.materialize_due, now)
            self.last_report = report
            return report

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("[RECURRING] Scheduled run failed.")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        logger.info("[RECURRING] Scheduler started (every %s).", format_duration(self.interval_seconds))
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[RECURRING] Scheduler stopped.")
