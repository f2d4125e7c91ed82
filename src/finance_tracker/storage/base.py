from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from finance_tracker.logger import get_logger
from finance_tracker.models import RecurrenceRule, Transaction, TransactionKind, User

logger = get_logger(__name__)

# (user_id, operation) -> None
ChangeListener = Callable[[str, str], None]

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class TransactionQuery:
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    currency: str | None = None
    kind: TransactionKind | None = None
    start_date: date | None = None
    end_date: date | None = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def matches(self, tx: Transaction) -> bool:
        if self.currency and tx.currency != self.currency:
            return False
        if self.kind and tx.kind is not self.kind:
            return False
        if self.start_date and tx.occurred_at < self.start_date:
            return False
        if self.end_date and tx.occurred_at > self.end_date:
            return False
        return True


class RecordStore(ABC):
    """Key-indexed store for users, sessions, transactions and recurrence rules.

    Transaction mutations are reported to registered listeners after they
    commit; listeners may be called from a worker thread.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self, user_id: str, operation: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(user_id, operation)
            except Exception:
                logger.exception("[STORE] Change listener failed for user %s.", user_id)

    # Users and tokens

    @abstractmethod
    def create_user(self, email: str, password_hash: str, default_currency: str) -> User:
        """Raise ConflictError if the email is taken."""

    @abstractmethod
    def get_user(self, user_id: str) -> User | None:
        pass

    @abstractmethod
    def get_user_by_email(self, email: str) -> User | None:
        pass

    @abstractmethod
    def update_user_currency(self, user_id: str, currency: str) -> User | None:
        pass

    @abstractmethod
    def save_token(self, token: str, user_id: str, expires_at: datetime) -> None:
        pass

    @abstractmethod
    def get_token(self, token: str) -> tuple[str, datetime] | None:
        """Return (user_id, expires_at) for a known token."""

    # Transactions

    @abstractmethod
    def list_transactions(self, user_id: str, query: TransactionQuery) -> tuple[list[Transaction], int]:
        """Return one page (newest first) and the total matching count."""

    @abstractmethod
    def all_transactions(self, user_id: str) -> list[Transaction]:
        pass

    @abstractmethod
    def add_transaction(self, user_id: str, transaction: Transaction) -> None:
        """Raise ConflictError if the id already exists for this user."""

    @abstractmethod
    def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        pass

    @abstractmethod
    def replace_transactions(self, user_id: str, transactions: list[Transaction]) -> int:
        """Atomically replace the user's whole transaction set."""

    # Recurrence rules

    @abstractmethod
    def list_rules(self, user_id: str) -> list[RecurrenceRule]:
        """Active rules, newest first."""

    @abstractmethod
    def get_rule(self, user_id: str, rule_id: str) -> RecurrenceRule | None:
        pass

    @abstractmethod
    def add_rule(self, rule: RecurrenceRule) -> None:
        pass

    @abstractmethod
    def update_rule(self, user_id: str, rule_id: str, changes: dict[str, Any]) -> RecurrenceRule | None:
        pass

    @abstractmethod
    def deactivate_rule(self, user_id: str, rule_id: str) -> bool:
        pass

    @abstractmethod
    def list_due_rules(self, today: date) -> list[RecurrenceRule]:
        """Active rules with cursor <= today and no end date before today."""

    @abstractmethod
    def materialize_rule(
        self,
        rule: RecurrenceRule,
        transaction: Transaction,
        next_due_date: date,
        processed_at: datetime,
    ) -> bool:
        """Insert ``transaction`` and advance the cursor as one unit.

        Applies only while the stored cursor still equals
        ``rule.next_due_date``; returns False when another run got there first.
        """

    # Lifecycle

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass
