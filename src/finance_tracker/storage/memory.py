import threading
from datetime import date, datetime, timezone
from itertools import count
from typing import Any
from uuid import uuid4

from finance_tracker.domain.recurrence import is_due
from finance_tracker.errors import ConflictError
from finance_tracker.models import RecurrenceRule, Transaction, User
from finance_tracker.storage.base import RecordStore, TransactionQuery


class MemoryStore(RecordStore):
    """Process-local store used in development and tests."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._seq = count()
        self._users: dict[str, User] = {}
        self._tokens: dict[str, tuple[str, datetime]] = {}
        # user_id -> transaction_id -> (seq, transaction)
        self._transactions: dict[str, dict[str, tuple[int, Transaction]]] = {}
        # rule_id -> (seq, rule)
        self._rules: dict[str, tuple[int, RecurrenceRule]] = {}

    def create_user(self, email: str, password_hash: str, default_currency: str) -> User:
        with self._lock:
            if self._find_user(email):
                raise ConflictError("User already exists with this email")
            user = User(
                user_id=uuid4().hex,
                email=email,
                password_hash=password_hash,
                default_currency=default_currency,
                created_at=datetime.now(timezone.utc),
            )
            self._users[user.user_id] = user
            return user

    def _find_user(self, email: str) -> User | None:
        for user in self._users.values():
            if user.email == email:
                return user
        return None

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> User | None:
        with self._lock:
            return self._find_user(email)

    def update_user_currency(self, user_id: str, currency: str) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            user = user.model_copy(update={"default_currency": currency})
            self._users[user_id] = user
            return user

    def save_token(self, token: str, user_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._tokens[token] = (user_id, expires_at)

    def get_token(self, token: str) -> tuple[str, datetime] | None:
        with self._lock:
            return self._tokens.get(token)

    def _sorted(self, user_id: str) -> list[Transaction]:
        entries = self._transactions.get(user_id, {}).values()
        ordered = sorted(entries, key=lambda entry: (entry[1].occurred_at, entry[0]), reverse=True)
        return [tx for _, tx in ordered]

    def list_transactions(self, user_id: str, query: TransactionQuery) -> tuple[list[Transaction], int]:
        with self._lock:
            matching = [tx for tx in self._sorted(user_id) if query.matches(tx)]
        return matching[query.offset:query.offset + query.limit], len(matching)

    def all_transactions(self, user_id: str) -> list[Transaction]:
        with self._lock:
            return self._sorted(user_id)

    def _insert(self, user_id: str, transaction: Transaction) -> None:
        bucket = self._transactions.setdefault(user_id, {})
        if transaction.id in bucket:
            raise ConflictError("Transaction with this ID already exists")
        bucket[transaction.id] = (next(self._seq), transaction)

    def add_transaction(self, user_id: str, transaction: Transaction) -> None:
        with self._lock:
            self._insert(user_id, transaction)
        self._notify(user_id, "insert")

    def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        with self._lock:
            removed = self._transactions.get(user_id, {}).pop(transaction_id, None)
        if removed is None:
            return False
        self._notify(user_id, "delete")
        return True

    def replace_transactions(self, user_id: str, transactions: list[Transaction]) -> int:
        replacement: dict[str, tuple[int, Transaction]] = {}
        with self._lock:
            for tx in transactions:
                if tx.id in replacement:
                    raise ConflictError("Duplicate transaction ID found")
                replacement[tx.id] = (next(self._seq), tx)
            self._transactions[user_id] = replacement
        self._notify(user_id, "replace")
        return len(replacement)

    def list_rules(self, user_id: str) -> list[RecurrenceRule]:
        with self._lock:
            entries = [entry for entry in self._rules.values() if entry[1].user_id == user_id and entry[1].active]
        entries.sort(key=lambda entry: entry[0], reverse=True)
        return [rule for _, rule in entries]

    def get_rule(self, user_id: str, rule_id: str) -> RecurrenceRule | None:
        with self._lock:
            entry = self._rules.get(rule_id)
        if entry is None or entry[1].user_id != user_id:
            return None
        return entry[1]

    def add_rule(self, rule: RecurrenceRule) -> None:
        with self._lock:
            if rule.rule_id in self._rules:
                raise ConflictError("Recurring transaction with this ID already exists")
            self._rules[rule.rule_id] = (next(self._seq), rule)

    def update_rule(self, user_id: str, rule_id: str, changes: dict[str, Any]) -> RecurrenceRule | None:
        with self._lock:
            entry = self._rules.get(rule_id)
            if entry is None or entry[1].user_id != user_id:
                return None
            seq, rule = entry
            merged = {**rule.model_dump(), **changes}
            updated = RecurrenceRule.model_validate(merged)
            self._rules[rule_id] = (seq, updated)
            return updated

    def deactivate_rule(self, user_id: str, rule_id: str) -> bool:
        return self.update_rule(user_id, rule_id, {"active": False}) is not None

    def list_due_rules(self, today: date) -> list[RecurrenceRule]:
        with self._lock:
            rules = [rule for _, rule in self._rules.values()]
        due = [rule for rule in rules if is_due(rule, today)]
        due.sort(key=lambda rule: (rule.next_due_date, rule.rule_id))
        return due

    def materialize_rule(
        self,
        rule: RecurrenceRule,
        transaction: Transaction,
        next_due_date: date,
        processed_at: datetime,
    ) -> bool:
        with self._lock:
            entry = self._rules.get(rule.rule_id)
            if entry is None:
                return False
            seq, stored = entry
            if not stored.active or stored.next_due_date != rule.next_due_date:
                return False
            # Insert first: a conflict leaves the cursor untouched.
            self._insert(stored.user_id, transaction)
            self._rules[rule.rule_id] = (
                seq,
                stored.model_copy(update={"next_due_date": next_due_date, "last_processed": processed_at}),
            )
        self._notify(stored.user_id, "insert")
        return True
