import json
import sqlite3
import threading
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from finance_tracker.errors import ConflictError, StoreUnavailable
from finance_tracker.logger import get_logger
from finance_tracker.models import RecurrenceRule, Transaction, User
from finance_tracker.storage.base import RecordStore, TransactionQuery

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    default_currency TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tokens (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS transactions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    transaction_id TEXT NOT NULL,
    description TEXT NOT NULL,
    amount TEXT NOT NULL,
    type TEXT NOT NULL,
    category TEXT NOT NULL,
    date TEXT NOT NULL,
    currency TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    notes TEXT NOT NULL DEFAULT '',
    UNIQUE(user_id, transaction_id)
);
CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date);
CREATE TABLE IF NOT EXISTS recurring_rules (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    description TEXT NOT NULL,
    amount TEXT NOT NULL,
    type TEXT NOT NULL,
    category TEXT NOT NULL,
    frequency TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT,
    next_due_date TEXT NOT NULL,
    currency TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_processed TEXT,
    tags TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_rules_due ON recurring_rules(is_active, next_due_date);
"""

_TRANSACTION_COLUMNS = "transaction_id, description, amount, type, category, date, currency, tags, notes"

_RULE_COLUMNS = (
    "rule_id, user_id, description, amount, type, category, frequency, start_date, "
    "end_date, next_due_date, currency, is_active, last_processed, tags"
)

# RecurrenceRule field -> column
_RULE_FIELD_COLUMNS = {
    "description": "description",
    "amount": "amount",
    "kind": "type",
    "category": "category",
    "frequency": "frequency",
    "start_date": "start_date",
    "end_date": "end_date",
    "next_due_date": "next_due_date",
    "currency": "currency",
    "active": "is_active",
    "last_processed": "last_processed",
    "tags": "tags",
}


def _transaction_row(user_id: str, tx: Transaction) -> tuple[Any, ...]:
    return (
        user_id,
        tx.id,
        tx.description,
        str(tx.amount),
        tx.kind.value,
        tx.category,
        tx.occurred_at.isoformat(),
        tx.currency,
        json.dumps(tx.tags),
        tx.notes,
    )


def _transaction_from_row(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["transaction_id"],
        description=row["description"],
        amount=row["amount"],
        kind=row["type"],
        category=row["category"],
        occurred_at=row["date"],
        currency=row["currency"],
        tags=json.loads(row["tags"] or "[]"),
        notes=row["notes"],
    )


def _rule_from_row(row: sqlite3.Row) -> RecurrenceRule:
    return RecurrenceRule(
        rule_id=row["rule_id"],
        user_id=row["user_id"],
        description=row["description"],
        amount=row["amount"],
        kind=row["type"],
        category=row["category"],
        frequency=row["frequency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        next_due_date=row["next_due_date"],
        currency=row["currency"],
        active=bool(row["is_active"]),
        last_processed=row["last_processed"],
        tags=json.loads(row["tags"] or "[]"),
    )


def _column_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, list):
        return json.dumps(value)
    return str(value)


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        user_id=row["user_id"],
        email=row["email"],
        password_hash=row["password_hash"],
        default_currency=row["default_currency"],
        created_at=row["created_at"],
    )


class SqliteStore(RecordStore):
    """SQLite-backed store. One connection guarded by a lock."""

    def __init__(self, db_path: str) -> None:
        super().__init__()
        self.db_path = db_path
        self._lock = threading.RLock()
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(f"Cannot open database at {db_path}: {exc}") from exc
        logger.info("[STORE] SQLite store ready at %s.", db_path)

    def ping(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Users and tokens

    def create_user(self, email: str, password_hash: str, default_currency: str) -> User:
        user = User(
            user_id=uuid4().hex,
            email=email,
            password_hash=password_hash,
            default_currency=default_currency,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO users (user_id, email, password_hash, default_currency, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (user.user_id, user.email, user.password_hash, user.default_currency, user.created_at.isoformat()),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError("User already exists with this email") from exc
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _user_from_row(row) if row else None

    def update_user_currency(self, user_id: str, currency: str) -> User | None:
        with self._lock, self._conn:
            self._conn.execute("UPDATE users SET default_currency = ? WHERE user_id = ?", (currency, user_id))
        return self.get_user(user_id)

    def save_token(self, token: str, user_id: str, expires_at: datetime) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO tokens (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, user_id, expires_at.isoformat()),
            )

    def get_token(self, token: str) -> tuple[str, datetime] | None:
        with self._lock:
            row = self._conn.execute("SELECT user_id, expires_at FROM tokens WHERE token = ?", (token,)).fetchone()
        if row is None:
            return None
        return row["user_id"], datetime.fromisoformat(row["expires_at"])

    # Transactions

    def list_transactions(self, user_id: str, query: TransactionQuery) -> tuple[list[Transaction], int]:
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if query.currency:
            conditions.append("currency = ?")
            params.append(query.currency)
        if query.kind:
            conditions.append("type = ?")
            params.append(query.kind.value)
        if query.start_date:
            conditions.append("date >= ?")
            params.append(query.start_date.isoformat())
        if query.end_date:
            conditions.append("date <= ?")
            params.append(query.end_date.isoformat())
        where = " AND ".join(conditions)

        with self._lock:
            total = self._conn.execute(f"SELECT COUNT(*) FROM transactions WHERE {where}", params).fetchone()[0]
            rows = self._conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE {where} "
                "ORDER BY date DESC, seq DESC LIMIT ? OFFSET ?",
                [*params, query.limit, query.offset],
            ).fetchall()
        return [_transaction_from_row(row) for row in rows], total

    def all_transactions(self, user_id: str) -> list[Transaction]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE user_id = ? ORDER BY date DESC, seq DESC",
                (user_id,),
            ).fetchall()
        return [_transaction_from_row(row) for row in rows]

    def _insert(self, transaction_row: tuple[Any, ...]) -> None:
        self._conn.execute(
            f"INSERT INTO transactions (user_id, {_TRANSACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            transaction_row,
        )

    def add_transaction(self, user_id: str, transaction: Transaction) -> None:
        try:
            with self._lock, self._conn:
                self._insert(_transaction_row(user_id, transaction))
        except sqlite3.IntegrityError as exc:
            raise ConflictError("Transaction with this ID already exists") from exc
        self._notify(user_id, "insert")

    def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM transactions WHERE user_id = ? AND transaction_id = ?",
                (user_id, transaction_id),
            )
        if cursor.rowcount == 0:
            return False
        self._notify(user_id, "delete")
        return True

    def replace_transactions(self, user_id: str, transactions: list[Transaction]) -> int:
        rows = [_transaction_row(user_id, tx) for tx in transactions]
        try:
            # Delete and insert share one SQLite transaction.
            with self._lock, self._conn:
                self._conn.execute("DELETE FROM transactions WHERE user_id = ?", (user_id,))
                for row in rows:
                    self._insert(row)
        except sqlite3.IntegrityError as exc:
            raise ConflictError("Duplicate transaction ID found") from exc
        self._notify(user_id, "replace")
        return len(rows)

    # Recurrence rules

    def list_rules(self, user_id: str) -> list[RecurrenceRule]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_RULE_COLUMNS} FROM recurring_rules WHERE user_id = ? AND is_active = 1 ORDER BY seq DESC",
                (user_id,),
            ).fetchall()
        return [_rule_from_row(row) for row in rows]

    def get_rule(self, user_id: str, rule_id: str) -> RecurrenceRule | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_RULE_COLUMNS} FROM recurring_rules WHERE user_id = ? AND rule_id = ?",
                (user_id, rule_id),
            ).fetchone()
        return _rule_from_row(row) if row else None

    def add_rule(self, rule: RecurrenceRule) -> None:
        values = (
            rule.rule_id,
            rule.user_id,
            rule.description,
            str(rule.amount),
            rule.kind.value,
            rule.category,
            rule.frequency.value,
            rule.start_date.isoformat(),
            rule.end_date.isoformat() if rule.end_date else None,
            rule.next_due_date.isoformat(),
            rule.currency,
            int(rule.active),
            rule.last_processed.isoformat() if rule.last_processed else None,
            json.dumps(rule.tags),
        )
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO recurring_rules ({_RULE_COLUMNS}) VALUES ({', '.join('?' * len(values))})",
                    values,
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError("Recurring transaction with this ID already exists") from exc

    def update_rule(self, user_id: str, rule_id: str, changes: dict[str, Any]) -> RecurrenceRule | None:
        existing = self.get_rule(user_id, rule_id)
        if existing is None:
            return None
        # Validate the merged rule before writing any column.
        merged = RecurrenceRule.model_validate({**existing.model_dump(), **changes})
        assignments = []
        params: list[Any] = []
        for field in changes:
            column = _RULE_FIELD_COLUMNS.get(field)
            if column is None:
                continue
            assignments.append(f"{column} = ?")
            params.append(_column_value(getattr(merged, field)))
        if assignments:
            with self._lock, self._conn:
                self._conn.execute(
                    f"UPDATE recurring_rules SET {', '.join(assignments)} WHERE user_id = ? AND rule_id = ?",
                    [*params, user_id, rule_id],
                )
        return merged

    def deactivate_rule(self, user_id: str, rule_id: str) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE recurring_rules SET is_active = 0 WHERE user_id = ? AND rule_id = ?",
                (user_id, rule_id),
            )
        return cursor.rowcount > 0

    def list_due_rules(self, today: date) -> list[RecurrenceRule]:
        iso_today = today.isoformat()
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_RULE_COLUMNS} FROM recurring_rules "
                "WHERE is_active = 1 AND next_due_date <= ? AND (end_date IS NULL OR end_date >= ?) "
                "ORDER BY next_due_date, rule_id",
                (iso_today, iso_today),
            ).fetchall()
        return [_rule_from_row(row) for row in rows]

    def materialize_rule(
        self,
        rule: RecurrenceRule,
        transaction: Transaction,
        next_due_date: date,
        processed_at: datetime,
    ) -> bool:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "UPDATE recurring_rules SET next_due_date = ?, last_processed = ? "
                    "WHERE rule_id = ? AND next_due_date = ? AND is_active = 1",
                    (
                        next_due_date.isoformat(),
                        processed_at.isoformat(),
                        rule.rule_id,
                        rule.next_due_date.isoformat(),
                    ),
                )
                if cursor.rowcount != 1:
                    return False
                self._insert(_transaction_row(rule.user_id, transaction))
        except sqlite3.IntegrityError as exc:
            # The cursor update rolled back with the failed insert.
            raise ConflictError(f"Transaction {transaction.id} already exists") from exc
        self._notify(rule.user_id, "insert")
        return True
