import json
import os
import tempfile
import threading
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from finance_tracker.logger import get_logger
from finance_tracker.models import Session, Transaction

logger = get_logger(__name__)

TRANSACTIONS_KEY = "financeTransactions"
SESSION_KEY = "financeUser"
DEFAULT_FILENAME = "finance-local.json"


class LocalStore:
    """Durable key-value area for the client, kept in a single JSON file.

    Writes go through a temp file and ``os.replace`` so a crash never leaves
    a half-written file behind.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def in_dir(cls, data_dir: str, filename: str = DEFAULT_FILENAME) -> "LocalStore":
        return cls(os.path.join(data_dir, filename))

    def _read(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("[STORAGE] Could not read %s: %s. Starting empty.", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("[STORAGE] Unexpected content in %s. Starting empty.", self.path)
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".finance-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _update(self, key: str, value: Any | None) -> None:
        with self._lock:
            data = self._read()
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._write(data)

    def load_transactions(self) -> list[Transaction] | None:
        """Return the persisted set, or None when nothing was ever persisted."""
        with self._lock:
            raw = self._read().get(TRANSACTIONS_KEY)
        if raw is None:
            return None
        if not isinstance(raw, list):
            logger.warning("[STORAGE] Ignoring malformed %s entry.", TRANSACTIONS_KEY)
            return None

        transactions = []
        for item in raw:
            try:
                transactions.append(Transaction.model_validate(item))
            except PydanticValidationError as exc:
                logger.warning("[STORAGE] Skipping invalid stored transaction: %s", exc.errors()[0].get("msg"))
        return transactions

    def save_transactions(self, transactions: list[Transaction]) -> None:
        self._update(TRANSACTIONS_KEY, [tx.to_wire() for tx in transactions])

    def clear_transactions(self) -> None:
        self._update(TRANSACTIONS_KEY, None)

    def load_session(self) -> Session | None:
        with self._lock:
            raw = self._read().get(SESSION_KEY)
        if not raw:
            return None
        try:
            return Session.model_validate(raw)
        except PydanticValidationError:
            logger.warning("[STORAGE] Ignoring malformed %s entry.", SESSION_KEY)
            return None

    def save_session(self, session: Session) -> None:
        self._update(SESSION_KEY, session.to_wire())

    def clear_session(self) -> None:
        self._update(SESSION_KEY, None)
