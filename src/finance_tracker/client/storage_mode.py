from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from finance_tracker.client.api import ApiClient
from finance_tracker.client.channel import SSEChannel
from finance_tracker.client.local_store import LocalStore
from finance_tracker.client.sync import ReloadCallback, SyncOrchestrator
from finance_tracker.domain.currencies import DEFAULT_CURRENCY, is_supported
from finance_tracker.domain.stats import balance_for, totals_by_currency
from finance_tracker.errors import (
    AuthError,
    ConflictError,
    FinanceTrackerError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from finance_tracker.logger import get_logger
from finance_tracker.models import RecurrenceRule, Session, Transaction

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransientMode:
    """Transactions live only in memory."""

    name: ClassVar[str] = "transient"


@dataclass(frozen=True)
class LocalMode:
    """Transactions are mirrored to the local key-value file."""

    store: LocalStore
    name: ClassVar[str] = "local"


@dataclass(frozen=True)
class RemoteMode:
    """The server is authoritative; ``sync`` keeps this session current."""

    session: Session
    sync: SyncOrchestrator
    name: ClassVar[str] = "remote"


StorageMode = TransientMode | LocalMode | RemoteMode

SyncFactory = Callable[[Session, ReloadCallback], SyncOrchestrator]


def _newest_first(transactions: list[Transaction]) -> list[Transaction]:
    return sorted(transactions, key=lambda tx: tx.occurred_at, reverse=True)


class StorageModeMachine:
    """Decides where transactions live and migrates them when that changes.

    ``transient -> local -> remote``; logging out returns to ``local`` when a
    persisted set exists and to ``transient`` otherwise.
    """

    def __init__(
        self,
        api: ApiClient,
        local_store: LocalStore,
        sync_factory: SyncFactory | None = None,
    ):
        self.api = api
        self.local_store = local_store
        self.sync_factory = sync_factory or self._default_sync
        self.mode: StorageMode = TransientMode()
        self.transactions: list[Transaction] = []
        self.recurring_rules: list[RecurrenceRule] = []
        self.default_currency = DEFAULT_CURRENCY
        self._loads_in_flight = 0
        self.last_error: str | None = None
        self.auth_required = False

    def _default_sync(self, session: Session, reload: ReloadCallback) -> SyncOrchestrator:
        return SyncOrchestrator(
            session.user_id,
            lambda: SSEChannel(self.api.stream_url(session.user_id), token=session.token),
            reload,
        )

    @property
    def session(self) -> Session | None:
        if isinstance(self.mode, RemoteMode):
            return self.mode.session
        return None

    @property
    def loading(self) -> bool:
        """True while any load runs; notification reloads may overlap."""
        return self._loads_in_flight > 0

    @contextmanager
    def _tracking_load(self) -> Iterator[None]:
        self._loads_in_flight += 1
        try:
            yield
        finally:
            self._loads_in_flight -= 1

    def _guard(self) -> None:
        if self.loading:
            raise ValidationError("Please wait for the current operation to finish")

    # Transitions

    async def start(self) -> StorageMode:
        session = self.local_store.load_session()
        if session is not None:
            logger.info("[STORAGE] Restoring session for %s.", session.email)
            await self._enter_remote(session)
            return self.mode

        stored = self.local_store.load_transactions()
        if stored is not None:
            self.transactions = _newest_first(stored)
            self.mode = LocalMode(self.local_store)
        else:
            self.transactions = []
            self.mode = TransientMode()
        logger.info("[STORAGE] Started in %s mode with %d transaction(s).", self.mode.name, len(self.transactions))
        return self.mode

    def enable_local_persistence(self) -> StorageMode:
        if isinstance(self.mode, RemoteMode):
            raise ValidationError("Local persistence is not available while signed in")
        if isinstance(self.mode, TransientMode):
            self.local_store.save_transactions(self.transactions)
            self.mode = LocalMode(self.local_store)
            logger.info("[STORAGE] Local persistence enabled (%d transaction(s)).", len(self.transactions))
        return self.mode

    async def authenticate(
        self,
        email: str,
        password: str,
        *,
        register: bool = False,
        default_currency: str | None = None,
    ) -> StorageMode:
        self._guard()
        if isinstance(self.mode, RemoteMode):
            raise ValidationError("Already signed in")

        try:
            with self._tracking_load():
                if register:
                    session = await self.api.register(email, password, default_currency)
                else:
                    session = await self.api.login(email, password)
                self.api.set_token(session.token)

                if isinstance(self.mode, LocalMode) and self.transactions:
                    # Last write wins: remote writes made since the last sync are overwritten.
                    count = await self.api.replace_transactions(self.transactions)
                    self.local_store.clear_transactions()
                    logger.info("[STORAGE] Migrated %d local transaction(s) to the server.", count)
                self.local_store.save_session(session)
        except FinanceTrackerError:
            self.api.set_token(None)
            raise

        await self._enter_remote(session)
        return self.mode

    async def _enter_remote(self, session: Session) -> None:
        self.api.set_token(session.token)
        self.default_currency = session.default_currency
        self.auth_required = False
        sync = self.sync_factory(session, self.reload)
        self.mode = RemoteMode(session=session, sync=sync)
        await self.reload()
        if self.auth_required:
            return
        sync.start()
        logger.info("[STORAGE] Remote mode active for %s.", session.email)

    async def logout(self) -> StorageMode:
        if isinstance(self.mode, RemoteMode):
            await self.mode.sync.stop()
        self.local_store.clear_session()
        self.api.set_token(None)
        self.auth_required = False
        self.last_error = None
        self.recurring_rules = []
        self.default_currency = DEFAULT_CURRENCY

        stored = self.local_store.load_transactions()
        if stored is not None:
            self.transactions = _newest_first(stored)
            self.mode = LocalMode(self.local_store)
        else:
            self.transactions = []
            self.mode = TransientMode()
        logger.info("[STORAGE] Signed out; now in %s mode.", self.mode.name)
        return self.mode

    async def reload(self) -> list[Transaction]:
        """Refresh from the authoritative tier, keeping cached data on failure."""
        if isinstance(self.mode, LocalMode):
            self.transactions = _newest_first(self.local_store.load_transactions() or [])
            return self.transactions
        if not isinstance(self.mode, RemoteMode):
            return self.transactions

        try:
            with self._tracking_load():
                remote = await self.api.fetch_all_transactions()
        except AuthError as exc:
            self.auth_required = True
            self.last_error = exc.message
            logger.warning("[STORAGE] Session rejected by the server: %s", exc.message)
            # No push or polling until the user signs in again.
            if isinstance(self.mode, RemoteMode):
                await self.mode.sync.stop()
            return self.transactions
        except TransportError as exc:
            self.last_error = exc.message
            logger.warning("[STORAGE] Reload failed, keeping cached data: %s", exc.message)
            return self.transactions

        self.transactions = _newest_first(remote)
        self.last_error = None
        return self.transactions

    # Mutations

    def new_transaction(
        self,
        description: str,
        amount: Decimal | float | str,
        kind: str,
        category: str,
        *,
        currency: str | None = None,
        occurred_at: date | None = None,
        tags: list[str] | None = None,
        notes: str = "",
    ) -> Transaction:
        try:
            return Transaction(
                id=str(uuid4()),
                description=description,
                amount=amount,
                kind=kind,
                category=category,
                occurred_at=occurred_at or date.today(),
                currency=currency or self.default_currency,
                tags=tags or [],
                notes=notes,
            )
        except PydanticValidationError as exc:
            raise ValidationError(str(exc.errors()[0].get("msg", "Invalid transaction"))) from exc

    async def add_transaction(self, transaction: Transaction) -> Transaction:
        self._guard()
        if any(existing.id == transaction.id for existing in self.transactions):
            raise ConflictError("Transaction with this ID already exists")

        if isinstance(self.mode, RemoteMode):
            await self.api.add_transaction(transaction)
        updated = _newest_first([transaction, *self.transactions])
        if isinstance(self.mode, LocalMode):
            self.local_store.save_transactions(updated)
        self.transactions = updated
        return transaction

    async def delete_transaction(self, transaction_id: str) -> None:
        self._guard()
        if isinstance(self.mode, RemoteMode):
            await self.api.delete_transaction(transaction_id)
        elif not any(tx.id == transaction_id for tx in self.transactions):
            raise NotFoundError("Transaction not found")

        updated = [tx for tx in self.transactions if tx.id != transaction_id]
        if isinstance(self.mode, LocalMode):
            self.local_store.save_transactions(updated)
        self.transactions = updated

    # Aggregates

    def totals_by_currency(self) -> dict[str, dict[str, Decimal]]:
        return totals_by_currency(self.transactions)

    def balance(self, currency: str | None = None) -> Decimal:
        return balance_for(self.transactions, currency or self.default_currency)

    # Recurring rules and preferences (remote only)

    def _require_remote(self) -> RemoteMode:
        if not isinstance(self.mode, RemoteMode):
            raise AuthError("Sign in to use this feature")
        return self.mode

    async def load_recurring_rules(self) -> list[RecurrenceRule]:
        self._require_remote()
        self.recurring_rules = await self.api.list_recurring()
        return self.recurring_rules

    async def add_recurring_rule(self, payload: dict[str, Any]) -> RecurrenceRule:
        self._require_remote()
        self._guard()
        rule = await self.api.create_recurring(payload)
        self.recurring_rules = [rule, *self.recurring_rules]
        return rule

    async def delete_recurring_rule(self, rule_id: str) -> None:
        self._require_remote()
        self._guard()
        await self.api.delete_recurring(rule_id)
        self.recurring_rules = [rule for rule in self.recurring_rules if rule.rule_id != rule_id]

    async def update_default_currency(self, currency: str) -> str:
        if not is_supported(currency):
            raise ValidationError("Unsupported currency")
        if isinstance(self.mode, RemoteMode):
            await self.api.update_preferences(currency)
            session = self.mode.session.model_copy(update={"default_currency": currency})
            self.local_store.save_session(session)
            self.mode = RemoteMode(session=session, sync=self.mode.sync)
        self.default_currency = currency
        return currency

    async def aclose(self) -> None:
        if isinstance(self.mode, RemoteMode):
            await self.mode.sync.stop()
        await self.api.aclose()
