import asyncio
import os
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from finance_tracker.errors import AuthError, TransportError, error_for_code
from finance_tracker.logger import get_logger
from finance_tracker.models import RecurrenceRule, Session, Transaction

logger = get_logger(__name__)

DEFAULT_API_URL = "http://localhost:3000/api"
DEFAULT_TIMEOUT_SECONDS = 30.0
FETCH_PAGE_SIZE = 100


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(body, dict):
        return str(body.get("error") or response.reason_phrase), body.get("code")
    return response.reason_phrase, None


class ApiClient:
    """Async client for the finance tracker HTTP API.

    Non-2xx responses are raised as the matching ``FinanceTrackerError``
    subclass; network failures and timeouts become ``TransportError``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.base_url = (base_url or os.getenv("FINANCE_API_URL") or DEFAULT_API_URL).rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client
        self._client_lock = asyncio.Lock()

    def set_token(self, token: str | None) -> None:
        self.token = token

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self.timeout)
                self._client = client
            return client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> Any:
        if authenticated and not self.token:
            raise AuthError("Access token required")
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}{path}",
                headers=self.headers,
                json=json,
                params=params,
            )
        except httpx.HTTPError as exc:
            logger.warning("[API] %s %s failed: %s", method, path, exc)
            raise TransportError(f"Network error: {exc}") from exc

        if response.is_success:
            return response.json() if response.content else {}

        message, code = _error_message(response)
        error_cls = error_for_code(code, response.status_code)
        logger.debug("[API] %s %s -> %s %s", method, path, response.status_code, message)
        raise error_cls(message, status_code=response.status_code)

    # Auth

    async def register(self, email: str, password: str, default_currency: str | None = None) -> Session:
        payload: dict[str, Any] = {"email": email, "password": password}
        if default_currency:
            payload["defaultCurrency"] = default_currency
        data = await self._request("POST", "/auth/register", json=payload, authenticated=False)
        return Session.model_validate(data)

    async def login(self, email: str, password: str) -> Session:
        data = await self._request(
            "POST",
            "/auth/login",
            json={"email": email, "password": password},
            authenticated=False,
        )
        return Session.model_validate(data)

    async def update_preferences(self, default_currency: str) -> dict[str, Any]:
        return await self._request("PATCH", "/user/preferences", json={"defaultCurrency": default_currency})

    async def profile(self) -> dict[str, Any]:
        return await self._request("GET", "/user/profile")

    # Transactions

    async def list_transactions(self, page: int = 1, limit: int = FETCH_PAGE_SIZE, **filters: Any) -> dict[str, Any]:
        params = {"page": page, "limit": limit}
        params.update({key: value for key, value in filters.items() if value is not None})
        data = await self._request("GET", "/transactions", params=params)
        data["transactions"] = [Transaction.model_validate(item) for item in data.get("transactions", [])]
        return data

    async def yield_transactions(self, limit_per_page: int = FETCH_PAGE_SIZE) -> AsyncGenerator[list[Transaction], None]:
        page = 1
        while True:
            data = await self.list_transactions(page=page, limit=limit_per_page)
            transactions = data["transactions"]
            if transactions:
                yield transactions
            pages = data.get("pagination", {}).get("pages", 1)
            if not transactions or page >= pages:
                break
            page += 1

    async def fetch_all_transactions(self, limit_per_page: int = FETCH_PAGE_SIZE) -> list[Transaction]:
        transactions: list[Transaction] = []
        async for page in self.yield_transactions(limit_per_page=limit_per_page):
            transactions.extend(page)
        return transactions

    async def replace_transactions(self, transactions: list[Transaction]) -> int:
        data = await self._request(
            "POST",
            "/transactions",
            json={"transactions": [tx.to_wire() for tx in transactions]},
        )
        return int(data.get("count", 0))

    async def add_transaction(self, transaction: Transaction) -> str:
        data = await self._request("POST", "/transactions/add", json=transaction.to_wire())
        return str(data.get("transactionId", transaction.id))

    async def delete_transaction(self, transaction_id: str) -> None:
        await self._request("DELETE", f"/transactions/{transaction_id}")

    async def stats(self) -> dict[str, Any]:
        return await self._request("GET", "/transactions/stats")

    # Recurring rules

    async def list_recurring(self) -> list[RecurrenceRule]:
        data = await self._request("GET", "/recurring-transactions")
        return [RecurrenceRule.model_validate(item) for item in data.get("recurringTransactions", [])]

    async def create_recurring(self, payload: dict[str, Any]) -> RecurrenceRule:
        data = await self._request("POST", "/recurring-transactions", json=payload)
        return RecurrenceRule.model_validate(data["recurringTransaction"])

    async def update_recurring(self, rule_id: str, changes: dict[str, Any]) -> RecurrenceRule:
        data = await self._request("PUT", f"/recurring-transactions/{rule_id}", json=changes)
        return RecurrenceRule.model_validate(data["recurringTransaction"])

    async def delete_recurring(self, rule_id: str) -> None:
        await self._request("DELETE", f"/recurring-transactions/{rule_id}")

    # Metadata

    async def currencies(self) -> list[dict[str, str]]:
        data = await self._request("GET", "/currencies", authenticated=False)
        return data.get("currencies", [])

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health", authenticated=False)

    def stream_url(self, user_id: str) -> str:
        return f"{self.base_url}/sse/{user_id}"
