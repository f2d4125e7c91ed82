from collections.abc import Callable
from datetime import date

import httpx
import pytest

from conftest import make_transaction
from finance_tracker.app import create_app
from finance_tracker.client.api import ApiClient
from finance_tracker.core import settings
from finance_tracker.errors import AuthError, ConflictError, NotFoundError, TransportError
from finance_tracker.storage.memory import MemoryStore

BASE_URL = "http://testserver/api"


def _client(handler: Callable[[httpx.Request], httpx.Response], token: str | None = "tok") -> ApiClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ApiClient(base_url=BASE_URL, token=token, client=http)


@pytest.mark.anyio
async def test_token_required_before_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    api = _client(handler, token=None)

    with pytest.raises(AuthError, match="Access token required"):
        await api.stats()
    assert calls == []
    await api.aclose()


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (400, {"error": "Transaction with this ID already exists", "code": "conflict"}, ConflictError),
        (403, {"error": "Invalid token"}, AuthError),
        (404, {"error": "Transaction not found", "code": "not_found"}, NotFoundError),
        (502, None, TransportError),
    ],
)
async def test_error_responses_map_to_exceptions(status: int, body: dict | None, expected: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if body is None:
            return httpx.Response(status, text="Bad Gateway")
        return httpx.Response(status, json=body)

    api = _client(handler)

    with pytest.raises(expected) as exc_info:
        await api.delete_transaction("t1")
    assert exc_info.value.status_code == status
    if body is not None:
        assert exc_info.value.message == body["error"]
    await api.aclose()


@pytest.mark.anyio
async def test_network_error_becomes_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    api = _client(handler)

    with pytest.raises(TransportError, match="Network error"):
        await api.health()
    await api.aclose()


@pytest.mark.anyio
async def test_fetch_all_transactions_walks_pages() -> None:
    pages = {
        "1": [make_transaction("t3", occurred_at=date(2024, 1, 3)).to_wire()],
        "2": [make_transaction("t2", occurred_at=date(2024, 1, 2)).to_wire()],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer tok"
        page = request.url.params["page"]
        return httpx.Response(
            200,
            json={"transactions": pages[page], "pagination": {"page": int(page), "limit": 1, "total": 2, "pages": 2}},
        )

    api = _client(handler)

    transactions = await api.fetch_all_transactions(limit_per_page=1)

    assert [tx.id for tx in transactions] == ["t3", "t2"]
    await api.aclose()


def test_base_url_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FINANCE_API_URL", "https://finance.example.com/api/")

    api = ApiClient()

    assert api.base_url == "https://finance.example.com/api"
    assert api.stream_url("u1") == "https://finance.example.com/api/sse/u1"


@pytest.mark.anyio
async def test_round_trip_against_the_app(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "BCRYPT_ROUNDS", 4)
    app = create_app(store=MemoryStore(), run_scheduler=False)

    async with app.router.lifespan_context(app):
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
        api = ApiClient(base_url=BASE_URL, client=http)

        session = await api.register("jane@example.com", "secret1", "EUR")
        api.set_token(session.token)
        assert session.default_currency == "EUR"

        await api.add_transaction(make_transaction("t1"))
        with pytest.raises(ConflictError):
            await api.add_transaction(make_transaction("t1"))
        assert await api.replace_transactions([make_transaction("a"), make_transaction("b")]) == 2

        transactions = await api.fetch_all_transactions()
        assert sorted(tx.id for tx in transactions) == ["a", "b"]

        rule = await api.create_recurring(
            {
                "description": "Rent",
                "amount": 1200,
                "type": "expense",
                "category": "Housing",
                "frequency": "monthly",
                "startDate": "2024-01-01",
            }
        )
        assert rule.next_due_date == date(2024, 2, 1)
        assert [item.rule_id for item in await api.list_recurring()] == [rule.rule_id]

        with pytest.raises(NotFoundError):
            await api.delete_transaction("missing")
        await api.aclose()
