import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from finance_tracker.errors import TransportError
from finance_tracker.logger import get_logger

logger = get_logger(__name__)

TRANSACTION_UPDATE = "transaction_update"
HEARTBEAT = "heartbeat"
ERROR = "error"
CONNECTED = "connected"

# The server sends a heartbeat every 30 s; silence longer than this is a dead channel.
DEFAULT_READ_TIMEOUT_SECONDS = 75.0


class ChannelError(TransportError):
    """The push channel failed to open, dropped, or went silent."""


@dataclass(frozen=True)
class ChannelEvent:
    type: str
    user_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_change(self) -> bool:
        return self.type == TRANSACTION_UPDATE

    @property
    def is_heartbeat(self) -> bool:
        return self.type == HEARTBEAT

    @classmethod
    def parse(cls, data: str) -> "ChannelEvent":
        """Parse one ``data:`` payload. Non-JSON payloads are greetings."""
        try:
            payload = json.loads(data)
        except ValueError:
            return cls(type=CONNECTED, payload={"message": data})
        if not isinstance(payload, dict):
            return cls(type=CONNECTED, payload={"message": data})
        user_id = payload.get("userId")
        return cls(
            type=str(payload.get("type") or CONNECTED),
            user_id=str(user_id) if user_id is not None else None,
            payload=payload,
        )


class PushChannel(Protocol):
    """One open push connection. Iterating yields events until it fails."""

    def events(self) -> AsyncIterator[ChannelEvent]: ...

    async def close(self) -> None: ...


class SSEChannel:
    """Server-sent events over a streaming httpx request."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        read_timeout: float = DEFAULT_READ_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.token = token
        self.read_timeout = read_timeout
        self._client = client
        self._owns_client = client is None
        self._closed = False

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def events(self) -> AsyncIterator[ChannelEvent]:
        if self._client is None:
            self._client = httpx.AsyncClient()
        timeout = httpx.Timeout(10.0, read=self.read_timeout)
        try:
            async with self._client.stream("GET", self.url, headers=self.headers, timeout=timeout) as response:
                if response.status_code != 200:
                    raise ChannelError(f"Push channel rejected with HTTP {response.status_code}")
                async for line in response.aiter_lines():
                    if self._closed:
                        return
                    if not line.startswith("data:"):
                        continue
                    yield ChannelEvent.parse(line[len("data:"):].strip())
        except httpx.HTTPError as exc:
            raise ChannelError(f"Push channel failed: {exc}") from exc

    async def close(self) -> None:
        self._closed = True
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
