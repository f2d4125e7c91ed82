from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from finance_tracker.api.dependencies import get_notifier, get_stream_identity
from finance_tracker.core import settings
from finance_tracker.errors import AuthError
from finance_tracker.models import Identity
from finance_tracker.services.notifier import ChangeNotifier, stream_events

router = APIRouter()


@router.get("/api/sse/{user_id}")
async def transaction_events(
    user_id: str,
    request: Request,
    identity: Annotated[Identity, Depends(get_stream_identity)],
    notifier: Annotated[ChangeNotifier, Depends(get_notifier)],
) -> StreamingResponse:
    if identity.user_id != user_id:
        raise AuthError("Cannot subscribe to another user's changes", status_code=403)

    subscription = notifier.subscribe(user_id)
    heartbeat_seconds = getattr(request.app.state, "heartbeat_seconds", settings.SSE_HEARTBEAT_SECONDS)
    return StreamingResponse(
        stream_events(
            subscription,
            heartbeat_seconds=heartbeat_seconds,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=settings.SSE_HEADERS,
    )
