from typing import Annotated

from fastapi import Header, HTTPException, Query, Request

from finance_tracker.errors import AuthError
from finance_tracker.models import Identity
from finance_tracker.services.auth import AuthService
from finance_tracker.services.notifier import ChangeNotifier
from finance_tracker.services.recurrence import RecurrenceEngine, RecurrenceScheduler
from finance_tracker.storage.base import RecordStore


def get_store(request: Request) -> RecordStore:
    store = getattr(request.app.state, "store", None)
    if not store:
        raise HTTPException(status_code=500, detail="Store not initialized")
    return store


def get_notifier(request: Request) -> ChangeNotifier:
    notifier = getattr(request.app.state, "notifier", None)
    if not notifier:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return notifier


def get_auth(request: Request) -> AuthService:
    auth = getattr(request.app.state, "auth", None)
    if not auth:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return auth


def get_engine(request: Request) -> RecurrenceEngine:
    engine = getattr(request.app.state, "engine", None)
    if not engine:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return engine


def get_scheduler_optional(request: Request) -> RecurrenceScheduler | None:
    return getattr(request.app.state, "scheduler", None)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_identity(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> Identity:
    return get_auth(request).verify(_bearer_token(authorization))


def get_stream_identity(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    token: Annotated[str | None, Query()] = None,
) -> Identity:
    """Like ``get_identity`` but also accepts ``?token=`` for EventSource clients."""
    bearer = _bearer_token(authorization) or token
    if not bearer:
        raise AuthError("Access token required")
    return get_auth(request).verify(bearer)
