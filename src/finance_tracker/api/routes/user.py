from typing import Annotated, Any

from fastapi import APIRouter, Depends

from finance_tracker.api.dependencies import get_identity, get_store
from finance_tracker.api.schemas import PreferencesUpdate
from finance_tracker.errors import NotFoundError
from finance_tracker.models import Identity, User
from finance_tracker.storage.base import RecordStore

router = APIRouter()


def _profile(user: User) -> dict[str, Any]:
    return {
        "id": user.user_id,
        "email": user.email,
        "defaultCurrency": user.default_currency,
        "createdAt": user.created_at.isoformat(),
    }


@router.get("/api/user/profile")
async def profile(
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    user = store.get_user(identity.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return _profile(user)


@router.patch("/api/user/preferences")
async def update_preferences(
    payload: PreferencesUpdate,
    identity: Annotated[Identity, Depends(get_identity)],
    store: Annotated[RecordStore, Depends(get_store)],
) -> dict[str, Any]:
    user = store.get_user(identity.user_id)
    if user is not None and payload.default_currency:
        user = store.update_user_currency(identity.user_id, payload.default_currency)
    if user is None:
        raise NotFoundError("User not found")
    return {"message": "Preferences updated successfully", "user": _profile(user)}
