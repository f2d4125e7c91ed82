import os
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from finance_tracker.api.dependencies import get_identity, get_scheduler_optional, get_store
from finance_tracker.core import settings
from finance_tracker.domain.currencies import describe_currencies
from finance_tracker.domain.timefmt import utcnow
from finance_tracker.errors import AuthError
from finance_tracker.logger import get_logger
from finance_tracker.models import Identity
from finance_tracker.services.recurrence import RecurrenceScheduler
from finance_tracker.storage.base import RecordStore

logger = get_logger(__name__)

router = APIRouter()


@router.get("/api/health")
async def health(
    store: Annotated[RecordStore, Depends(get_store)],
    scheduler: Annotated[RecurrenceScheduler | None, Depends(get_scheduler_optional)],
) -> dict[str, Any]:
    scheduler_status = "Disabled"
    if scheduler is not None:
        scheduler_status = "Active" if scheduler.running else "Idle"
    return {
        "status": "OK",
        "message": "Finance Tracker API is running",
        "timestamp": utcnow().isoformat(),
        "database": "Connected" if store.ping() else "Disconnected",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "scheduler": scheduler_status,
    }


@router.get("/api/currencies")
async def currencies() -> dict[str, Any]:
    return {"currencies": describe_currencies()}


@router.post("/api/admin/process-recurring")
async def process_recurring(
    identity: Annotated[Identity, Depends(get_identity)],
    scheduler: Annotated[RecurrenceScheduler | None, Depends(get_scheduler_optional)],
) -> dict[str, Any]:
    if settings.is_production():
        raise AuthError("Not available in production", status_code=403)
    if scheduler is None:
        raise AuthError("Recurring processing is disabled", status_code=403)

    logger.info("[RECURRING] Manual run requested by user %s.", identity.user_id)
    report = await scheduler.run_once()
    return {
        "message": "Recurring transactions processed",
        "result": {
            "processed": report.count,
            "failed": report.failed,
            "skipped": report.skipped,
            "rules": [item.model_dump(mode="json") for item in report.processed],
        },
    }
