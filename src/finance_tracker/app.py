from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from time import perf_counter

from fastapi import FastAPI, Request, Response
from slowapi.middleware import SlowAPIMiddleware

from finance_tracker.api.errors import register_exception_handlers
from finance_tracker.api.limits import limiter
from finance_tracker.api.routes import auth, events, meta, recurring, transactions, user
from finance_tracker.core import settings
from finance_tracker.domain.timefmt import format_duration, utcnow
from finance_tracker.errors import StoreUnavailable
from finance_tracker.logger import get_logger, setup_logging
from finance_tracker.services.auth import AuthService
from finance_tracker.services.notifier import ChangeNotifier
from finance_tracker.services.recurrence import RecurrenceEngine, RecurrenceScheduler
from finance_tracker.storage.base import RecordStore
from finance_tracker.storage.memory import MemoryStore
from finance_tracker.storage.sqlite import SqliteStore

logger = get_logger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}


def open_store() -> RecordStore:
    """Open the configured store. Fatal in production, in-memory fallback otherwise."""
    if not settings.DATABASE_PATH:
        logger.warning("[STORE] DATABASE_PATH is empty; using the in-memory store.")
        return MemoryStore()
    try:
        return SqliteStore(settings.DATABASE_PATH)
    except StoreUnavailable as exc:
        if settings.is_production():
            raise
        logger.error("[STORE] %s Falling back to the in-memory store.", exc.message)
        return MemoryStore()


def create_app(
    store: RecordStore | None = None,
    clock: Callable[[], datetime] | None = None,
    run_scheduler: bool | None = None,
    heartbeat_seconds: float | None = None,
) -> FastAPI:
    setup_logging()
    clock = clock or utcnow
    if run_scheduler is None:
        run_scheduler = settings.RECURRING_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        owns_store = store is None
        record_store = store if store is not None else open_store()
        notifier = ChangeNotifier()
        record_store.add_listener(notifier.publish)

        engine = RecurrenceEngine(record_store)
        scheduler = RecurrenceScheduler(engine, settings.RECURRING_INTERVAL_SECONDS, clock=clock)

        app.state.store = record_store
        app.state.notifier = notifier
        app.state.auth = AuthService(
            record_store,
            token_ttl=timedelta(days=settings.TOKEN_TTL_DAYS),
            bcrypt_rounds=settings.BCRYPT_ROUNDS,
            clock=clock,
        )
        app.state.engine = engine
        app.state.scheduler = scheduler
        app.state.heartbeat_seconds = heartbeat_seconds or settings.SSE_HEARTBEAT_SECONDS
        limiter.reset()

        if run_scheduler:
            scheduler.start()
        else:
            logger.info("[RECURRING] Scheduler disabled.")

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        await scheduler.stop()
        if owns_store:
            record_store.close()

    app = FastAPI(title="Finance Tracker", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    register_exception_handlers(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable) -> Response:
        start = perf_counter()
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        logger.debug(
            "%s %s -> %s (%s)",
            request.method,
            request.url.path,
            response.status_code,
            format_duration(perf_counter() - start),
        )
        return response

    app.include_router(auth.router)
    app.include_router(transactions.router)
    app.include_router(recurring.router)
    app.include_router(events.router)
    app.include_router(user.router)
    app.include_router(meta.router)

    return app


app = create_app()
