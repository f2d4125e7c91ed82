from slowapi import Limiter
from slowapi.util import get_remote_address

from finance_tracker.core import settings

AUTH_LIMIT_MESSAGE = "Too many authentication attempts, please try again later."
GENERAL_LIMIT_MESSAGE = "Too many requests, please try again later."

# Per client address. The application limit covers every route; register and
# login additionally share one small budget.
limiter = Limiter(
    key_func=get_remote_address,
    application_limits=[settings.GENERAL_RATE_LIMIT],
    storage_uri="memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)

auth_limit = limiter.shared_limit(settings.AUTH_RATE_LIMIT, scope="auth", error_message=AUTH_LIMIT_MESSAGE)
