import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt

from finance_tracker.domain.currencies import DEFAULT_CURRENCY, is_supported
from finance_tracker.domain.timefmt import utcnow
from finance_tracker.errors import AuthError, ValidationError
from finance_tracker.logger import get_logger
from finance_tracker.models import Identity, User
from finance_tracker.storage.base import RecordStore

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class AuthResult:
    user: User
    token: str

    def to_payload(self, message: str) -> dict[str, str]:
        return {
            "message": message,
            "email": self.user.email,
            "token": self.token,
            "userId": self.user.user_id,
            "defaultCurrency": self.user.default_currency,
        }


class AuthService:
    """Issues and verifies opaque bearer tokens.

    Tokens are random strings persisted in the record store with an expiry.
    An expired token is reported as 401, an unknown one as 403.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        token_ttl: timedelta = timedelta(days=7),
        bcrypt_rounds: int = 12,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.token_ttl = token_ttl
        self.bcrypt_rounds = bcrypt_rounds
        self.clock = clock

    def hash_password(self, password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("utf-8")

    @staticmethod
    def check_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    def _issue_token(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        self.store.save_token(token, user.user_id, self.clock() + self.token_ttl)
        return token

    def register(self, email: str, password: str, default_currency: str | None = None) -> AuthResult:
        if not email or not password:
            raise ValidationError("Email and password are required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        email = email.strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Please provide a valid email address")
        currency = default_currency or DEFAULT_CURRENCY
        if not is_supported(currency):
            raise ValidationError("Unsupported currency")

        user = self.store.create_user(email, self.hash_password(password), currency)
        logger.info("[AUTH] Registered user %s.", user.user_id)
        return AuthResult(user=user, token=self._issue_token(user))

    def login(self, email: str, password: str) -> AuthResult:
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = self.store.get_user_by_email(email.strip().lower())
        if user is None or not self.check_password(password, user.password_hash):
            logger.info("[AUTH] Rejected login attempt.")
            raise AuthError("Invalid email or password")
        return AuthResult(user=user, token=self._issue_token(user))

    def verify(self, token: str | None) -> Identity:
        if not token:
            raise AuthError("Access token required")
        record = self.store.get_token(token)
        if record is None:
            raise AuthError("Invalid token", status_code=403)
        user_id, expires_at = record
        if expires_at <= self.clock():
            raise AuthError("Token expired")
        user = self.store.get_user(user_id)
        if user is None:
            raise AuthError("Invalid token", status_code=403)
        return Identity(user_id=user.user_id, email=user.email)
