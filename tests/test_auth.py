from datetime import datetime, timedelta, timezone

import pytest

from finance_tracker.errors import AuthError, ConflictError, ValidationError
from finance_tracker.services.auth import AuthService
from finance_tracker.storage.memory import MemoryStore


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def auth(clock: FakeClock) -> AuthService:
    return AuthService(MemoryStore(), bcrypt_rounds=4, clock=clock)


def test_register_and_verify(auth: AuthService) -> None:
    result = auth.register("  Jane@Example.com ", "secret1", "EUR")

    assert result.user.email == "jane@example.com"
    assert result.user.default_currency == "EUR"
    assert result.user.password_hash != "secret1"

    identity = auth.verify(result.token)
    assert identity.user_id == result.user.user_id
    assert identity.email == "jane@example.com"

    payload = result.to_payload("User created successfully")
    assert payload["userId"] == result.user.user_id
    assert payload["defaultCurrency"] == "EUR"


@pytest.mark.parametrize(
    ("email", "password", "currency", "message"),
    [
        ("", "secret1", None, "Email and password are required"),
        ("a@example.com", "12345", None, "at least 6 characters"),
        ("not-an-email", "secret1", None, "valid email"),
        ("a@example.com", "secret1", "XYZ", "Unsupported currency"),
    ],
)
def test_register_validation(auth: AuthService, email: str, password: str, currency: str | None, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        auth.register(email, password, currency)


def test_register_duplicate_email(auth: AuthService) -> None:
    auth.register("a@example.com", "secret1")

    with pytest.raises(ConflictError):
        auth.register("A@example.com", "secret2")


def test_login(auth: AuthService) -> None:
    registered = auth.register("a@example.com", "secret1")

    result = auth.login("A@Example.com", "secret1")

    assert result.user.user_id == registered.user.user_id
    assert result.token != registered.token


@pytest.mark.parametrize(("email", "password"), [("a@example.com", "wrong-pass"), ("b@example.com", "secret1")])
def test_login_rejects_bad_credentials(auth: AuthService, email: str, password: str) -> None:
    auth.register("a@example.com", "secret1")

    with pytest.raises(AuthError, match="Invalid email or password") as exc_info:
        auth.login(email, password)
    assert exc_info.value.status_code == 401


def test_verify_missing_unknown_and_expired(auth: AuthService, clock: FakeClock) -> None:
    token = auth.register("a@example.com", "secret1").token

    with pytest.raises(AuthError) as missing:
        auth.verify(None)
    assert missing.value.status_code == 401

    with pytest.raises(AuthError) as unknown:
        auth.verify("not-a-token")
    assert unknown.value.status_code == 403

    clock.now += timedelta(days=7, seconds=1)
    with pytest.raises(AuthError, match="Token expired") as expired:
        auth.verify(token)
    assert expired.value.status_code == 401
