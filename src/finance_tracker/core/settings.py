import os

from dotenv import find_dotenv, load_dotenv

from finance_tracker.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}
_EXTERNAL_ENV_KEYS: set[str] = set()

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "ENVIRONMENT",
    "DATABASE_PATH",
    "TOKEN_TTL_DAYS",
    "BCRYPT_ROUNDS",
    "RECURRING_ENABLED",
    "RECURRING_INTERVAL_SECONDS",
    "SSE_HEARTBEAT_SECONDS",
    "BULK_REPLACE_LIMIT",
    "RATE_LIMIT_ENABLED",
    "AUTH_RATE_LIMIT",
    "GENERAL_RATE_LIMIT",
    "HOST",
    "PORT",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) >= 2 and raw_value[0] == raw_value[-1] and raw_value[0] in {'"', "'"}:
        return raw_value[1:-1]
    return raw_value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read a flat ``KEY: value`` file. Nested YAML is not supported."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            raw_value = raw_value.split(" #", 1)[0].strip()
            if key and raw_value:
                values[key] = _unquote_value(raw_value)
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES
    global _EXTERNAL_ENV_KEYS

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _EXTERNAL_ENV_KEYS = set(os.environ.keys())

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def is_env_override(name: str) -> bool:
    return name in _EXTERNAL_ENV_KEYS


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def ensure_dirs(*paths: str | None) -> None:
    for path in paths:
        ensure_dir(path)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(name: str, default: float = 0.0, min_value: float | None = None) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("[ENV] %s='%s' below minimum %s, using default %s.", name, raw, min_value, default)
        return default
    return value


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
    return default


def is_production() -> bool:
    return os.getenv("ENVIRONMENT", "development").strip().lower() == "production"


_SENSITIVE_ENV_KEYS = (
    "KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "PASS",
    "AUTH",
    "BEARER",
    "PRIVATE",
)

_ENV_KEYS_TO_LOG = (
    "LOG_LEVEL",
    "ENVIRONMENT",
    "DATA_DIR",
    "DATABASE_PATH",
    "TOKEN_TTL_DAYS",
    "RECURRING_ENABLED",
    "RECURRING_INTERVAL_SECONDS",
    "SSE_HEARTBEAT_SECONDS",
    "BULK_REPLACE_LIMIT",
    "RATE_LIMIT_ENABLED",
    "AUTH_RATE_LIMIT",
    "GENERAL_RATE_LIMIT",
)


def _should_mask_env_value(name: str, value: str) -> bool:
    upper_name = name.upper()
    if any(marker in upper_name for marker in _SENSITIVE_ENV_KEYS):
        return True
    if value.startswith("Bearer ") or value.startswith("bearer "):
        return True
    return False


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    if not _should_mask_env_value(name, sanitized):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _ENV_KEYS_TO_LOG:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


# SSE headers to reduce proxy buffering and keep connections alive.
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DEFAULT_TOKEN_TTL_DAYS = 7
DEFAULT_BCRYPT_ROUNDS = 12
DEFAULT_RECURRING_INTERVAL_SECONDS = 3600
DEFAULT_SSE_HEARTBEAT_SECONDS = 30.0
DEFAULT_BULK_REPLACE_LIMIT = 1000
DEFAULT_AUTH_RATE_LIMIT = "5/15minutes"
DEFAULT_GENERAL_RATE_LIMIT = "100/15minutes"


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dirs(DATA_DIR, LOG_DIR, CONFIG_DIR)

# An explicitly empty DATABASE_PATH selects the in-memory store.
DATABASE_PATH = os.getenv("DATABASE_PATH", os.path.join(DATA_DIR, "finance.db"))

TOKEN_TTL_DAYS = get_env_int("TOKEN_TTL_DAYS", DEFAULT_TOKEN_TTL_DAYS, min_value=1)
BCRYPT_ROUNDS = get_env_int("BCRYPT_ROUNDS", DEFAULT_BCRYPT_ROUNDS, min_value=4)

RECURRING_ENABLED = get_env_bool("RECURRING_ENABLED", True)
RECURRING_INTERVAL_SECONDS = get_env_int(
    "RECURRING_INTERVAL_SECONDS",
    DEFAULT_RECURRING_INTERVAL_SECONDS,
    min_value=1,
)

SSE_HEARTBEAT_SECONDS = get_env_float(
    "SSE_HEARTBEAT_SECONDS",
    DEFAULT_SSE_HEARTBEAT_SECONDS,
    min_value=0.1,
)

BULK_REPLACE_LIMIT = get_env_int("BULK_REPLACE_LIMIT", DEFAULT_BULK_REPLACE_LIMIT, min_value=1)

RATE_LIMIT_ENABLED = get_env_bool("RATE_LIMIT_ENABLED", True)
# slowapi/limits notation, e.g. "5/15minutes".
AUTH_RATE_LIMIT = os.getenv("AUTH_RATE_LIMIT", DEFAULT_AUTH_RATE_LIMIT)
GENERAL_RATE_LIMIT = os.getenv("GENERAL_RATE_LIMIT", DEFAULT_GENERAL_RATE_LIMIT)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = get_env_int("PORT", 3000, min_value=1)
