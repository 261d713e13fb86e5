from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal
from urllib.parse import quote

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_DEV_SESSION_SECRET = "dev-only-session-secret-change-me"


def _getenv(name: str, default: str) -> str:
    # Centralize env access so every value is typed right here, at the boundary
    return os.environ.get(name, default).strip()


def _getenv_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive (got {value})")
    return value


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be true|false (got {raw!r})")


def _redis_url() -> str | None:
    url = _getenv("REDIS_URL", "")
    if url:
        return url
    # Host:port form for deployments that hand out address and password separately
    addr = _getenv("REDIS_ADDR", "")
    if not addr:
        return None
    password = _getenv("REDIS_PASSWORD", "")
    auth = f":{quote(password, safe='')}@" if password else ""
    return f"redis://{auth}{addr}"


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    redis_url: str | None
    redis_timeout_seconds: float = 2.0
    redis_max_connections: int = 20
    rate_limit_enabled: bool = True
    trust_forwarded_for: bool = True
    login_lockout_threshold: int = 5
    login_lockout_window_seconds: int = 900
    session_secret: str = _DEV_SESSION_SECRET

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    session_secret = _getenv("SESSION_SECRET", "") or _DEV_SESSION_SECRET
    if app_env_raw == "prod" and session_secret == _DEV_SESSION_SECRET:
        raise ValueError("SESSION_SECRET must be set when APP_ENV=prod")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getenv_bool("LOG_JSON", False),
        port=port,
        redis_url=_redis_url(),
        redis_timeout_seconds=_getenv_float("REDIS_TIMEOUT_SECONDS", 2.0),
        redis_max_connections=_getenv_int("REDIS_MAX_CONNECTIONS", 20),
        rate_limit_enabled=_getenv_bool("RATE_LIMIT_ENABLED", True),
        # X-Forwarded-For is only trustworthy behind a proxy that overwrites it.
        trust_forwarded_for=_getenv_bool("TRUST_FORWARDED_FOR", True),
        login_lockout_threshold=_getenv_int("LOGIN_LOCKOUT_THRESHOLD", 5),
        login_lockout_window_seconds=_getenv_int("LOGIN_LOCKOUT_WINDOW_SECONDS", 900),
        session_secret=session_secret,
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
