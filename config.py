"""
Application configuration read from the environment.
ENV selects the API constants; API_URL / DATABASE_URL override them.
MERCURY_USER_ID is the signed-in user for /users/me on the local backend.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

PROD_API_URL = "https://mercury-analytics-api.herokuapp.com/api/v1"
DEV_API_URL = "https://mercury-analytics-api.herokuapp.com/api/v1"
PROD_APP_URL = "https://mercury-analytics-frontend.herokuapp.com"
DEV_APP_URL = "http://localhost:3000"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class AppConfig:
    env: str = "production"
    api_url: str = PROD_API_URL
    app_url: str = PROD_APP_URL
    api_token: str | None = None
    backend: str = "local"
    database_url: str | None = None
    db_path: Path | None = None
    request_timeout: float = 30.0
    log_level: str = "INFO"
    user_id: int | None = None

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "AppConfig":
        """Build a config from environment variables (os.environ by default)."""
        env_vars = os.environ if environ is None else environ
        env = (env_vars.get("MERCURY_ENV") or "production").strip().lower()
        dev = env == "development"
        api_url = (env_vars.get("API_URL") or (DEV_API_URL if dev else PROD_API_URL)).rstrip("/")
        db_path = env_vars.get("MERCURY_DB_PATH")
        timeout_raw = env_vars.get("REQUEST_TIMEOUT")
        try:
            timeout = float(timeout_raw) if timeout_raw else 30.0
        except ValueError:
            raise ValueError(f"REQUEST_TIMEOUT must be a number of seconds, got {timeout_raw!r}.") from None
        user_raw = env_vars.get("MERCURY_USER_ID")
        try:
            user_id = int(user_raw) if user_raw else None
        except ValueError:
            raise ValueError(f"MERCURY_USER_ID must be an integer, got {user_raw!r}.") from None
        backend = (env_vars.get("MERCURY_BACKEND") or "local").strip().lower()
        if backend not in ("local", "http"):
            raise ValueError(f"MERCURY_BACKEND must be 'local' or 'http', got {backend!r}.")
        return cls(
            env=env,
            api_url=api_url,
            app_url=DEV_APP_URL if dev else PROD_APP_URL,
            api_token=env_vars.get("API_TOKEN") or None,
            backend=backend,
            database_url=env_vars.get("DATABASE_URL") or None,
            db_path=Path(db_path).expanduser() if db_path else None,
            request_timeout=timeout,
            user_id=user_id,
            log_level=(env_vars.get("LOG_LEVEL") or ("DEBUG" if dev else "INFO")).upper(),
        )


def setup_logging(level: str | int = "INFO") -> None:
    """Configure the root logger once with a single stream handler."""
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)
    if not any(getattr(h, "_mercury", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._mercury = True
        root.addHandler(handler)
