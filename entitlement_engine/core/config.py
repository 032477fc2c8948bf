import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Rate limiting
    RATE_LIMIT_BACKEND: str = "store"  # store | redis
    RATE_WINDOW_SECONDS: int = 60
    RATE_WINDOW_RETENTION_SECONDS: int = 300

    # Budgets
    RESERVATION_TTL_SECONDS: int = 900

    # Period scheduler
    ROLLOVER_INTERVAL_SECONDS: int = 300

    # Plan catalog
    SEED_DEFAULT_PLANS: bool = True

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Check the settings the engine cannot run sensibly without.

    Returns False and logs the offending keys (never their values) when
    something is off; with ``strict`` a RuntimeError is raised instead.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("entitlements")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    if cfg.ENV.lower() == "production" and not cfg.DATABASE_URL:
        problems.append("DATABASE_URL")
    if not isinstance(logging.getLevelName(cfg.LOG_LEVEL.upper()), int):
        problems.append("LOG_LEVEL")
    if cfg.RATE_LIMIT_BACKEND not in ("store", "redis"):
        problems.append("RATE_LIMIT_BACKEND")
    if cfg.RATE_WINDOW_SECONDS <= 0:
        problems.append("RATE_WINDOW_SECONDS")
    if cfg.RESERVATION_TTL_SECONDS <= 0:
        problems.append("RESERVATION_TTL_SECONDS")

    if problems:
        message = f"Missing or invalid configuration: {', '.join(problems)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)
        return False

    return True
