import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Identity (JWT issued by the external auth service)
    JWT_SECRET_KEY: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ALLOW_HEADER_AUTH: bool = False  # X-User-Id fallback, dev/tests only

    # Admin access (legacy shared key)
    ADMIN_KEY: Optional[str] = None

    # Asset store
    ASSET_BASE_URL: Optional[str] = None  # joined onto relative video paths

    # Purchase transaction bounds
    PURCHASE_TX_TIMEOUT_MS: int = 10000
    PURCHASE_LOCK_TIMEOUT_MS: int = 5000
    PURCHASE_MAX_ATTEMPTS: int = 3

    # View counter (best-effort, optionally via RQ)
    VIEW_COUNT_QUEUE_ENABLED: bool = False

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("reelpoints")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET_KEY",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
