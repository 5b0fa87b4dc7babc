import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Persistence & cache (unset => in-memory handles)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None
    STORE_TIMEOUT_SECONDS: float = 5.0
    CACHE_TIMEOUT_SECONDS: float = 1.0
    STORE_RETRY_ATTEMPTS: int = 3

    # Day bucketing
    DEFAULT_TIMEZONE: str = "UTC"

    # Reward economy
    REWARD_HISTORY_LIMIT: int = 100
    REWARD_POSTING_MODE: str = "inline"  # inline | deferred
    REWARD_OUTBOX_MAX_ATTEMPTS: int = 5

    # Derived stats cache
    STATS_CACHE_TTL_SECONDS: int = 30 * 60
    STATS_HASH_TTL_SECONDS: int = 24 * 60 * 60
    GENERATING_MARKER_TTL_SECONDS: int = 60

    # Insight text generation
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"
    INSIGHTS_TIMEOUT_SECONDS: float = 4.0

    # Identity
    AUTH_JWT_SECRET: Optional[str] = None

    # Rate limiting for mutating routes (0 = disabled)
    RATE_LIMIT_PER_MINUTE: int = 0

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate configuration needed outside development.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("habitchain")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL", "REDIS_URL"]
    if (getattr(cfg, "ENV", "") or "").lower() == "production":
        required_keys.append("AUTH_JWT_SECRET")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing configuration: {', '.join(missing)} (falling back to in-memory handles)"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.REWARD_POSTING_MODE not in {"inline", "deferred"}:
        message = f"Unknown REWARD_POSTING_MODE {cfg.REWARD_POSTING_MODE!r}; using inline"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    # Strict mode has already rejected these as missing above.
    if cfg.REWARD_POSTING_MODE == "deferred":
        unbacked = [key for key in ("DATABASE_URL", "REDIS_URL") if not getattr(cfg, key, None)]
        if unbacked:
            log.warning(
                f"REWARD_POSTING_MODE=deferred without {', '.join(unbacked)}: "
                "queued rewards are never drained by the worker"
            )

    return True
