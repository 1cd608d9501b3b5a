import logging
import re
from typing import List, Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"  # "production" switches logs to JSON
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod", gates the legacy admin key
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Auth
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ADMIN_KEY: Optional[str] = None  # Legacy shared operator key (X-Admin-Key)

    # Manual card payments
    PAYMENT_CARD: str = "9680 3501 4687 8359"
    PAYMENT_EXPIRATION_HOURS: int = 24
    PAYMENT_CURRENCY: str = "UZS"

    # Custom plan pricing (UZS per token)
    CUSTOM_PLAN_RATE: int = 1
    CUSTOM_PLAN_RATE_DISTINCTION: Optional[int] = None

    # Account plans
    FREE_TOKENS_PER_MONTH: int = 5000

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production" or self.ENVIRONMENT.lower() == "prod"


settings = Settings()

_CARD_NUMBER = re.compile(r"^\d{4}( ?\d{4}){3}$")


def _config_problems(cfg: Settings) -> List[str]:
    problems = []

    required_keys = ["DATABASE_URL", "JWT_SECRET"]
    if not cfg.is_production:
        required_keys.append("ADMIN_KEY")
    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")

    if cfg.PAYMENT_EXPIRATION_HOURS <= 0:
        problems.append("PAYMENT_EXPIRATION_HOURS must be positive")
    if not _CARD_NUMBER.match(cfg.PAYMENT_CARD.strip()):
        problems.append("PAYMENT_CARD must be a 16-digit card number")
    rates = [cfg.CUSTOM_PLAN_RATE, cfg.CUSTOM_PLAN_RATE_DISTINCTION]
    if any(rate is not None and rate < 1 for rate in rates):
        problems.append("Custom plan rates must be at least 1 per token")
    if cfg.FREE_TOKENS_PER_MONTH < 0:
        problems.append("FREE_TOKENS_PER_MONTH must not be negative")
    if cfg.TEST_DATABASE_URL and cfg.is_production:
        problems.append("TEST_DATABASE_URL must not be set in production")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate configuration at startup.

    In strict mode raise RuntimeError listing every problem; otherwise emit
    warnings only. Secrets are never logged, only the names of missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("tokenbank")
    strict_mode = strict if strict is not None else cfg.CONFIG_STRICT

    problems = _config_problems(cfg)
    if problems and strict_mode:
        raise RuntimeError("; ".join(problems))
    for problem in problems:
        log.warning(problem)
    return True
