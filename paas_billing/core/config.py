import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

DEFAULT_COMPUTE_PLAN_GUID = "f4d4b95a-f55e-4593-8d54-3364c25798c4"


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # HTTP server
    LISTEN_HOST: str = "0.0.0.0"
    PORT: int = 8881

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Pricing configuration document
    BILLING_CONFIG_PATH: str = "config.json"
    IGNORE_MISSING_PLANS: bool = False
    COMPUTE_PLAN_GUID: str = DEFAULT_COMPUTE_PLAN_GUID
    COMPUTE_PLAN_NAME: str = "app"

    # Upstream usage event API
    CF_API_ADDRESS: Optional[str] = None
    CF_CLIENT_TOKEN: Optional[str] = None
    CF_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Managed database audit events (managed-metric kind); collected only with a token
    MANAGED_METRICS_API_ADDRESS: str = "https://api.compose.io"
    MANAGED_METRICS_API_TOKEN: Optional[str] = None

    # Collector
    COLLECTOR_ENABLED: bool = False
    COLLECTOR_SCHEDULE_SECONDS: float = 900
    COLLECTOR_MIN_WAIT_SECONDS: float = 3
    COLLECTOR_INITIAL_WAIT_SECONDS: float = 1
    COLLECTOR_RECORD_MIN_AGE_SECONDS: float = 300
    COLLECTOR_FETCH_LIMIT: int = 50

    # Bearer token verification
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: str = "HS256"  # comma-separated
    AUTH_JWT_AUDIENCE: Optional[str] = None
    AUTH_ADMIN_SCOPES: str = "cloud_controller.admin,cloud_controller.admin_read_only,cloud_controller.global_auditor"

    # Consolidation
    CONSOLIDATION_START_DATE: str = "2017-07-01"
    CONSOLIDATION_DELAY_DAYS: int = 5

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def split_csv(value: Optional[str]) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or Settings()
    log = logger or logging.getLogger("paas_billing")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "CF_API_ADDRESS",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
