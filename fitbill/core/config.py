import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    # Upper bound (seconds) for any single store call: pool checkout,
    # connect and statement time.
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Inbound payment webhook (PerfectPay)
    # The secret normally lives in integration_configs under this key;
    # PERFECTPAY_WEBHOOK_TOKEN is only consulted when that row is absent.
    WEBHOOK_SECRET_CONFIG_KEY: str = "perfectpay_webhook_token"
    PERFECTPAY_WEBHOOK_TOKEN: Optional[str] = None
    WEBHOOK_APPROVED_STATUSES: str = "2,approved,aprovado,completed,paid"  # comma-separated
    WEBHOOK_FALLBACK_AMOUNT_CENTS: int = 0

    # Inbound payment webhook (Mercado Pago). Notifications only carry an id;
    # the payment itself is fetched from the API with this access token.
    MERCADOPAGO_TOKEN_CONFIG_KEY: str = "mercadopago_access_token"
    MERCADOPAGO_ACCESS_TOKEN: Optional[str] = None
    MERCADOPAGO_API_URL: str = "https://api.mercadopago.com"
    MERCADOPAGO_TIMEOUT_SECONDS: float = 10.0

    # Plans
    DEFAULT_PLAN_VALIDITY_DAYS: int = 30
    EXPIRING_SOON_DAYS: int = 7

    # Promotional (ads/highlight) add-on
    ADS_PRODUCT_KEYWORDS: str = "anúncio,anuncio,destaque,publicidade"  # comma-separated
    ADS_ACTIVATION_DAYS: int = 30

    # Scheduled expired-plan sweep
    DOWNGRADE_CRON_SECRET: Optional[str] = None

    # Admin access (hybrid auth)
    ADMIN_KEY: Optional[str] = None  # Legacy shared key
    ADMIN_AUTH_MODE: str = "hybrid"  # "jwt" | "legacy" | "hybrid"
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"

    # Identity provider JWT verification (HS256 project secret)
    IDENTITY_JWT_SECRET: Optional[str] = None
    IDENTITY_JWT_AUDIENCE: Optional[str] = "authenticated"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def split_csv(value: Optional[str]) -> list[str]:
    """Split a comma-separated setting into lowercase, non-empty items."""
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("fitbill")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "IDENTITY_JWT_SECRET",
        "DOWNGRADE_CRON_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.DEFAULT_PLAN_VALIDITY_DAYS <= 0 or cfg.ADS_ACTIVATION_DAYS <= 0:
        message = "DEFAULT_PLAN_VALIDITY_DAYS and ADS_ACTIVATION_DAYS must be positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
