from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    app_env: str = "local"
    app_version: str | None = None
    public_base_url: str = ""
    api_basic_username: str = "admin"
    api_basic_password: str = "admin"

    # Webhook pipeline
    webhook_timeout_seconds: float = 5.0
    require_webhook_secret: bool = False
    referral_points_rate: float = 0.1
    default_partner_commission_rate: float = 0.1

    # Gateway secrets (overridden by the gateways table when the DB is enabled)
    cryptopay_webhook_secret: str = ""
    cryptopay_allowed_ips: str = ""
    yookassa_webhook_secret: str = ""
    yookassa_allowed_ips: str = ""
    heleket_webhook_secret: str = ""
    heleket_allowed_ips: str = ""
    pal24_webhook_secret: str = ""
    pal24_allowed_ips: str = ""
    platega_webhook_secret: str = ""
    platega_allowed_ips: str = ""
    wata_webhook_secret: str = ""
    wata_allowed_ips: str = ""
    telegram_stars_webhook_secret: str = ""
    telegram_stars_allowed_ips: str = ""

    # Notification transport; empty URL means log-only
    notification_url: str = ""
    notification_timeout_seconds: float = 2.0

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "billing"
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_statement_timeout_ms: int = 4000

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def gateway_secret(self, gateway: str) -> str:
        return str(getattr(self, f"{_setting_prefix(gateway)}_webhook_secret", "") or "")

    def gateway_allowed_ips(self, gateway: str) -> list[str]:
        raw = str(getattr(self, f"{_setting_prefix(gateway)}_allowed_ips", "") or "")
        return [ip.strip() for ip in raw.split(",") if ip.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


def _setting_prefix(gateway: str) -> str:
    return gateway.lower().replace("-", "_")


settings = Settings()
