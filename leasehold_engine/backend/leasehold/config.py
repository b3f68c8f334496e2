from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- App ----
    app_env: str = "local"  # local|dev|prod
    app_version: str = "2026-10-18.v1"
    database_url: str = "sqlite:///./leasehold.db"

    # ---- Logging (logging_config.py) ----
    log_level: str = "INFO"
    sql_log_level: str = "WARNING"
    slow_request_ms: int = 2000

    # ---- CORS (used by main.py) ----
    cors_allow_origins: list[str] | str = ["*"]

    # ---- Auth (identity is issued upstream; we only resolve it) ----
    auth_mode: str = "dev"  # dev|gateway
    dev_header_user_id: str = "X-User-Id"
    gateway_header_user_id: str = "X-Authenticated-User-Id"

    # ---- Payment processor ----
    payment_webhook_secret: str = ""
    payment_webhook_tolerance_seconds: int = 300
    currency: str = "pkr"
    receipt_prefix: str = "RCP"

    # ---- Lease defaults (used when a property has no value of its own) ----
    default_lease_duration_months: int = 12
    default_grace_period_days: int = 5
    default_renewal_notify_days: int = 30

    # ---- Batch automation ----
    rent_reminder_days_before: int = 3
    reminder_hour: int = 8
    late_fee_hour: int = 9
    expiry_hour: int = 0
    batch_lock_ttl_seconds: int = 15 * 60

    # ---- Celery ----
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    # ---- Notifications ----
    notification_dispatch_mode: str = "celery"  # celery|deferred
    notification_max_attempts: int = 3
    notification_backoff_base_seconds: int = 5
    notification_backoff_max_seconds: int = 300
    notification_concurrency: int = 5
    notification_running_timeout_seconds: int = 300
    notification_retention_days: int = 45
    notification_drain_batch_size: int = 100

    notification_gateway_url: str | None = None
    notification_gateway_token: str | None = None
    notification_gateway_timeout_seconds: float = 10.0

    def model_post_init(self, __context) -> None:
        env = (self.app_env or "local").strip().lower()
        if env not in ("prod", "production"):
            return

        if (self.auth_mode or "").strip().lower() == "dev":
            raise ValueError("SECURITY: auth_mode=dev is not allowed in prod")

        if not (self.payment_webhook_secret or "").strip():
            raise ValueError("SECURITY: payment_webhook_secret must be set in prod")

        origins = self.cors_allow_origins
        if origins == "*" or origins == ["*"] or (isinstance(origins, str) and "*" in origins):
            raise ValueError("SECURITY: cors_allow_origins wildcard is not allowed in prod")


settings = Settings()
