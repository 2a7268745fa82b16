"""Central environment-driven settings for the payments service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payments"
    log_level: str = "INFO"
    port: int = 8080
    postgres_dsn: str
    db_pool_size: int = 20
    db_max_overflow: int = 5
    db_pool_recycle_seconds: int = 3600
    db_pool_timeout_seconds: float = 5.0
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    sandbox_enabled: bool = False
    sandbox_webhook_secret: str = "whsec_sandbox"
    webhook_tolerance_seconds: int = 300
    # Provider-call bounds per operation; intent creation/retrieval stay shorter than charge/webhook.
    intent_timeout_seconds: float = 2.0
    get_intent_timeout_seconds: float = 2.0
    charge_timeout_seconds: float = 5.0
    webhook_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 5.0
    charge_request_timeout_seconds: float = 10.0
    compensate_orphaned_intents: bool = True
    compensation_timeout_seconds: float = 2.0
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
