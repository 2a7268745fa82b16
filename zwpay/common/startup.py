"""Startup-time config summary with secrets and DSN credentials masked."""

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from zwpay.common.config import CommonSettings
from zwpay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")


def _masked_dsn(dsn: str) -> str:
    try:
        return make_url(dsn).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable>"


def safe_config(config: CommonSettings) -> dict[str, object]:
    """Settings as a flat dict, safe to log: secrets show only whether they are set."""

    summary: dict[str, object] = {}
    for name, value in config.model_dump().items():
        if name == "postgres_dsn":
            summary[name] = _masked_dsn(value)
        elif any(marker in name for marker in SECRET_MARKERS):
            summary[name] = "<set>" if value else "<unset>"
        else:
            summary[name] = value
    return summary


def log_startup_config(config: CommonSettings, providers: list[str]) -> None:
    """Log the effective config and registered providers once at boot."""

    logger.info("startup_config providers=%s config=%s", providers, safe_config(config))
    if not providers:
        logger.warning("no_providers_registered; set STRIPE_SECRET_KEY or SANDBOX_ENABLED")
