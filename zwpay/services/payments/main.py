"""HTTP surface for the payments orchestrator."""

from zwpay.common.config import settings
from zwpay.common.db import SessionLocal
from zwpay.common.logging import configure_logging
from zwpay.common.startup import log_startup_config
from zwpay.common.tracing import instrument_app, setup_tracing
from zwpay.services.payments.app import build_service, create_app

configure_logging()
setup_tracing(settings.service_name)
service = build_service(SessionLocal)
log_startup_config(settings, service.providers.keys())
app = create_app(service)
instrument_app(app)
