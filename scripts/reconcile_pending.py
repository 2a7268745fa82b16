"""Poll the provider for pending transactions whose webhook never arrived.

Run from a scheduler; prints the intents whose local status changed.
"""

import argparse
import asyncio
import json
from datetime import datetime, timedelta, timezone

from zwpay.common.config import settings
from zwpay.common.db import SessionLocal
from zwpay.common.logging import configure_logging
from zwpay.services.payments.app import build_service


async def reconcile(provider: str, since: datetime) -> dict[str, str]:
    """Build the orchestrator once and reconcile everything pending since `since`."""

    service = build_service(SessionLocal, settings)
    return await service.reconcile_pending(provider, since)


def main() -> None:
    """CLI entrypoint for pending-transaction reconciliation."""

    parser = argparse.ArgumentParser(description="Reconcile pending transactions against a provider.")
    parser.add_argument("--provider", default="stripe")
    parser.add_argument("--since-hours", type=float, default=24.0)
    args = parser.parse_args()

    configure_logging()
    since = datetime.now(timezone.utc) - timedelta(hours=args.since_hours)
    applied = asyncio.run(reconcile(args.provider, since))
    print(json.dumps(applied, indent=2))


if __name__ == "__main__":
    main()
