"""
Run Subscription Sync Script

Runs one reconciliation sweep over pending subscriptions, the same work
the scheduled cron endpoint triggers.

Usage:
    cd backend
    python scripts/run_subscription_sync.py --max-age-hours 48
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import httpx

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from storefront.config.settings import Settings, get_settings
from storefront.infrastructure.container import build_container
from storefront.infrastructure.db.database import DatabaseManager

logger = logging.getLogger(__name__)


async def run_sync(settings: Settings, max_age_hours: int) -> int:
    """Run one sweep and return the process exit code."""
    database = DatabaseManager(settings)

    async with httpx.AsyncClient() as http_client:
        container = build_container(settings, database.session_factory, http_client)
        try:
            result = await container.reconciler.run_scheduled_sync(max_age_hours)
        finally:
            await container.notifier.drain()
            await database.close()

    logger.info(
        f"Sync complete: {result.total_processed} processed, "
        f"{result.successful} successful, {result.failed} failed"
    )
    for item in result.results:
        if not item.success:
            logger.warning(f"  {item.subscription_id}: {item.action} {item.error or ''}")

    if result.alert_severity is not None:
        logger.error(f"Sweep raised a {result.alert_severity.value} alert")
        return 1
    return 0


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    parser = argparse.ArgumentParser(description="Reconcile pending subscriptions with MercadoPago")
    parser.add_argument(
        "--max-age-hours",
        type=int,
        default=settings.sync_default_max_age_hours,
        help="Only consider subscriptions created within this many hours",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run_sync(settings, args.max_age_hours)))


if __name__ == "__main__":
    main()
