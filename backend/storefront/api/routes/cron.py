"""
Cron Routes

Entry point for the scheduler that runs the reconciliation sweep.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from storefront.api.dependencies import ReconcilerDep, verify_cron_secret
from storefront.domain.subscription import SweepResult


logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.post("/cron/sync-subscriptions", response_model=SweepResult)
async def sync_subscriptions(
    reconciler: ReconcilerDep,
    max_age_hours: Optional[int] = Query(default=None, ge=1, le=24 * 30),
) -> SweepResult:
    """Reconcile pending subscriptions against MercadoPago."""
    result = await reconciler.run_scheduled_sync(max_age_hours)
    logger.info(
        f"Scheduled sync finished: {result.successful}/{result.total_processed} ok, "
        f"{result.failed} failed, skipped={result.skipped}"
    )
    return result
