"""
API Dependencies

FastAPI dependency providers. Services are read from the container the
application lifespan stores on ``app.state``; tests replace these providers
through ``app.dependency_overrides``.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from storefront.config.settings import Settings
from storefront.domain.reconciliation import SubscriptionReconciler
from storefront.infrastructure.container import ServiceContainer


logger = logging.getLogger(__name__)


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service container is not initialized",
        )
    return container


def get_app_settings(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> Settings:
    return container.settings


def get_reconciler(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> SubscriptionReconciler:
    return container.reconciler


async def verify_cron_secret(
    settings: Annotated[Settings, Depends(get_app_settings)],
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """
    Guard scheduled endpoints with ``Authorization: Bearer <CRON_SECRET>``.

    When no secret is configured the check is skipped (development).

    Raises:
        HTTPException 401: Missing or wrong bearer token.
    """
    if not settings.cron_secret:
        return

    if authorization != f"Bearer {settings.cron_secret}":
        logger.warning("Rejected cron request with invalid credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


ContainerDep = Annotated[ServiceContainer, Depends(get_container)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
ReconcilerDep = Annotated[SubscriptionReconciler, Depends(get_reconciler)]
