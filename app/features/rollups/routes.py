"""API routes for materialized rollup maintenance.

Called by the scheduler after nightly ingestion; the status endpoint lets
operators see which periods the FAST route can serve.
"""

import hmac

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db
from app.core.exceptions import ForbiddenError
from app.core.logging import get_logger
from app.features.rollups.schemas import RollupRefreshResponse, RollupStatusResponse
from app.features.rollups.service import RollupService, get_freshness_provider

logger = get_logger(__name__)

router = APIRouter(prefix="/rollups", tags=["rollups"])


def require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
) -> None:
    """Check the shared scheduler secret when one is configured.

    Raises:
        ForbiddenError: If the header is missing or does not match.
    """
    expected = get_settings().rollup_cron_secret
    if not expected:
        return
    if x_cron_secret is None or not hmac.compare_digest(
        x_cron_secret.encode(), expected.encode()
    ):
        logger.warning("rollups.cron_secret_rejected", header_present=x_cron_secret is not None)
        raise ForbiddenError("Missing or invalid cron secret")


@router.post(
    "/refresh",
    response_model=RollupRefreshResponse,
    summary="Refresh materialized rollups",
    description="""
Refresh every materialized rollup in dependency order.

Each rollup is refreshed `CONCURRENTLY` (readers are not blocked); if that
fails, a plain blocking refresh is attempted. The covered date range is
recorded and used by route selection to decide when the FAST route may be
used.

**Authentication**: send the scheduler secret in `X-Cron-Secret` when
`ROLLUP_CRON_SECRET` is configured.

**Response**: one entry per rollup; `succeeded` is false if any failed.
""",
    dependencies=[Depends(require_cron_secret)],
)
async def refresh_rollups(
    db: AsyncSession = Depends(get_db),
) -> RollupRefreshResponse:
    """Refresh every rollup and reset the cached freshness snapshot."""
    service = RollupService()
    response = await service.refresh_all(db)
    get_freshness_provider().invalidate()
    return response


@router.get(
    "/status",
    response_model=RollupStatusResponse,
    summary="Rollup freshness",
    description="""
List the last refresh time, outcome and covered date of each rollup.

Periods ending after `covered_until` are served from raw facts.
""",
)
async def rollup_status(
    db: AsyncSession = Depends(get_db),
) -> RollupStatusResponse:
    """Report rollup freshness."""
    service = RollupService()
    return await service.get_status(db)
