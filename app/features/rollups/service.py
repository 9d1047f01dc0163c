"""Service layer for materialized rollups.

Creates the rollups when missing, refreshes them in catalog order and
records what each refresh covered. Route selection reads that record
through ``RollupFreshnessProvider``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from functools import lru_cache

from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.database import get_session_maker
from app.core.logging import get_logger
from app.features.data_platform.models import Sale
from app.features.rollups.catalog import ROLLUPS, RollupDefinition
from app.features.rollups.models import RefreshStatus, RollupRefresh
from app.features.rollups.schemas import (
    RollupFreshness,
    RollupRefreshResponse,
    RollupRefreshResult,
    RollupStatusResponse,
)

logger = get_logger(__name__)


async def load_freshness(db: AsyncSession) -> dict[str, RollupFreshness]:
    """Read the refresh record of every rollup that has one."""
    result = await db.execute(select(RollupRefresh))
    return {
        record.name: RollupFreshness.model_validate(record) for record in result.scalars().all()
    }


class RollupService:
    """Create, refresh and report on the materialized rollups."""

    def __init__(
        self,
        rollups: tuple[RollupDefinition, ...] = ROLLUPS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.rollups = rollups
        self._now = clock or (lambda: datetime.now(UTC))

    async def ensure_rollups(self, db: AsyncSession) -> None:
        """Create the refresh table, the views and their indexes if missing."""
        conn = await db.connection()
        await conn.run_sync(
            lambda sync_conn: RollupRefresh.__table__.create(sync_conn, checkfirst=True)
        )
        for rollup in self.rollups:
            await db.execute(text(rollup.create_sql))
            for statement in rollup.index_sql:
                await db.execute(text(statement))
        await db.commit()
        logger.info("rollups.ensured", rollups=[r.name for r in self.rollups])

    async def refresh_all(self, db: AsyncSession) -> RollupRefreshResponse:
        """Refresh every rollup in catalog order.

        A failing rollup is recorded as failed and the run continues with
        the next one.

        Args:
            db: Database session.

        Returns:
            Per-rollup outcomes in refresh order.
        """
        await self.ensure_rollups(db)
        covered_until = await self._fact_coverage(db)

        logger.info(
            "rollups.refresh_started",
            rollups=[r.name for r in self.rollups],
            covered_until=str(covered_until),
        )

        results = [await self._refresh_one(db, rollup, covered_until) for rollup in self.rollups]
        succeeded = all(r.status is RefreshStatus.SUCCEEDED for r in results)

        logger.info(
            "rollups.refresh_completed",
            succeeded=succeeded,
            failed=[r.name for r in results if r.status is RefreshStatus.FAILED],
        )
        return RollupRefreshResponse(results=results, succeeded=succeeded)

    async def get_status(self, db: AsyncSession) -> RollupStatusResponse:
        """List the freshness record of every rollup in catalog order."""
        freshness = await load_freshness(db)
        return RollupStatusResponse(
            rollups=[freshness[r.name] for r in self.rollups if r.name in freshness]
        )

    async def _fact_coverage(self, db: AsyncSession) -> date:
        """Last fact date a refresh started now can be trusted to include.

        That is the latest sale date, capped at yesterday so the current,
        still-filling day is never considered covered.
        """
        yesterday = self._now().date() - timedelta(days=1)
        latest_sale = (await db.execute(select(func.max(Sale.date)))).scalar_one_or_none()
        if latest_sale is None:
            return yesterday
        return min(latest_sale, yesterday)

    async def _refresh_one(
        self,
        db: AsyncSession,
        rollup: RollupDefinition,
        covered_until: date,
    ) -> RollupRefreshResult:
        started = time.perf_counter()
        concurrent = True
        try:
            try:
                async with db.begin_nested():
                    await db.execute(
                        text(f"REFRESH MATERIALIZED VIEW CONCURRENTLY {rollup.name}")
                    )
            except SQLAlchemyError as e:
                # Unpopulated views and views without a unique index only
                # accept a blocking refresh.
                logger.warning(
                    "rollups.concurrent_refresh_failed",
                    rollup=rollup.name,
                    error=str(e),
                )
                concurrent = False
                await db.execute(text(f"REFRESH MATERIALIZED VIEW {rollup.name}"))

            duration_ms = int((time.perf_counter() - started) * 1000)
            await self._record(
                db,
                rollup.name,
                status=RefreshStatus.SUCCEEDED,
                refreshed_at=self._now(),
                covered_until=covered_until,
                concurrent=concurrent,
                duration_ms=duration_ms,
            )
        except SQLAlchemyError as e:
            await db.rollback()
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error(
                "rollups.refresh_failed",
                rollup=rollup.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._record(
                db,
                rollup.name,
                status=RefreshStatus.FAILED,
                concurrent=concurrent,
                duration_ms=duration_ms,
                error_message=str(e)[:2000],
            )
            return RollupRefreshResult(
                name=rollup.name,
                status=RefreshStatus.FAILED,
                concurrent=concurrent,
                duration_ms=duration_ms,
                error_message=str(e)[:2000],
            )

        logger.info(
            "rollups.refreshed",
            rollup=rollup.name,
            concurrent=concurrent,
            duration_ms=duration_ms,
        )
        return RollupRefreshResult(
            name=rollup.name,
            status=RefreshStatus.SUCCEEDED,
            concurrent=concurrent,
            duration_ms=duration_ms,
            covered_until=covered_until,
        )

    async def _record(
        self,
        db: AsyncSession,
        name: str,
        *,
        status: RefreshStatus,
        concurrent: bool,
        duration_ms: int,
        refreshed_at: datetime | None = None,
        covered_until: date | None = None,
        error_message: str | None = None,
    ) -> None:
        """Upsert the refresh record and commit together with the refresh.

        A failed attempt keeps the previous coverage, which still describes
        the data left in the view.
        """
        record = await db.get(RollupRefresh, name)
        if record is None:
            record = RollupRefresh(name=name)
            db.add(record)
        record.status = status.value
        record.concurrent = concurrent
        record.duration_ms = duration_ms
        record.error_message = error_message
        if status is RefreshStatus.SUCCEEDED:
            record.refreshed_at = refreshed_at
            record.covered_until = covered_until
        await db.commit()


class RollupFreshnessProvider:
    """Process-wide snapshot of rollup freshness, reloaded after a short TTL.

    Route selection runs on every request; the refresh record changes a
    few times a day.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_maker = session_maker
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: dict[str, RollupFreshness] | None = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    def _fresh_snapshot(self) -> dict[str, RollupFreshness] | None:
        if self._snapshot is None or self._clock() - self._loaded_at >= self._ttl_seconds:
            return None
        return self._snapshot

    async def get(self) -> dict[str, RollupFreshness]:
        """Return the current freshness snapshot.

        An unreadable ``rollup_refresh`` table (not bootstrapped yet, or a
        database hiccup) yields an empty snapshot, so every request routes
        to the raw facts. The empty snapshot is not kept; the next request
        reads again.
        """
        snapshot = self._fresh_snapshot()
        if snapshot is not None:
            return snapshot
        async with self._lock:
            snapshot = self._fresh_snapshot()
            if snapshot is not None:
                return snapshot
            try:
                async with self._session_maker() as session:
                    snapshot = await load_freshness(session)
            except SQLAlchemyError as e:
                logger.warning(
                    "rollups.freshness_unavailable",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return {}
            self._snapshot = snapshot
            self._loaded_at = self._clock()
            logger.debug("rollups.freshness_loaded", rollups=sorted(snapshot))
            return snapshot

    def invalidate(self) -> None:
        self._snapshot = None


@lru_cache
def get_freshness_provider() -> RollupFreshnessProvider:
    """Get the process-wide freshness provider."""
    settings = get_settings()
    return RollupFreshnessProvider(
        get_session_maker(),
        ttl_seconds=settings.rollup_freshness_ttl_seconds,
    )
