"""Best-effort result cache for KPI payloads.

Keys are SHA-256 digests of a canonical JSON document holding every input
that changes the output: filter spec, periods, route(s), role, tenant scope
and entity scope. A key schema version is part of the document so a change
to the payload layout never reads old entries.

Cache failures are logged and swallowed: a broken cache degrades to direct
aggregation, it never fails a request.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.cache import CacheBackend
from app.core.exceptions import CacheError
from app.core.logging import get_logger
from app.features.kpi.schemas import (
    AccessContext,
    ComparisonEntity,
    FilterSpec,
    PeriodRequest,
    QueryRoute,
)

logger = get_logger(__name__)

CACHE_KEY_VERSION = "v1"

ModelT = TypeVar("ModelT", bound=BaseModel)


class ResultCache:
    """Typed get/put over a ``CacheBackend`` with canonical keys."""

    def __init__(
        self,
        backend: CacheBackend,
        ttl_seconds: int,
        key_prefix: str = "pharmakpi:kpi",
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def key(
        self,
        kind: str,
        spec: FilterSpec,
        period: PeriodRequest,
        routes: tuple[QueryRoute, ...],
        access: AccessContext,
        entity: ComparisonEntity | None = None,
    ) -> str:
        """Build the cache key for one result.

        Args:
            kind: Payload kind ("metrics", "comparison").
            spec: Filter specification as requested.
            period: Main and comparison windows.
            routes: Route per aggregated period, in period order.
            access: Caller role and tenant scope.
            entity: Entity restriction, for entity comparisons.

        Returns:
            Prefixed hex digest.
        """
        document: dict[str, Any] = {
            "version": CACHE_KEY_VERSION,
            "kind": kind,
            "filters": spec.canonical(),
            "period": [
                period.start.isoformat(),
                period.end.isoformat(),
                period.comparison_start.isoformat() if period.comparison_start else None,
                period.comparison_end.isoformat() if period.comparison_end else None,
            ],
            "routes": [route.value for route in routes],
            "role": access.role,
            "tenant": access.tenant_scope_id,
            "entity": entity.canonical() if entity is not None else None,
        }
        canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode()).hexdigest()
        return f"{self.key_prefix}:{digest}"

    async def get(self, key: str, model: type[ModelT]) -> ModelT | None:
        """Return the cached payload, or None on miss, expiry or failure."""
        try:
            raw = await self.backend.get(key)
        except CacheError as e:
            logger.warning("kpi.cache_read_failed", key=key, error=e.message)
            return None
        if raw is None:
            logger.debug("kpi.cache_miss", key=key)
            return None
        try:
            payload = model.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning("kpi.cache_entry_invalid", key=key, error_count=e.error_count())
            return None
        logger.debug("kpi.cache_hit", key=key)
        return payload

    async def put(self, key: str, payload: BaseModel, ttl_seconds: int | None = None) -> None:
        """Store ``payload`` as one whole serialized value with a TTL."""
        try:
            await self.backend.set(
                key,
                payload.model_dump_json().encode(),
                ttl_seconds or self.ttl_seconds,
            )
        except CacheError as e:
            logger.warning("kpi.cache_write_failed", key=key, error=e.message)
            return
        logger.debug("kpi.cache_stored", key=key, ttl_seconds=ttl_seconds or self.ttl_seconds)
