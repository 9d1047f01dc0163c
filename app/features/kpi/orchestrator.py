"""Concurrent, cancellable multi-entity comparisons.

Each entity runs its own pipeline as an asyncio task. Orchestrations are
grouped by *slot* (one comparison widget, say): issuing a new one on a
slot cancels the previous generation's token, which cancels its tasks and
their in-flight queries. A superseded orchestration never returns data;
its caller gets ``ComparisonSupersededError`` instead.

One entity failing never fails the comparison: the entity gets an error
marker next to the other entities' results.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from functools import lru_cache

from app.core.config import get_settings
from app.core.exceptions import (
    ComparisonSupersededError,
    PartialComparisonError,
    PharmaKpiError,
    ValidationError,
)
from app.core.logging import get_logger
from app.features.kpi.cancellation import CancellationToken
from app.features.kpi.schemas import ComparisonEntity, EntityError, EntityOutcome

logger = get_logger(__name__)

EntityPipeline = Callable[[ComparisonEntity, CancellationToken], Awaitable[EntityOutcome]]


@dataclass
class OrchestrationResult:
    """Merged outcomes of one orchestration generation."""

    generation: int
    outcomes: dict[str, EntityOutcome]
    failures: dict[str, PharmaKpiError] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.failures)


class ComparisonOrchestrator:
    """Per-slot generation counter plus the live token of each slot.

    Owned by the process; all state changes happen on the event loop thread.
    """

    def __init__(self, max_entities: int = 3) -> None:
        self.max_entities = max_entities
        self._generations: dict[str, int] = {}
        self._tokens: dict[str, CancellationToken] = {}

    def current_generation(self, slot: str) -> int:
        return self._generations.get(slot, 0)

    def _begin(self, slot: str) -> tuple[int, CancellationToken]:
        previous = self._tokens.get(slot)
        generation = self.current_generation(slot) + 1
        if previous is not None:
            previous.cancel(f"superseded by generation {generation}")
            logger.info("kpi.comparison_cancelled", slot=slot, generation=generation - 1)
        token = CancellationToken()
        self._generations[slot] = generation
        self._tokens[slot] = token
        return generation, token

    async def compare_entities(
        self,
        slot: str,
        entities: Sequence[ComparisonEntity],
        pipeline: EntityPipeline,
    ) -> OrchestrationResult:
        """Run ``pipeline`` for every entity concurrently and merge outcomes.

        Args:
            slot: Comparison slot; a newer call on the same slot supersedes
                this one.
            entities: One to ``max_entities`` entities.
            pipeline: Coroutine function computing one entity's outcome.
                It must honour the token it is given.

        Returns:
            Outcome per entity id, with failures collected separately.

        Raises:
            ValidationError: If the number of entities is out of range.
            ComparisonSupersededError: If a newer orchestration started on
                the same slot before this one finished.
        """
        if not 1 <= len(entities) <= self.max_entities:
            raise ValidationError(
                f"A comparison takes between 1 and {self.max_entities} entities",
                details={"entity_count": len(entities)},
            )

        generation, token = self._begin(slot)
        logger.info(
            "kpi.comparison_started",
            slot=slot,
            generation=generation,
            entities=[e.id for e in entities],
        )

        try:
            tasks = [
                token.spawn(pipeline(entity, token), name=f"kpi-entity-{entity.id}")
                for entity in entities
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if self._tokens.get(slot) is token:
                del self._tokens[slot]

        if self.current_generation(slot) != generation:
            logger.info("kpi.comparison_superseded", slot=slot, generation=generation)
            raise ComparisonSupersededError(
                details={"slot": slot, "generation": generation},
            )

        outcomes: dict[str, EntityOutcome] = {}
        failures: dict[str, PharmaKpiError] = {}
        for entity, result in zip(entities, results, strict=True):
            if isinstance(result, EntityOutcome):
                outcomes[entity.id] = result
                continue
            error = self._as_pharmakpi_error(entity, result)
            failures[entity.id] = error
            outcomes[entity.id] = EntityOutcome(
                entity_id=entity.id,
                kind=entity.kind,
                label=entity.label,
                error=EntityError(code=error.code, message=error.message, retryable=error.retryable),
            )

        if failures:
            summary = PartialComparisonError(failures)
            logger.warning(
                "kpi.comparison_partial",
                slot=slot,
                generation=generation,
                failed=len(failures),
                total=len(entities),
                details=summary.details,
            )
        else:
            logger.info("kpi.comparison_completed", slot=slot, generation=generation)

        return OrchestrationResult(generation=generation, outcomes=outcomes, failures=failures)

    @staticmethod
    def _as_pharmakpi_error(entity: ComparisonEntity, result: BaseException) -> PharmaKpiError:
        if isinstance(result, PharmaKpiError):
            return result
        if isinstance(result, asyncio.CancelledError):
            return PharmaKpiError(f"Pipeline for '{entity.id}' was cancelled", code="CANCELLED")
        if not isinstance(result, Exception):
            raise result
        logger.error(
            "kpi.entity_pipeline_crashed",
            entity_id=entity.id,
            error=str(result),
            error_type=type(result).__name__,
            exc_info=result,
        )
        return PharmaKpiError(f"Pipeline for '{entity.id}' failed unexpectedly")


@lru_cache
def get_orchestrator() -> ComparisonOrchestrator:
    """Get the process-wide orchestrator."""
    return ComparisonOrchestrator(max_entities=get_settings().kpi_max_comparison_entities)
