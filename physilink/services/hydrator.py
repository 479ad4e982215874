"""
Best-effort illustration of an analysis result that is already on screen.

Concepts (first few, in order) are illustrated in parallel and merged in one
update once every request has settled. Observations are illustrated one at a
time and each success is published before the next request goes out. Both
pipelines run side by side. ``hydrate`` returns when the concepts are merged;
the observations task is handed back and may still be publishing.
"""
from __future__ import annotations

# stdlib
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar
import asyncio, logging

# local
from physilink.core.config import settings
from physilink.models.schemas import AnalysisResult, Concept, Observation
from physilink.services.session_store import (
    ConceptsIllustrated,
    ObservationIllustrated,
    Update,
)


logger = logging.getLogger("physilink.hydrator")

T = TypeVar("T")

Illustrate = Callable[[str], Awaitable[Optional[str]]]
Publish = Callable[[Update], object]


@dataclass(frozen=True)
class Enriched(Generic[T]):
    base: T
    illustration: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.illustration)


def concept_prompt(concept: Concept) -> str:
    return f"Diagram explaining {concept.name}."


def observation_prompt(observation: Observation) -> str:
    return f"Real world: {observation.concept_name}."


async def enrich(item: T, prompt: str, illustrate: Illustrate) -> Enriched[T]:
    """One illustration request. Failure is an outcome, not an error."""
    try:
        illustration = await illustrate(prompt)
    except Exception as e:
        logger.info("illustration failed for %r (%s); leaving item bare", prompt, e)
        return Enriched(item)
    return Enriched(item, illustration or None)


async def illustrate_concepts(
    result: AnalysisResult,
    illustrate: Illustrate,
    publish: Publish,
    limit: int = 3,
) -> List[Enriched[Concept]]:
    selected = list(enumerate(result.concepts[:max(0, limit)]))
    pending = [(i, c) for i, c in selected if c.illustration is None]

    enriched = await asyncio.gather(*(enrich(c, concept_prompt(c), illustrate) for _, c in pending))

    illustrations = {i: e.illustration for (i, _), e in zip(pending, enriched) if e.succeeded}
    logger.info("concept illustrations: %d/%d", len(illustrations), len(pending))
    if illustrations:
        publish(ConceptsIllustrated(result_id=result.result_id, illustrations=illustrations))
    return list(enriched)


async def illustrate_observations(
    result: AnalysisResult,
    illustrate: Illustrate,
    publish: Publish,
) -> int:
    published = 0
    for idx, obs in enumerate(result.observations):
        if obs.illustration is not None:
            continue
        e = await enrich(obs, observation_prompt(obs), illustrate)
        if e.succeeded:
            publish(ObservationIllustrated(result_id=result.result_id, index=idx, illustration=e.illustration))
            published += 1
    logger.info("observation illustrations: %d/%d", published, len(result.observations))
    return published


async def hydrate(
    result: AnalysisResult,
    illustrate: Illustrate,
    publish: Publish,
    *,
    concept_limit: int = settings.CONCEPT_ILLUSTRATION_LIMIT,
    wait_for_observations: bool = False,
) -> asyncio.Task:
    """
    Attach illustrations to ``result`` through ``publish``.

    Returns the observations task. With ``wait_for_observations`` it has
    already finished when this returns.
    """
    observations = asyncio.create_task(illustrate_observations(result, illustrate, publish))
    try:
        await illustrate_concepts(result, illustrate, publish, limit=concept_limit)
    except BaseException:
        observations.cancel()
        await asyncio.wait([observations])
        raise
    if wait_for_observations:
        await observations
    return observations
