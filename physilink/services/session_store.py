from __future__ import annotations

# stdlib
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union
from uuid import uuid4
import asyncio, logging, time

# local
from physilink.core.config import settings
from physilink.models.schemas import (
    AnalysisResult,
    DisplayState,
    KnowledgeFile,
    TheoryVerification,
)


logger = logging.getLogger("physilink.state")


class SessionNotFound(KeyError):
    pass


# ==============================================================================
# Updates
# ==============================================================================

@dataclass(frozen=True)
class AnalysisStarted:
    pass


@dataclass(frozen=True)
class AnalysisSucceeded:
    result: AnalysisResult


@dataclass(frozen=True)
class AnalysisFailed:
    message: str


@dataclass(frozen=True)
class ResultCleared:
    pass


@dataclass(frozen=True)
class ConceptsIllustrated:
    result_id: str
    illustrations: Mapping[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ObservationIllustrated:
    result_id: str
    index: int
    illustration: str


@dataclass(frozen=True)
class VerificationStarted:
    pass


@dataclass(frozen=True)
class VerificationSucceeded:
    verification: TheoryVerification


@dataclass(frozen=True)
class VerificationFailed:
    message: str


@dataclass(frozen=True)
class VerificationCleared:
    pass


@dataclass(frozen=True)
class KnowledgeAdded:
    files: Tuple[KnowledgeFile, ...]


@dataclass(frozen=True)
class KnowledgeRemoved:
    index: int


@dataclass(frozen=True)
class StrictModeChanged:
    enabled: bool


Update = Union[
    AnalysisStarted, AnalysisSucceeded, AnalysisFailed, ResultCleared,
    ConceptsIllustrated, ObservationIllustrated,
    VerificationStarted, VerificationSucceeded, VerificationFailed, VerificationCleared,
    KnowledgeAdded, KnowledgeRemoved, StrictModeChanged,
]


# ==============================================================================
# Reducer
# ==============================================================================

def _changed(state: DisplayState, **changes) -> DisplayState:
    return state.model_copy(update={**changes, "version": state.version + 1})


def _current_result(state: DisplayState, result_id: str) -> Optional[AnalysisResult]:
    if state.result is None or state.result.result_id != result_id:
        logger.debug("discarding stale illustration batch %s", result_id)
        return None
    return state.result


def _merge_concepts(state: DisplayState, update: ConceptsIllustrated) -> DisplayState:
    result = _current_result(state, update.result_id)
    if result is None:
        return state
    concepts = list(result.concepts)
    touched = False
    for idx, illustration in update.illustrations.items():
        if not illustration or not (0 <= idx < len(concepts)):
            continue
        if concepts[idx].illustration is not None:
            continue  # write-once
        concepts[idx] = concepts[idx].model_copy(update={"illustration": illustration})
        touched = True
    if not touched:
        return state
    return _changed(state, result=result.model_copy(update={"concepts": concepts}))


def _merge_observation(state: DisplayState, update: ObservationIllustrated) -> DisplayState:
    result = _current_result(state, update.result_id)
    if result is None or not update.illustration:
        return state
    if not (0 <= update.index < len(result.observations)):
        return state
    current = result.observations[update.index]
    if current.illustration is not None:
        return state  # write-once
    observations = list(result.observations)
    observations[update.index] = current.model_copy(update={"illustration": update.illustration})
    return _changed(state, result=result.model_copy(update={"observations": observations}))


def reduce(state: DisplayState, update: Update) -> DisplayState:
    """Return the next display state. Never mutates ``state``."""
    if isinstance(update, AnalysisStarted):
        return _changed(state, loading=True, error=None)
    if isinstance(update, AnalysisSucceeded):
        return _changed(state, loading=False, error=None, result=update.result)
    if isinstance(update, AnalysisFailed):
        return _changed(state, loading=False, error=update.message)
    if isinstance(update, ResultCleared):
        return state if state.result is None else _changed(state, result=None)

    if isinstance(update, ConceptsIllustrated):
        return _merge_concepts(state, update)
    if isinstance(update, ObservationIllustrated):
        return _merge_observation(state, update)

    if isinstance(update, VerificationStarted):
        return _changed(state, loading=True, error=None)
    if isinstance(update, VerificationSucceeded):
        return _changed(state, loading=False, error=None, verification=update.verification)
    if isinstance(update, VerificationFailed):
        return _changed(state, loading=False, error=update.message)
    if isinstance(update, VerificationCleared):
        return state if state.verification is None else _changed(state, verification=None)

    if isinstance(update, KnowledgeAdded):
        if not update.files:
            return state
        return _changed(state, knowledge_files=[*state.knowledge_files, *update.files])
    if isinstance(update, KnowledgeRemoved):
        if not (0 <= update.index < len(state.knowledge_files)):
            return state
        files = [f for i, f in enumerate(state.knowledge_files) if i != update.index]
        return _changed(state, knowledge_files=files)
    if isinstance(update, StrictModeChanged):
        if state.strict_mode == update.enabled:
            return state
        return _changed(state, strict_mode=update.enabled)

    raise TypeError(f"unknown update {update!r}")


# ==============================================================================
# Store
# ==============================================================================

class SessionStore:
    """
    In-memory display state per session, with SSE fan-out.

    Sessions idle for ``idle_seconds`` (and not streamed to) are dropped when
    a new one is created; past ``max_sessions`` the least recently used go.
    Subscribers of a dropped session receive ``None`` as a closing signal.
    """

    def __init__(
        self,
        queue_size: int = settings.SSE_QUEUE_SIZE,
        *,
        max_sessions: int = settings.MAX_SESSIONS,
        idle_seconds: float = settings.SESSION_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._states: Dict[str, DisplayState] = {}
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self._touched: Dict[str, float] = {}
        self._queue_size = queue_size
        self._max_sessions = max(1, max_sessions)
        self._idle_seconds = idle_seconds
        self._clock = clock

    def create(self) -> str:
        self.evict_idle()
        while len(self._states) >= self._max_sessions:
            oldest = min(self._touched, key=self._touched.__getitem__)
            logger.info("session %s evicted (capacity)", oldest)
            self.delete(oldest)

        sid = uuid4().hex
        self._states[sid] = DisplayState()
        self._subscribers[sid] = set()
        self._touched[sid] = self._clock()
        logger.info("session %s created", sid)
        return sid

    def get(self, sid: str) -> DisplayState:
        try:
            state = self._states[sid]
        except KeyError:
            raise SessionNotFound(sid)
        self._touched[sid] = self._clock()
        return state

    def delete(self, sid: str) -> None:
        if sid not in self._states:
            raise SessionNotFound(sid)
        del self._states[sid]
        self._touched.pop(sid, None)
        for q in self._subscribers.pop(sid, set()):
            self._offer(q, None)
        logger.info("session %s deleted", sid)

    def evict_idle(self) -> List[str]:
        """Drop sessions untouched for longer than the idle limit; returns their ids."""
        cutoff = self._clock() - self._idle_seconds
        stale = [
            sid for sid, at in self._touched.items()
            if at < cutoff and not self._subscribers.get(sid)
        ]
        for sid in stale:
            logger.info("session %s evicted (idle)", sid)
            self.delete(sid)
        return stale

    def dispatch(self, sid: str, update: Update) -> DisplayState:
        """Apply ``update`` to the latest stored state and notify subscribers."""
        current = self.get(sid)
        nxt = reduce(current, update)
        if nxt is current:
            return current
        self._states[sid] = nxt
        for q in list(self._subscribers.get(sid, ())):
            self._offer(q, nxt)
        return nxt

    @staticmethod
    def _offer(q: asyncio.Queue, item: Optional[DisplayState]) -> None:
        if q.full():
            # slow consumer: keep only the newest snapshot
            try:
                q.get_nowait()
            except asyncio.QueueEmpty:
                pass
        q.put_nowait(item)

    def subscribe(self, sid: str) -> asyncio.Queue:
        self.get(sid)
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[sid].add(q)
        return q

    def unsubscribe(self, sid: str, q: asyncio.Queue) -> None:
        self._subscribers.get(sid, set()).discard(q)

    def subscriber_count(self, sid: str) -> int:
        return len(self._subscribers.get(sid, ()))

    def sessions(self) -> List[str]:
        return list(self._states)


store = SessionStore()
