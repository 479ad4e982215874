from __future__ import annotations

# stdlib
from typing import Any, List, Set
import asyncio, json, logging

# third-party
from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import StreamingResponse

# local
from physilink.core.config import settings
from physilink.models.schemas import (
    AnalysisResult,
    AnalyzeIn,
    CreateSessionResponse,
    DisplayState,
    KnowledgeFile,
    StrictModeIn,
    VerifyIn,
)
from physilink.services.analysis_client import AnalysisClient, AnalysisError
from physilink.services.hydrator import hydrate
from physilink.services.knowledge import KnowledgeFileError, declared_type, decode_data_url, ingest
from physilink.services.presentation import build_view
from physilink.services.session_store import (
    AnalysisFailed,
    AnalysisStarted,
    AnalysisSucceeded,
    KnowledgeAdded,
    KnowledgeRemoved,
    ResultCleared,
    SessionNotFound,
    SessionStore,
    StrictModeChanged,
    Update,
    VerificationCleared,
    VerificationFailed,
    VerificationStarted,
    VerificationSucceeded,
    store,
)


# ==============================================================================
# Config / Globals
# ==============================================================================

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])

logger = logging.getLogger("physilink.sessions")

client = AnalysisClient()

DEFAULT_CONTEXT = "General physics context"
KEEPALIVE_SECONDS = 15.0

# hydration runs after the response; keep strong refs until done
_background: Set[asyncio.Task] = set()


def get_store() -> SessionStore:
    return store


def get_client() -> AnalysisClient:
    return client


def _sse(event: str, data: Any) -> bytes:
    """Pack a Server-Sent Event {event, data} as bytes."""
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


def _state_or_404(s: SessionStore, sid: str) -> DisplayState:
    try:
        return s.get(sid)
    except SessionNotFound:
        raise HTTPException(404, "Session not found")


def _track(task: asyncio.Task) -> None:
    _background.add(task)
    task.add_done_callback(_background.discard)


async def cancel_background() -> None:
    """Cancel hydration still in flight and wait for it to unwind."""
    tasks = list(_background)
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    if tasks:
        logger.info("cancelled %d hydration task(s)", len(tasks))


# ==============================================================================
# Hydration
# ==============================================================================

async def _run_hydration(s: SessionStore, sid: str, result: AnalysisResult, c: AnalysisClient) -> None:
    def publish(update: Update) -> None:
        try:
            s.dispatch(sid, update)
        except SessionNotFound:
            logger.info("session %s gone; dropping %s", sid, type(update).__name__)

    try:
        observations = await hydrate(
            result,
            c.generate_illustration,
            publish,
            concept_limit=settings.CONCEPT_ILLUSTRATION_LIMIT,
            wait_for_observations=settings.WAIT_FOR_OBSERVATIONS,
        )
    except Exception as e:
        logger.warning("hydration of %s failed (%s); result stays bare", result.result_id, e)
        return
    if not observations.done():
        _track(observations)


# ==============================================================================
# Routes
# ==============================================================================

@router.post("", response_model=CreateSessionResponse)
async def create_session(s: SessionStore = Depends(get_store)):
    sid = s.create()
    return {"session_id": sid, "state": s.get(sid)}


@router.get("/{sid}", response_model=DisplayState)
async def get_state(sid: str, s: SessionStore = Depends(get_store)):
    return _state_or_404(s, sid)


@router.delete("/{sid}", status_code=204)
async def delete_session(sid: str, s: SessionStore = Depends(get_store)):
    try:
        s.delete(sid)
    except SessionNotFound:
        raise HTTPException(404, "Session not found")
    return Response(status_code=204)


@router.get("/{sid}/view")
def get_view(sid: str, s: SessionStore = Depends(get_store)):
    return build_view(_state_or_404(s, sid))


@router.get("/{sid}/events")
async def stream_events(sid: str, request: Request, s: SessionStore = Depends(get_store)):
    initial = _state_or_404(s, sid)
    q = s.subscribe(sid)

    async def gen():
        try:
            yield _sse("state", initial.model_dump(mode="json"))
            while True:
                if await request.is_disconnected():
                    break
                try:
                    state = await asyncio.wait_for(q.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield b": keep-alive\n\n"
                    continue
                if state is None:
                    yield _sse("closed", {"session_id": sid})
                    break
                yield _sse("state", state.model_dump(mode="json"))
        finally:
            s.unsubscribe(sid, q)

    return StreamingResponse(gen(), media_type="text/event-stream")


@router.post("/{sid}/analyze", response_model=DisplayState)
async def analyze(
    sid: str,
    payload: AnalyzeIn,
    s: SessionStore = Depends(get_store),
    c: AnalysisClient = Depends(get_client),
):
    state = _state_or_404(s, sid)
    query = payload.query.strip()
    if not query and not payload.image:
        return state

    image = None
    if payload.image:
        try:
            mime_type, data = decode_data_url(payload.image)
        except KnowledgeFileError as e:
            raise HTTPException(400, str(e))
        image = KnowledgeFile(name="capture", type=declared_type(mime_type), data=data, mime_type=mime_type)

    state = s.dispatch(sid, AnalysisStarted())
    try:
        result = await c.analyze(query, image, state.knowledge_files, state.strict_mode)
    except Exception as e:
        logger.exception("Analysis error: %s", e)
        message = str(e) if isinstance(e, AnalysisError) and str(e) else "Analysis failed."
        s.dispatch(sid, AnalysisFailed(message))
        raise HTTPException(502, message)

    state = s.dispatch(sid, AnalysisSucceeded(result))
    _track(asyncio.create_task(_run_hydration(s, sid, result, c)))
    return state


@router.delete("/{sid}/result", response_model=DisplayState)
async def clear_result(sid: str, s: SessionStore = Depends(get_store)):
    _state_or_404(s, sid)
    return s.dispatch(sid, ResultCleared())


@router.post("/{sid}/verify", response_model=DisplayState)
async def verify(
    sid: str,
    payload: VerifyIn,
    s: SessionStore = Depends(get_store),
    c: AnalysisClient = Depends(get_client),
):
    state = _state_or_404(s, sid)
    user_work = payload.user_work.strip()
    if not user_work:
        return state

    context = (state.result.summary if state.result else "") or (payload.context or "").strip() or DEFAULT_CONTEXT
    state = s.dispatch(sid, VerificationStarted())
    try:
        verification = await c.verify(context, user_work, state.knowledge_files, state.strict_mode)
    except Exception as e:
        logger.exception("Verification error: %s", e)
        message = str(e) if isinstance(e, AnalysisError) and str(e) else "Verification failed."
        s.dispatch(sid, VerificationFailed(message))
        raise HTTPException(502, message)

    return s.dispatch(sid, VerificationSucceeded(verification))


@router.delete("/{sid}/verification", response_model=DisplayState)
async def clear_verification(sid: str, s: SessionStore = Depends(get_store)):
    _state_or_404(s, sid)
    return s.dispatch(sid, VerificationCleared())


@router.post("/{sid}/knowledge", response_model=DisplayState)
async def upload_knowledge(
    sid: str,
    files: List[UploadFile] = File(...),
    s: SessionStore = Depends(get_store),
):
    _state_or_404(s, sid)
    ingested = []
    for f in files:
        raw = await f.read()
        try:
            ingested.append(ingest(f.filename or "", raw, f.content_type or ""))
        except KnowledgeFileError as e:
            raise HTTPException(400, str(e))
    return s.dispatch(sid, KnowledgeAdded(tuple(ingested)))


@router.delete("/{sid}/knowledge/{index}", response_model=DisplayState)
async def remove_knowledge(sid: str, index: int, s: SessionStore = Depends(get_store)):
    state = _state_or_404(s, sid)
    if not (0 <= index < len(state.knowledge_files)):
        raise HTTPException(404, "Knowledge file not found")
    return s.dispatch(sid, KnowledgeRemoved(index))


@router.put("/{sid}/strict-mode", response_model=DisplayState)
async def set_strict_mode(sid: str, payload: StrictModeIn, s: SessionStore = Depends(get_store)):
    _state_or_404(s, sid)
    return s.dispatch(sid, StrictModeChanged(payload.enabled))
