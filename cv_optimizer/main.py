"""FastAPI JSON API for the CV optimization assistant."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .analysis import GapAnalyzer, PositionAnalyzer
from .config import get_settings
from .cover_letter import CoverLetterWriter
from .errors import (
    CVOptimizerError,
    GenerationError,
    GenerationTimeout,
    InvalidTransition,
    MissingPrerequisite,
    PersistenceError,
    SectionBusy,
)
from .generation import OpenAITextGenerator, TextGenerator
from .logging_utils import configure_logging, format_with_request, reset_request_id, set_request_id
from .models import ChatMessage, CVDocument, Position, SectionContent, SectionKey
from .optimizer import SectionOptimizer, detect_language
from .requirements import RequirementExtractor, extract_job_meta
from .session import OptimizationSession, SessionContext
from .stores import InMemoryStore

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="CV Optimization Assistant")

_GENERATOR: Optional[TextGenerator] = None
_STORE = InMemoryStore()
_SESSIONS: Dict[str, OptimizationSession] = {}
# oldest sessions are dropped past this many open ones
MAX_OPEN_SESSIONS = 100

_STATUS_BY_ERROR = (
    (MissingPrerequisite, 400),
    (InvalidTransition, 409),
    (SectionBusy, 409),
    (PersistenceError, 503),
    (GenerationTimeout, 504),
    (GenerationError, 502),
)


def get_generator() -> TextGenerator:
    """Lazy-load the OpenAI-backed generator."""

    global _GENERATOR
    if _GENERATOR is None:
        _GENERATOR = OpenAITextGenerator(get_settings())
    return _GENERATOR


def get_store() -> InMemoryStore:
    return _STORE


def get_sessions() -> Dict[str, OptimizationSession]:
    return _SESSIONS


@app.middleware("http")
async def request_context(request: Request, call_next):
    token = set_request_id(request.headers.get("x-request-id") or uuid.uuid4().hex[:12])
    try:
        return await call_next(request)
    finally:
        reset_request_id(token)


@app.exception_handler(CVOptimizerError)
async def handle_pipeline_error(request: Request, exc: CVOptimizerError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 502)
    logger.warning(format_with_request("%s %s failed with %s: %s"), request.method, request.url.path, exc.code, exc)
    return JSONResponse({"error": exc.user_message, "code": exc.code}, status_code=status)


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobDescriptionBody(_Body):
    job_description: str = Field(alias="jobDescription")


class MatchBody(JobDescriptionBody):
    cv: CVDocument
    is_optimized: bool = Field(default=False, alias="isOptimized")
    scope_to_section: Optional[str] = Field(default=None, alias="scopeToSection")


class PositionBody(JobDescriptionBody):
    position: Position


class ExperienceBody(JobDescriptionBody):
    cv: CVDocument


class OptimizeSectionBody(JobDescriptionBody):
    content: SectionContent
    chat: List[ChatMessage]
    section: str = "section"
    target_language: Optional[str] = Field(default=None, alias="targetLanguage")


class CoverLetterBody(JobDescriptionBody):
    cv: CVDocument
    target_language: Optional[str] = Field(default=None, alias="targetLanguage")


class SaveCVBody(_Body):
    cv: CVDocument


class CreateSessionBody(JobDescriptionBody):
    cv: Optional[CVDocument] = None


class MessageBody(_Body):
    content: str


# ---------------------------------------------------------------------------
# Stateless analysis endpoints
# ---------------------------------------------------------------------------


@app.post("/analyze-job")
async def analyze_job(body: JobDescriptionBody, generator: TextGenerator = Depends(get_generator)):
    analysis = await RequirementExtractor(generator).extract(body.job_description)
    return {"analysis": _dump(analysis)}


@app.post("/analyze-match")
async def analyze_match(body: MatchBody, generator: TextGenerator = Depends(get_generator)):
    scope = None
    if body.scope_to_section:
        try:
            scope = SectionKey.parse(body.scope_to_section)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    analysis = await GapAnalyzer(generator).analyze(
        body.cv, body.job_description, is_optimized_pass=body.is_optimized, scope_to_section=scope
    )
    return _dump(analysis)


@app.post("/analyze-position")
async def analyze_position(body: PositionBody, generator: TextGenerator = Depends(get_generator)):
    analysis = await PositionAnalyzer(generator).analyze_position(body.position, body.job_description)
    return {"positionAnalysis": _dump(analysis)}


@app.post("/analyze-experience")
async def analyze_experience(body: ExperienceBody, generator: TextGenerator = Depends(get_generator)):
    analysis = await GapAnalyzer(generator).analyze_experience(body.cv, body.job_description)
    return {"experienceAnalysis": _dump(analysis)}


@app.post("/optimize-section")
async def optimize_section(body: OptimizeSectionBody, generator: TextGenerator = Depends(get_generator)):
    result = await SectionOptimizer(generator).optimize(
        body.content,
        body.chat,
        body.job_description,
        body.target_language or detect_language(body.job_description),
        section_name=body.section,
    )
    return _dump(result)


@app.post("/extract-job-details")
async def extract_job_details(body: JobDescriptionBody, generator: TextGenerator = Depends(get_generator)):
    return _dump(await extract_job_meta(generator, body.job_description))


@app.post("/generate-cover-letter")
async def generate_cover_letter(body: CoverLetterBody, generator: TextGenerator = Depends(get_generator)):
    letter = await CoverLetterWriter(generator).write(
        body.cv, body.job_description, body.target_language or detect_language(body.job_description)
    )
    return {"coverLetter": _dump(letter)}


# ---------------------------------------------------------------------------
# Stored CV and applications
# ---------------------------------------------------------------------------


@app.get("/cv/latest")
async def latest_cv(store: InMemoryStore = Depends(get_store)):
    return {"cv": _dump(await store.fetch_current_cv())}


@app.post("/cv/save")
async def save_cv(body: SaveCVBody, store: InMemoryStore = Depends(get_store)):
    stored = await store.persist_cv(body.cv)
    return {"success": True, "id": stored.id, "cv": _dump(stored.cv)}


@app.get("/applications")
async def list_applications(store: InMemoryStore = Depends(get_store)):
    records = await store.list_applications()
    return {"applications": [record.model_dump(mode="json", by_alias=True) for record in records]}


@app.get("/applications/{application_id}")
async def get_application(application_id: str, store: InMemoryStore = Depends(get_store)):
    try:
        record = await store.get_application(application_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=404, detail="Application not found") from exc
    return {"application": record.model_dump(mode="json", by_alias=True)}


@app.delete("/applications/{application_id}")
async def delete_application(application_id: str, store: InMemoryStore = Depends(get_store)):
    try:
        await store.delete_application(application_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=404, detail="Application not found") from exc
    return {"success": True}


# ---------------------------------------------------------------------------
# Optimization sessions
# ---------------------------------------------------------------------------


def _session_payload(session: OptimizationSession) -> Dict[str, Any]:
    context = session.context
    return {
        "sessionId": session.session_id,
        "targetLanguage": context.target_language,
        "jobMeta": _dump(context.job_meta),
        "jobAnalysis": _dump(context.job_analysis) if context.job_analysis else None,
        "analysis": _dump(context.initial_analysis) if context.initial_analysis else None,
        "positionAnalyses": {str(index): _dump(item) for index, item in context.position_analyses.items()},
        "abortAvailable": session.abort_available,
        "sections": {key: _dump(state) for key, state in session.sections.items()},
    }


def _find_session(session_id: str, sessions: Dict[str, OptimizationSession]) -> OptimizationSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.post("/sessions")
async def create_session(
    body: CreateSessionBody,
    generator: TextGenerator = Depends(get_generator),
    store: InMemoryStore = Depends(get_store),
    sessions: Dict[str, OptimizationSession] = Depends(get_sessions),
):
    if body.cv is not None:
        context = SessionContext.create(body.cv, body.job_description)
    else:
        context = await SessionContext.load(store, body.job_description)

    session = OptimizationSession(context, generator, store=store)
    await session.initialize()
    while len(sessions) >= MAX_OPEN_SESSIONS:
        stale = next(iter(sessions))
        sessions.pop(stale)
        logger.info(format_with_request("Dropped stale session %s"), stale)
    sessions[session.session_id] = session
    return _session_payload(session)


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, sessions: Dict[str, OptimizationSession] = Depends(get_sessions)):
    return _session_payload(_find_session(session_id, sessions))


@app.post("/sessions/{session_id}/sections/{key}/open")
async def open_section(key: str, session_id: str, sessions: Dict[str, OptimizationSession] = Depends(get_sessions)):
    return _dump(_find_session(session_id, sessions).open_section(key))


@app.post("/sessions/{session_id}/sections/{key}/messages")
async def post_message(
    key: str,
    session_id: str,
    body: MessageBody,
    sessions: Dict[str, OptimizationSession] = Depends(get_sessions),
):
    state = await _find_session(session_id, sessions).submit_message(key, body.content)
    return _dump(state)


@app.post("/sessions/{session_id}/sections/{key}/start-over")
async def start_over(key: str, session_id: str, sessions: Dict[str, OptimizationSession] = Depends(get_sessions)):
    return _dump(_find_session(session_id, sessions).start_over(key))


@app.post("/sessions/{session_id}/sections/{key}/accept")
async def accept_section(key: str, session_id: str, sessions: Dict[str, OptimizationSession] = Depends(get_sessions)):
    return _dump(_find_session(session_id, sessions).accept(key))


@app.post("/sessions/{session_id}/sections/{key}/skip")
async def skip_section(key: str, session_id: str, sessions: Dict[str, OptimizationSession] = Depends(get_sessions)):
    return _dump(_find_session(session_id, sessions).skip(key))


@app.post("/sessions/{session_id}/save")
async def save_session(session_id: str, sessions: Dict[str, OptimizationSession] = Depends(get_sessions)):
    result = await _find_session(session_id, sessions).save()
    sessions.pop(session_id, None)
    return _dump(result)


@app.post("/sessions/{session_id}/abort")
async def abort_session(session_id: str, sessions: Dict[str, OptimizationSession] = Depends(get_sessions)):
    session = _find_session(session_id, sessions)
    session.abort()
    sessions.pop(session_id, None)
    return {"aborted": True}
