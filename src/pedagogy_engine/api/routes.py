"""REST API routes exposing the engine operations."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pedagogy_engine.errors import PersistenceError, RepositoryUnavailableError, StoreError
from pedagogy_engine.models.chunk_state import Outcome
from pedagogy_engine.models.session import (
    ActivityRecommendation,
    AdaptationDirective,
    SessionPlan,
    SessionStats,
    SessionSummary,
)
from pedagogy_engine.session.orchestrator import PedagogyEngine

logger = structlog.get_logger()
router = APIRouter(prefix="/api")


class SessionRequest(BaseModel):
    topic: str | None = None
    duration_minutes: float = Field(default=10.0, gt=0)


class OutcomeRequest(BaseModel):
    chunk_id: str
    outcome: Outcome


class InterestsRequest(BaseModel):
    interests: list[str] = Field(min_length=1)


class DetectedInterestRequest(BaseModel):
    topic: str = Field(min_length=1)
    strength: float = Field(ge=0.0, le=1.0)


def get_engine(request: Request) -> PedagogyEngine:
    return request.app.state.engine


def _persistence_failure(e: PersistenceError) -> JSONResponse:
    body = {"error": e.message}
    if e.directive is not None:
        body["directive"] = e.directive.model_dump(mode="json")
    return JSONResponse(body, status_code=503)


@router.post("/learners/{learner_id}/sessions")
async def prepare_session(
    learner_id: str, body: SessionRequest, engine: PedagogyEngine = Depends(get_engine)
) -> SessionPlan:
    """Start a session and return its plan."""
    return await engine.prepare_session(learner_id, body.topic, body.duration_minutes)


@router.post("/learners/{learner_id}/outcomes", response_model=AdaptationDirective)
async def report_outcome(
    learner_id: str, body: OutcomeRequest, engine: PedagogyEngine = Depends(get_engine)
):
    """Record an activity result; returns the adaptation directive."""
    try:
        return await engine.report_outcome(learner_id, body.chunk_id, body.outcome)
    except PersistenceError as e:
        return _persistence_failure(e)
    except StoreError as e:
        logger.error("outcome_store_error", learner_id=learner_id, error=str(e))
        raise HTTPException(status_code=503, detail="Learner state unavailable")


@router.post("/learners/{learner_id}/sessions/end", response_model=SessionSummary)
async def end_session(
    learner_id: str, stats: SessionStats, engine: PedagogyEngine = Depends(get_engine)
):
    """Record session aggregates and return the session summary. Repeating the call is harmless."""
    try:
        return await engine.end_session(learner_id, stats)
    except PersistenceError as e:
        return _persistence_failure(e)
    except StoreError as e:
        logger.error("session_end_store_error", learner_id=learner_id, error=str(e))
        raise HTTPException(status_code=503, detail="Learner state unavailable")


@router.get("/learners/{learner_id}/due-count")
async def due_count(learner_id: str, engine: PedagogyEngine = Depends(get_engine)) -> dict:
    try:
        count = await engine.get_due_count(learner_id)
    except StoreError as e:
        logger.error("due_count_store_error", learner_id=learner_id, error=str(e))
        raise HTTPException(status_code=503, detail="Learner state unavailable")
    return {"learner_id": learner_id, "due": count}


@router.get("/learners/{learner_id}/next-activity")
async def next_activity(
    learner_id: str, engine: PedagogyEngine = Depends(get_engine)
) -> ActivityRecommendation | None:
    """Next recommended activity in the active session (null when none)."""
    return engine.next_activity(learner_id)


@router.get("/learners/{learner_id}/should-end")
async def should_end(learner_id: str, engine: PedagogyEngine = Depends(get_engine)) -> dict:
    should, reason = engine.should_end_session(learner_id)
    return {"should_end": should, "reason": reason}


@router.post("/learners/{learner_id}/decay")
async def run_decay(learner_id: str, engine: PedagogyEngine = Depends(get_engine)):
    try:
        decayed = await engine.run_decay(learner_id)
    except PersistenceError as e:
        return _persistence_failure(e)
    except StoreError as e:
        logger.error("decay_store_error", learner_id=learner_id, error=str(e))
        raise HTTPException(status_code=503, detail="Learner state unavailable")
    return {"learner_id": learner_id, "decayed": decayed}


@router.post("/learners/{learner_id}/interests")
async def add_interests(learner_id: str, body: InterestsRequest, engine: PedagogyEngine = Depends(get_engine)):
    """Add interests the learner picked; returns the combined interest list."""
    try:
        interests = await engine.add_interests(learner_id, body.interests)
    except PersistenceError as e:
        return _persistence_failure(e)
    except StoreError as e:
        logger.error("interests_store_error", learner_id=learner_id, error=str(e))
        raise HTTPException(status_code=503, detail="Learner state unavailable")
    return {"learner_id": learner_id, "interests": interests}


@router.post("/learners/{learner_id}/detected-interests")
async def record_detected_interest(
    learner_id: str, body: DetectedInterestRequest, engine: PedagogyEngine = Depends(get_engine)
):
    try:
        interests = await engine.record_detected_interest(learner_id, body.topic, body.strength)
    except PersistenceError as e:
        return _persistence_failure(e)
    except StoreError as e:
        logger.error("detected_interest_store_error", learner_id=learner_id, error=str(e))
        raise HTTPException(status_code=503, detail="Learner state unavailable")
    return {"learner_id": learner_id, "interests": interests}


@router.get("/topics")
async def topic_counts(language: str | None = None, engine: PedagogyEngine = Depends(get_engine)) -> dict:
    """Number of stored chunks per topic."""
    try:
        counts = await engine.topic_counts(language)
    except RepositoryUnavailableError as e:
        logger.error("topic_counts_unavailable", error=str(e))
        raise HTTPException(status_code=503, detail="Content repository unavailable")
    return {"language": language or engine.settings.default_language, "topics": counts}


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}
