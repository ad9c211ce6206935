"""
Adaptive Test Engine API

REST API for computerized adaptive testing using the 3PL IRT model.
Loads a calibrated item pool, runs test sessions, processes answers and
selects optimal items. All adaptive logic lives in the session controller;
this module only translates HTTP to controller calls.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from . import redis_store
from .config import CATConfig, SelectionConstraints
from .controller import (
    AnswerResult,
    FinalResult,
    NextItem,
    TestSessionController,
    percentile,
    performance_level,
)
from .errors import (
    CATError,
    InvalidSessionStateError,
    ItemAlreadyAnsweredError,
    ItemNotIssuedError,
    SessionNotFoundError,
)
from .estimation import Prior, build_estimator
from .interfaces import ExposureLedger, SessionStore
from .irt import Item, ItemStatus, confidence_interval
from .redis_store import RedisExposureLedger, RedisSessionStore
from .session import TestSession
from .simulation import simulate_test
from .stores import (
    AnswerKeyEvaluator,
    InMemoryExposureLedger,
    InMemoryItemRepository,
    InMemoryProfileStore,
    InMemorySessionArchive,
    InMemorySessionStore,
)

logger = logging.getLogger(__name__)

# ============================================================
# CONSTANTS
# ============================================================

VERSION = "1.0.0"
MAX_SESSIONS = 10_000
MAX_ITEM_POOL_SIZE = 10_000
MAX_ITEM_BATCH_SIZE = 1000
REDIS_URL = os.getenv("CAT_REDIS_URL")

# ============================================================
# REQUEST MODELS
# ============================================================


class ItemCreate(BaseModel):
    """Request model for adding a calibrated item to the pool."""

    id: str | None = None
    difficulty: float = Field(..., ge=-4, le=4, description="Difficulty parameter b (-4 to 4)")
    discrimination: float = Field(
        1.0, ge=0.1, le=3, description="Discrimination parameter a (0.1 to 3)"
    )
    guessing: float = Field(0.0, ge=0, lt=1, description="Pseudo-guessing parameter c [0, 1)")
    subject: str | None = None
    skill: str | None = None
    grade_min: int | None = None
    grade_max: int | None = None
    status: ItemStatus = ItemStatus.PUBLISHED
    content: dict[str, Any] = Field(default_factory=dict)


class ItemBatch(BaseModel):
    items: list[ItemCreate] = Field(..., min_length=1, max_length=MAX_ITEM_BATCH_SIZE)


class StoppingOverrides(BaseModel):
    min_questions: int | None = Field(None, ge=1, le=500)
    max_questions: int | None = Field(None, ge=1, le=500)
    time_limit_seconds: float | None = Field(None, gt=0)
    target_se: float | None = Field(None, gt=0, le=5.0)
    ci_width_threshold: float | None = Field(None, ge=0)


class TestCreate(BaseModel):
    """Request model for starting an adaptive test."""

    examinee_id: str = Field(..., min_length=1, max_length=128)
    estimator: Literal["mle", "eap"] | None = None
    selection_algorithm: Literal["maximum_information", "owen"] | None = None
    exposure_control: bool | None = None
    stopping: StoppingOverrides | None = None
    constraints: SelectionConstraints | None = None


class AnswerSubmit(BaseModel):
    """Request model for submitting an examinee's answer.

    ``response`` is graded against the item's answer key. Items without an
    answer key accept a pre-graded ``correct`` flag instead.
    """

    item_id: str
    response: Any = None
    correct: bool | None = None
    response_time_seconds: float | None = Field(None, ge=0)
    hints_used: int = Field(0, ge=0)
    attempts: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _check_answer(self) -> "AnswerSubmit":
        if self.response is None and self.correct is None:
            raise ValueError("Either 'response' or 'correct' is required")
        return self

    @property
    def raw_response(self) -> Any:
        if self.response is not None:
            return self.response
        return {"correct": self.correct}


class TestEnd(BaseModel):
    reason: Literal["completed", "aborted"] = "completed"


class ResponseInput(BaseModel):
    """Request model for a single response in standalone estimation."""

    difficulty: float = Field(..., ge=-4, le=4, description="Difficulty parameter b (-4 to 4)")
    discrimination: float = Field(
        1.0, ge=0.1, le=3, description="Discrimination parameter a (0.1 to 3)"
    )
    guessing: float = Field(0.0, ge=0, lt=1)
    correct: bool


# ============================================================
# RESPONSE MODELS
# ============================================================


class ItemResponse(BaseModel):
    """Response model for an issued item."""

    id: str
    difficulty: float
    discrimination: float
    guessing: float
    subject: str | None
    skill: str | None
    content: dict[str, Any]
    probability_correct: float


class AbilityResponse(BaseModel):
    """Response model for an examinee's current ability estimate."""

    theta: float
    standard_error: float
    confidence_interval: list[float]
    questions_answered: int


class ResponseLogEntry(BaseModel):
    item_id: str
    correct: bool
    response_time_seconds: float | None
    theta_before: float
    theta_after: float
    se_before: float
    se_after: float


class FinalResultResponse(BaseModel):
    """Response model for a finished test."""

    session_id: str
    examinee_id: str
    status: str
    reason: str
    theta: float
    standard_error: float
    confidence_interval: list[float]
    percentile: float
    performance_level: str
    total_questions: int
    correct_answers: int
    percentage_score: float
    average_response_time: float | None
    elapsed_seconds: float
    responses: list[ResponseLogEntry]


class NextItemResponse(BaseModel):
    """Either the next item to administer or the final result."""

    session_id: str
    is_final: bool
    item: ItemResponse | None = None
    ability: AbilityResponse | None = None
    time_remaining_seconds: float | None = None
    questions_remaining: int | None = None
    result: FinalResultResponse | None = None


class FeedbackResponse(BaseModel):
    is_correct: bool
    message: str
    explanation: str
    next_steps: list[str]


class AnswerResponse(BaseModel):
    session_id: str
    item_id: str
    correct: bool
    theta_before: float
    standard_error_before: float
    ability: AbilityResponse
    feedback: FeedbackResponse


class SessionResponse(BaseModel):
    """Response model for the session state."""

    session_id: str
    examinee_id: str
    status: str
    ability: AbilityResponse
    pending_item_id: str | None
    estimator: str
    selection_algorithm: str
    constraints_relaxed: bool
    elapsed_seconds: float


class EstimateResponse(BaseModel):
    """Response model for standalone ability estimation."""

    theta: float
    standard_error: float
    confidence_interval: list[float]
    percentile: float
    performance_level: str
    questions_answered: int
    correct: int
    accuracy: float
    method: str
    converged: bool


class SimulationStepResponse(BaseModel):
    """A single step in a simulation history."""

    step: int
    item_id: str
    item_difficulty: float
    correct: bool
    estimated_theta: float
    standard_error: float


class SimulationResponse(BaseModel):
    """Response model for simulation results."""

    true_theta: float
    final_estimate: float
    estimation_error: float
    standard_error: float
    questions_used: int
    stop_reason: str
    history: list[SimulationStepResponse]


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    version: str
    active_sessions: int
    item_pool_size: int


class ItemsLoadedResponse(BaseModel):
    loaded: int
    item_pool_size: int


# ============================================================
# APP
# ============================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the storage backend on startup and release the Redis client on shutdown."""
    logger.info("Starting Adaptive Test Engine (%s state)", "redis" if REDIS_URL else "in-memory")
    yield
    if isinstance(session_store, RedisSessionStore):
        await session_store.close()
    logger.info("Adaptive Test Engine stopped")


app = FastAPI(
    title="Adaptive Test Engine",
    description="3PL IRT computerized adaptive testing engine",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_ERROR_STATUS_CODES: dict[type[CATError], int] = {
    SessionNotFoundError: 404,
    ItemNotIssuedError: 409,
    ItemAlreadyAnsweredError: 409,
    InvalidSessionStateError: 409,
}


@app.exception_handler(CATError)
async def engine_error_handler(request: Request, exc: CATError) -> JSONResponse:
    """Map engine errors to client error responses."""
    status_code = next(
        (code for cls, code in _ERROR_STATUS_CODES.items() if isinstance(exc, cls)), 400
    )
    logger.info("%s %s -> %d: %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions and return a safe 500 response."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Shared Redis state when a URL is configured, otherwise in-process state
ENGINE_CONFIG = CATConfig()

repository = InMemoryItemRepository()
profiles = InMemoryProfileStore()
archive = InMemorySessionArchive()


def build_stores(
    config: CATConfig, redis_url: str | None = None
) -> tuple[ExposureLedger, SessionStore]:
    """Create the exposure ledger and session store for ``config``."""
    if redis_url:
        client = redis_store.connect(redis_url)
        return (
            RedisExposureLedger(client, window_seconds=config.exposure.window_seconds),
            RedisSessionStore(client, ttl_seconds=config.session_ttl_seconds),
        )
    return (
        InMemoryExposureLedger(window_seconds=config.exposure.window_seconds),
        InMemorySessionStore(ttl_seconds=config.session_ttl_seconds),
    )


ledger, session_store = build_stores(ENGINE_CONFIG, REDIS_URL)


def _build_controller() -> TestSessionController:
    return TestSessionController(
        repository=repository,
        ledger=ledger,
        store=session_store,
        evaluator=AnswerKeyEvaluator(repository),
        profiles=profiles,
        archive=archive,
        config=ENGINE_CONFIG,
    )


controller = _build_controller()


def reset_state() -> None:
    """Drop every item, profile and archived result and rebuild the stores."""
    global ledger, session_store, controller
    repository.clear()
    profiles.clear()
    archive.records.clear()
    ledger, session_store = build_stores(ENGINE_CONFIG, REDIS_URL)
    controller = _build_controller()


# ============================================================
# ENDPOINTS
# ============================================================


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint for monitoring and orchestration."""
    return HealthResponse(
        status="ok",
        version=VERSION,
        active_sessions=await session_store.count_active(),
        item_pool_size=len(repository),
    )


@app.post("/items", response_model=ItemsLoadedResponse, status_code=201)
async def load_items(batch: ItemBatch) -> ItemsLoadedResponse:
    """Bulk-load calibrated items into the item pool.

    Items with an existing id replace the stored item.
    """
    ids = [i.id for i in batch.items if i.id is not None]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Duplicate item IDs in batch")

    new_ids = {i for i in ids if i not in repository}
    new_count = len(new_ids) + sum(1 for i in batch.items if i.id is None)
    if len(repository) + new_count > MAX_ITEM_POOL_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"Item pool limit exceeded ({MAX_ITEM_POOL_SIZE} items)",
        )

    try:
        items = [
            (
                Item(
                    id=i.id or f"item_{uuid.uuid4().hex[:8]}",
                    difficulty=i.difficulty,
                    discrimination=i.discrimination,
                    guessing=i.guessing,
                    subject=i.subject,
                    skill=i.skill,
                    grade_min=i.grade_min,
                    grade_max=i.grade_max,
                    status=i.status,
                ),
                i.content,
            )
            for i in batch.items
        ]
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    for item, content in items:
        repository.add_item(item, content)

    logger.info("Loaded %d items; pool size is now %d", len(items), len(repository))
    return ItemsLoadedResponse(loaded=len(items), item_pool_size=len(repository))


@app.post("/tests", response_model=SessionResponse, status_code=201)
async def start_test(request: TestCreate) -> SessionResponse:
    """Start an adaptive test for an examinee.

    Per-test overrides of the estimator, selection algorithm, exposure control
    and stopping rules are applied on top of the engine defaults.
    """
    if await session_store.count_active() >= MAX_SESSIONS:
        raise HTTPException(
            status_code=503,
            detail=f"Server at capacity ({MAX_SESSIONS} active sessions). Try again later.",
        )

    try:
        config = controller.config.with_overrides(
            estimator=request.estimator,
            selection_algorithm=request.selection_algorithm,
            stopping=request.stopping.model_dump(exclude_none=True) if request.stopping else None,
            exposure=(
                {"enabled": request.exposure_control}
                if request.exposure_control is not None
                else None
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    session = await controller.start_test(request.examinee_id, config, request.constraints)
    return _session_response(session)


@app.get("/tests/{session_id}", response_model=SessionResponse)
async def get_test(session_id: str) -> SessionResponse:
    """Get the current state of an active test."""
    session = await controller.get_session(session_id)
    return _session_response(session)


@app.post("/tests/{session_id}/next-item", response_model=NextItemResponse)
async def next_item(session_id: str) -> NextItemResponse:
    """Get the next item to administer, or the final result once the test stops."""
    step = await controller.get_next_item(session_id)
    if isinstance(step, FinalResult):
        return NextItemResponse(
            session_id=session_id, is_final=True, result=_final_response(step)
        )
    return _next_item_response(step)


@app.post("/tests/{session_id}/answers", response_model=AnswerResponse)
async def submit_answer(session_id: str, answer: AnswerSubmit) -> AnswerResponse:
    """Submit an answer to the issued item and update the ability estimate."""
    try:
        result = await controller.submit_answer(
            session_id,
            answer.item_id,
            answer.raw_response,
            response_time_seconds=answer.response_time_seconds,
            hints_used=answer.hints_used,
            attempts=answer.attempts,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _answer_response(result)


@app.post("/tests/{session_id}/end", response_model=FinalResultResponse)
async def end_test(session_id: str, request: TestEnd | None = None) -> FinalResultResponse:
    """End a test early, completing or aborting it."""
    reason = request.reason if request is not None else "completed"
    result = await controller.end_test(session_id, reason)
    return _final_response(result)


@app.post("/estimate", response_model=EstimateResponse)
async def estimate_ability_standalone(
    responses: list[ResponseInput],
    estimator: Literal["mle", "eap"] = Query("eap"),
) -> EstimateResponse:
    """Standalone ability estimation from response data.

    Useful for batch processing or integration with other systems.
    """
    if not responses:
        raise HTTPException(
            status_code=400,
            detail="At least one response is required",
        )

    config = controller.config.with_overrides(estimator=estimator)
    estimate = build_estimator(config).estimate(
        responses, Prior(mean=config.default_ability, sd=config.prior_sd)
    )
    correct = sum(1 for r in responses if r.correct)

    return EstimateResponse(
        theta=round(estimate.theta, 3),
        standard_error=round(estimate.standard_error, 3),
        confidence_interval=_rounded(estimate.confidence_interval),
        percentile=round(percentile(estimate.theta), 1),
        performance_level=performance_level(estimate.theta),
        questions_answered=len(responses),
        correct=correct,
        accuracy=round(correct / len(responses), 3),
        method=estimate.method,
        converged=estimate.converged,
    )


@app.get("/simulate", response_model=SimulationResponse)
async def simulate(
    true_theta: float = Query(0.0, ge=-4, le=4),
    num_questions: int = Query(20, ge=1, le=200),
    pool_size: int = Query(100, ge=1, le=1000),
    estimator: Literal["mle", "eap"] = Query("eap"),
    seed: int | None = Query(None),
) -> SimulationResponse:
    """Simulate an adaptive test to demonstrate algorithm convergence.

    Creates a random item pool and simulates responses based on a known
    true_theta. Returns step-by-step convergence history.
    """
    defaults = controller.config
    config = defaults.with_overrides(
        estimator=estimator,
        stopping={
            "min_questions": min(defaults.stopping.min_questions, num_questions),
            "max_questions": num_questions,
        },
    )
    result = await simulate_test(true_theta, config=config, pool_size=pool_size, seed=seed)

    return SimulationResponse(
        true_theta=true_theta,
        final_estimate=round(result.final_theta, 3),
        estimation_error=round(result.estimation_error, 3),
        standard_error=round(result.standard_error, 3),
        questions_used=result.questions_used,
        stop_reason=result.stop_reason,
        history=[
            SimulationStepResponse(
                step=s.step,
                item_id=s.item_id,
                item_difficulty=round(s.difficulty, 2),
                correct=s.correct,
                estimated_theta=round(s.theta, 3),
                standard_error=round(s.standard_error, 3),
            )
            for s in result.history
        ],
    )


# ============================================================
# HELPERS
# ============================================================


def _rounded(values: tuple[float, float]) -> list[float]:
    return [round(x, 3) for x in values]


def _ability(theta: float, se: float, answered: int) -> AbilityResponse:
    return AbilityResponse(
        theta=round(theta, 3),
        standard_error=round(se, 3),
        confidence_interval=_rounded(confidence_interval(theta, se)),
        questions_answered=answered,
    )


def _session_response(session: TestSession) -> SessionResponse:
    pending = session.pending_item
    return SessionResponse(
        session_id=session.session_id,
        examinee_id=session.examinee_id,
        status=session.status.value,
        ability=_ability(session.theta, session.standard_error, len(session.responses)),
        pending_item_id=pending.id if pending is not None else None,
        estimator=session.config.estimator,
        selection_algorithm=session.config.selection_algorithm,
        constraints_relaxed=session.constraints_relaxed,
        elapsed_seconds=round(session.elapsed_seconds(controller.clock()), 1),
    )


def _next_item_response(step: NextItem) -> NextItemResponse:
    item = step.item
    return NextItemResponse(
        session_id=step.session_id,
        is_final=False,
        item=ItemResponse(
            id=item.id,
            difficulty=round(item.difficulty, 3),
            discrimination=round(item.discrimination, 3),
            guessing=round(item.guessing, 3),
            subject=item.subject,
            skill=item.skill,
            content=step.content,
            probability_correct=round(step.probability_correct, 3),
        ),
        ability=_ability(step.theta, step.standard_error, step.questions_answered),
        time_remaining_seconds=round(step.time_remaining_seconds, 1),
        questions_remaining=max(0, step.max_questions - step.questions_answered),
    )


def _answer_response(result: AnswerResult) -> AnswerResponse:
    return AnswerResponse(
        session_id=result.session_id,
        item_id=result.item_id,
        correct=result.is_correct,
        theta_before=round(result.theta_before, 3),
        standard_error_before=round(result.standard_error_before, 3),
        ability=_ability(result.theta, result.standard_error, result.questions_answered),
        feedback=FeedbackResponse(
            is_correct=result.feedback.is_correct,
            message=result.feedback.message,
            explanation=result.feedback.explanation,
            next_steps=result.feedback.next_steps,
        ),
    )


def _final_response(result: FinalResult) -> FinalResultResponse:
    return FinalResultResponse(
        session_id=result.session_id,
        examinee_id=result.examinee_id,
        status=result.status.value,
        reason=result.reason.value,
        theta=round(result.theta, 3),
        standard_error=round(result.standard_error, 3),
        confidence_interval=_rounded(result.confidence_interval),
        percentile=round(result.percentile, 1),
        performance_level=result.performance_level,
        total_questions=result.total_questions,
        correct_answers=result.correct_answers,
        percentage_score=round(result.percentage_score, 1),
        average_response_time=(
            round(result.average_response_time, 2)
            if result.average_response_time is not None
            else None
        ),
        elapsed_seconds=round(result.elapsed_seconds, 1),
        responses=[
            ResponseLogEntry(
                item_id=r.item_id,
                correct=r.correct,
                response_time_seconds=r.response_time_seconds,
                theta_before=round(r.theta_before, 3),
                theta_after=round(r.theta_after, 3),
                se_before=round(r.se_before, 3),
                se_after=round(r.se_after, 3),
            )
            for r in result.responses
        ],
    )


# ============================================================
# MAIN
# ============================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8002)
