# app.py - quiz evaluation and progress API
# - quiz submission for mini-trainings and trainings
# - quiz postponement, video watch progress and progress reads
# - bearer-token identity, errors as {"success": false, "error": ...}

import json
import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

import db
from env_validation import get_env_bool
from errors import MalformedInput, NotFound, QuizSubmissionError, Unauthenticated
from quiz_service import QuizService
from schemas import (
    ErrorResponse,
    HighestScore,
    ProgressRecord,
    QuizPostponeBody,
    QuizPostponeState,
    QuizSubmission,
    QuizSubmissionResult,
    WatchProgressBody,
    WatchProgressState,
    validation_message,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
        db.init()
        logger.info("Database ready at %s", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Quiz Progress Service", version="1.0.0", lifespan=_lifespan)

TOKENS: Dict[str, str] = {}

_SERVICE = QuizService()
_AGGREGATOR = _SERVICE.aggregator


def issue_token(user_id: str) -> str:
    """Register a bearer token for ``user_id`` (identity is owned by the caller's IdP)."""
    token = secrets.token_urlsafe(24)
    TOKENS[token] = user_id
    return token


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


def _authenticate_request(request: Request) -> Optional[str]:
    header_token = _extract_token(request.headers.get("authorization"))
    if header_token and header_token in TOKENS:
        return TOKENS[header_token]
    alt_header = request.headers.get("x-token")
    if alt_header and alt_header in TOKENS:
        return TOKENS[alt_header]
    return None


def current_user(request: Request) -> str:
    user_id = _authenticate_request(request)
    if not user_id:
        raise Unauthenticated("Unauthorized")
    return user_id


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def json_body(request: Request, _: str = Depends(current_user)) -> Any:
    """Decode the JSON body once the caller is known, so 401 wins over a bad body."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise MalformedInput("Request body must be valid JSON") from exc


@app.middleware("http")
async def _unexpected_errors(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        if request.url.path.endswith("/quiz/submit"):
            return _error(500, "Failed to submit quiz")
        return _error(500, "Internal server error")


@app.exception_handler(QuizSubmissionError)
async def _submission_error(_: Request, exc: QuizSubmissionError):
    if exc.status_code >= 500:
        logger.error("Submission failed: %s", exc.message)
    elif exc.status_code != 401:
        logger.warning("Rejected request: %s", exc.message)
    return _error(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(_: Request, exc: RequestValidationError):
    return _error(400, validation_message(exc))


def _parse(model: type[BaseModel], payload: Any):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedInput(validation_message(exc)) from exc


_ERRORS: Dict[int, Dict[str, Any]] = {
    code: {"model": ErrorResponse} for code in (400, 401, 404, 500)
}
_SUBMIT_ERRORS: Dict[int, Dict[str, Any]] = {**_ERRORS, 409: {"model": ErrorResponse}}


@app.get("/")
def index():
    return {"service": app.title, "version": app.version}


# ---------- Dev identity ----------
class DevLoginBody(BaseModel):
    user_id: str


@app.post("/auth/dev-login", responses={404: {"model": ErrorResponse}})
def dev_login(body: DevLoginBody):
    if not get_env_bool("ALLOW_DEV_LOGIN"):
        raise NotFound("Not found")
    db.ensure_user(body.user_id)
    return {"token": issue_token(body.user_id), "user_id": body.user_id}


# ---------- Quiz submission ----------
@app.post(
    "/mini-trainings/{mini_training_id}/quiz/submit",
    response_model=QuizSubmissionResult,
    responses=_SUBMIT_ERRORS,
)
def submit_mini_training_quiz(
    mini_training_id: str,
    payload: Any = Depends(json_body),
    user_id: str = Depends(current_user),
):
    submission = _parse(QuizSubmission, payload)
    return _SERVICE.submit_mini_training_quiz(user_id, mini_training_id, submission)


@app.post(
    "/trainings/{training_id}/quiz/submit",
    response_model=QuizSubmissionResult,
    responses=_SUBMIT_ERRORS,
)
def submit_training_quiz(
    training_id: str,
    payload: Any = Depends(json_body),
    user_id: str = Depends(current_user),
):
    submission = _parse(QuizSubmission, payload)
    return _SERVICE.submit_training_quiz(user_id, training_id, submission)


@app.post(
    "/trainings/{training_id}/quiz/postpone",
    response_model=QuizPostponeState,
    responses=_ERRORS,
)
def postpone_training_quiz(
    training_id: str,
    payload: Any = Depends(json_body),
    user_id: str = Depends(current_user),
):
    """Save or clear the learner's "take it later" choice for a training quiz."""
    body = _parse(QuizPostponeBody, payload)
    _require_training(training_id)
    row = db.set_quiz_postponed(user_id, training_id, body.postponed)
    return QuizPostponeState(quiz_postponed=row["quiz_postponed"])


@app.get("/quizzes/{quiz_id}/highest-score", response_model=HighestScore, responses=_ERRORS)
def highest_score(quiz_id: str, user_id: str = Depends(current_user)):
    return HighestScore(highest_score=_SERVICE.highest_score(user_id, quiz_id))


# ---------- Video watch progress ----------
def _require_training(training_id: str) -> Dict[str, Any]:
    training = db.get_training(training_id)
    if training is None:
        raise NotFound("Training not found")
    return training


def _can_take_quiz(watched: float, minimum: Optional[float]) -> bool:
    return watched >= float(minimum or 0)


@app.get(
    "/trainings/{training_id}/watch-progress",
    response_model=WatchProgressState,
    responses=_ERRORS,
)
def get_training_watch_progress(training_id: str, user_id: str = Depends(current_user)):
    training = _require_training(training_id)
    row = db.get_training_progress(user_id, training_id) or {}
    watched = float(row.get("video_watched_seconds") or 0)
    return WatchProgressState(
        watched_seconds=watched,
        video_progress=float(row.get("video_progress") or 0),
        can_take_quiz=_can_take_quiz(watched, training.get("minimum_watch_time")),
        minimum_watch_time=training.get("minimum_watch_time"),
        progress=float(row.get("progress") or 0),
        is_completed=bool(row.get("is_completed")),
    )


@app.post(
    "/trainings/{training_id}/watch-progress",
    response_model=WatchProgressState,
    responses=_ERRORS,
)
def post_training_watch_progress(
    training_id: str,
    payload: Any = Depends(json_body),
    user_id: str = Depends(current_user),
):
    body = _parse(WatchProgressBody, payload)
    training = _require_training(training_id)
    cascade = _AGGREGATOR.record_training_video(user_id, training, body.watched_seconds)
    row = db.get_training_progress(user_id, training_id)
    watched = float(row["video_watched_seconds"])
    return WatchProgressState(
        watched_seconds=watched,
        video_progress=cascade.leaf.progress,
        can_take_quiz=_can_take_quiz(watched, training.get("minimum_watch_time")),
        minimum_watch_time=training.get("minimum_watch_time"),
        progress=cascade.training.progress,
        is_completed=cascade.training.is_completed,
    )


@app.post(
    "/mini-trainings/{mini_training_id}/watch-progress",
    response_model=WatchProgressState,
    responses=_ERRORS,
)
def post_mini_training_watch_progress(
    mini_training_id: str,
    payload: Any = Depends(json_body),
    user_id: str = Depends(current_user),
):
    body = _parse(WatchProgressBody, payload)
    mini_training = db.get_mini_training(mini_training_id)
    if mini_training is None:
        raise NotFound("Mini training not found")
    update = _AGGREGATOR.record_mini_training_video(user_id, mini_training, body.watched_seconds)
    row = db.get_mini_training_progress(user_id, mini_training_id)
    return WatchProgressState(
        watched_seconds=float(row["video_watched_seconds"]),
        video_progress=update.progress,
        is_completed=update.is_completed,
    )


# ---------- Progress reads ----------
@app.get("/trainings/{training_id}/progress", response_model=ProgressRecord, responses=_ERRORS)
def get_training_progress(training_id: str, user_id: str = Depends(current_user)):
    _require_training(training_id)
    row = db.get_training_progress(user_id, training_id) or {}
    return ProgressRecord(
        activity_id=training_id,
        progress=float(row.get("progress") or 0),
        is_completed=bool(row.get("is_completed")),
        completed_at=row.get("completed_at"),
        quiz_completed=bool(row.get("quiz_completed")),
        quiz_score=row.get("quiz_score"),
        quiz_postponed=bool(row.get("quiz_postponed")),
        video_progress=float(row.get("video_progress") or 0),
    )


@app.get("/courses/{course_id}/progress", response_model=ProgressRecord, responses=_ERRORS)
def get_course_progress(course_id: str, user_id: str = Depends(current_user)):
    if db.get_course(course_id) is None:
        raise NotFound("Course not found")
    row = db.get_course_progress(user_id, course_id) or {}
    return ProgressRecord(
        activity_id=course_id,
        progress=float(row.get("progress") or 0),
        is_completed=bool(row.get("is_completed")),
        completed_at=row.get("completed_at"),
    )
