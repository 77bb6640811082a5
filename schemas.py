"""Pydantic schemas for the quiz submission API and helper utilities."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "QuizSubmission",
    "OptionView",
    "QuestionResult",
    "QuizFeedback",
    "QuizSubmissionResult",
    "WatchProgressBody",
    "WatchProgressState",
    "ProgressRecord",
    "HighestScore",
    "QuizPostponeBody",
    "QuizPostponeState",
    "ErrorResponse",
    "validation_message",
]


class _CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuizSubmission(_CamelModel):
    """Body of ``POST .../quiz/submit``."""

    answers: Dict[str, Optional[str]]
    time_spent: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    started_at: Optional[Union[str, float, int]] = None

    @field_validator("answers", mode="before")
    @classmethod
    def _coerce_answer_values(cls, value: Any) -> Any:
        # option ids arrive as strings, but a numeric id must not fail validation
        if not isinstance(value, dict):
            return value
        coerced: Dict[str, Optional[str]] = {}
        for key, answer in value.items():
            if answer is None or isinstance(answer, str):
                coerced[str(key)] = answer
            elif isinstance(answer, (int, float)) and not isinstance(answer, bool):
                coerced[str(key)] = str(answer)
            else:
                raise ValueError(f"answer for question {key!r} must be a string")
        return coerced


class OptionView(BaseModel):
    id: str
    text: str


class QuestionResult(_CamelModel):
    question_id: str
    question: str
    user_answer: Optional[str] = Field(
        default=None,
        description="Selected option text, or the raw submitted value when it matches no option.",
    )
    correct_answer: Optional[str] = Field(
        default=None,
        description="Identifier of the correct option after shuffling.",
    )
    correct_answer_text: Optional[str] = None
    is_correct: bool
    options: List[OptionView] = Field(default_factory=list)
    explanation: Optional[str] = None


class QuizFeedback(BaseModel):
    title: str
    message: str
    encouragement: str


class QuizSubmissionResult(_CamelModel):
    score: int = Field(ge=0, le=100)
    correct_answers: int
    total_questions: int
    passed: bool
    attempt_number: int
    results: List[QuestionResult]
    is_completed: bool
    progress: Optional[float] = Field(
        default=None,
        description="Parent training progress after the cascade.",
    )
    xp_earned: int = 0
    feedback: Optional[QuizFeedback] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    time_spent: Optional[int] = None


class WatchProgressBody(_CamelModel):
    watched_seconds: float = Field(ge=0, allow_inf_nan=False)


class WatchProgressState(_CamelModel):
    watched_seconds: float
    video_progress: float
    can_take_quiz: Optional[bool] = None
    minimum_watch_time: Optional[float] = None
    progress: Optional[float] = None
    is_completed: bool = False


class ProgressRecord(_CamelModel):
    activity_id: str
    progress: float
    is_completed: bool
    completed_at: Optional[str] = None
    quiz_completed: Optional[bool] = None
    quiz_score: Optional[int] = None
    quiz_postponed: Optional[bool] = None
    video_progress: Optional[float] = None


class QuizPostponeBody(_CamelModel):
    postponed: StrictBool


class QuizPostponeState(_CamelModel):
    quiz_postponed: bool


class HighestScore(_CamelModel):
    highest_score: Optional[int] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


def validation_message(exc: Union[ValidationError, Any]) -> str:
    """Collapse a pydantic (or FastAPI request) error list into one readable sentence."""

    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"
