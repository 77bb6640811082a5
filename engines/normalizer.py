"""Canonical question shape for stored quiz payloads.

Authoring tools have stored options both as bare strings and as
``{"id", "text"}`` objects, and the correct answer both as a zero-based index
and as an option id or value. Everything downstream of this module works on
:class:`Question` only.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

_LOGGER = logging.getLogger(__name__)


class MalformedQuizError(ValueError):
    """Stored quiz data cannot be evaluated (bad JSON, wrong shape, no questions)."""


@dataclass(frozen=True)
class Option:
    id: str
    text: str
    is_correct: bool = False


@dataclass(frozen=True)
class ByIndex:
    """Correct answer referenced by its zero-based position in the option list."""

    index: int


@dataclass(frozen=True)
class ById:
    """Correct answer referenced by option id (or, for legacy data, its literal value)."""

    value: str


CorrectAnswer = Union[ByIndex, ById, None]


@dataclass(frozen=True)
class Question:
    id: str
    type: str
    prompt: str
    options: Tuple[Option, ...]
    correct_answer: CorrectAnswer
    points: float = 1.0
    explanation: Optional[str] = None


def option_id(question_key: str, index: int) -> str:
    """Synthesised id for an option that has none: ``opt-{question}-{index}``."""

    return f"opt-{question_key}-{index}"


def parse_questions(raw: Any) -> List[Any]:
    """Decode the stored payload into a list of raw question objects."""

    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        if not raw.strip():
            return []
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedQuizError("Invalid quiz format") from exc
    if not isinstance(raw, list):
        raise MalformedQuizError("Invalid quiz format")
    return raw


def normalize_option(option: Any, question_key: str, index: int) -> Option:
    if isinstance(option, str):
        return Option(id=option_id(question_key, index), text=option)
    if isinstance(option, dict):
        supplied = option.get("id")
        oid = str(supplied) if supplied not in (None, "") else option_id(question_key, index)
        text = option.get("text") or option.get("label")
        return Option(
            id=oid,
            text=str(text) if text not in (None, "") else json.dumps(option, sort_keys=True),
            is_correct=option.get("isCorrect") is True,
        )
    return Option(id=option_id(question_key, index), text=str(option))


def _correct_answer(value: Any) -> CorrectAnswer:
    # bool is an int subclass; a stray true/false is not an index
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return ByIndex(value)
    if isinstance(value, float):
        return ByIndex(int(value)) if value.is_integer() else None
    text = str(value)
    return ById(text) if text else None


def _points(value: Any) -> float:
    try:
        points = float(value)
    except (TypeError, ValueError):
        return 1.0
    return points if points > 0 else 1.0


def normalize_question(raw: Any, position: int) -> Question:
    if not isinstance(raw, dict):
        raise MalformedQuizError(f"Question #{position + 1} is not an object")

    supplied_id = raw.get("id")
    question_key = str(supplied_id) if supplied_id not in (None, "") else f"q-{position}"

    raw_options = raw.get("options")
    options: Sequence[Option] = ()
    if isinstance(raw_options, list):
        options = tuple(
            normalize_option(option, question_key, index)
            for index, option in enumerate(raw_options)
        )

    explanation = raw.get("explanation")
    return Question(
        id=question_key,
        type=str(raw.get("type") or "multiple_choice"),
        prompt=str(raw.get("question") or raw.get("prompt") or raw.get("text") or ""),
        options=tuple(options),
        correct_answer=_correct_answer(raw.get("correctAnswer")),
        points=_points(raw.get("points", 1)),
        explanation=str(explanation) if explanation else None,
    )


def normalize_questions(raw: Any) -> List[Question]:
    """Parse and normalize a stored question list.

    Raises :class:`MalformedQuizError` for undecodable payloads and for quizzes
    with zero questions. Normalizing the same payload twice yields equal
    results, which the shuffle relies on.
    """

    questions = [
        normalize_question(entry, position)
        for position, entry in enumerate(parse_questions(raw))
    ]
    if not questions:
        raise MalformedQuizError("Quiz has no questions")

    seen: set[str] = set()
    for question in questions:
        if question.id in seen:
            raise MalformedQuizError(f"Duplicate question id: {question.id}")
        seen.add(question.id)
        if not question.options:
            _LOGGER.warning("Question %s has no options and can never be answered correctly", question.id)
    return questions
