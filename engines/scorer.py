"""Score a submitted answer map against the shuffled question set."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from engines.normalizer import ByIndex, ById, Option
from engines.shuffler import ShuffledQuestion


@dataclass
class QuestionOutcome:
    question_id: str
    question: str
    user_answer: Optional[str]
    correct_answer: Optional[str]
    correct_answer_text: Optional[str]
    is_correct: bool
    options: List[Option] = field(default_factory=list)
    explanation: Optional[str] = None


@dataclass
class ScoreReport:
    results: List[QuestionOutcome]
    correct_count: int
    total_questions: int
    score: int
    passed: bool


def _find_option(question: ShuffledQuestion, option_id: str) -> Optional[Option]:
    return next((opt for opt in question.options if opt.id == option_id), None)


def is_answer_correct(question: ShuffledQuestion, submitted: Optional[str]) -> bool:
    """Correctness of one answer. A missing answer is always wrong."""

    if submitted is None or submitted == "":
        return False
    reference = question.correct_answer
    if isinstance(reference, ByIndex):
        selected = next(
            (idx for idx, opt in enumerate(question.options) if opt.id == submitted), None
        )
        return selected is not None and selected == reference.index
    if isinstance(reference, ById):
        if question.correct_option is not None and submitted == question.correct_option.id:
            return True
        return submitted == reference.value
    return question.correct_option is not None and submitted == question.correct_option.id


def evaluate_question(question: ShuffledQuestion, submitted: Optional[str]) -> QuestionOutcome:
    correct = is_answer_correct(question, submitted)

    user_answer = submitted
    if submitted:
        chosen = _find_option(question, submitted)
        if chosen is not None:
            user_answer = chosen.text

    reference = question.correct_answer
    raw_reference: Optional[str] = None
    if isinstance(reference, ById):
        raw_reference = reference.value
    elif isinstance(reference, ByIndex):
        raw_reference = str(reference.index)

    option = question.correct_option
    return QuestionOutcome(
        question_id=question.id,
        question=question.prompt,
        user_answer=user_answer,
        correct_answer=option.id if option is not None else raw_reference,
        correct_answer_text=option.text if option is not None else raw_reference,
        is_correct=correct,
        options=list(question.options),
        explanation=question.explanation,
    )


def score_attempt(
    questions: Sequence[ShuffledQuestion],
    answers: Mapping[str, Optional[str]],
    passing_score: int,
) -> ScoreReport:
    """Grade every question; ``score = round(correct / total * 100)``.

    Python's ``round`` uses banker's rounding, so the half-up rounding of the
    score is done explicitly.
    """

    if not questions:
        raise ValueError("cannot score a quiz with no questions")

    results = [evaluate_question(question, answers.get(question.id)) for question in questions]
    correct_count = sum(1 for outcome in results if outcome.is_correct)
    total = len(results)
    score = int(correct_count * 100 / total + 0.5)
    return ScoreReport(
        results=results,
        correct_count=correct_count,
        total_questions=total,
        score=score,
        passed=score >= passing_score,
    )
