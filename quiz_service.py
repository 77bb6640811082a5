"""Quiz submission pipeline shared by mini-training and training quizzes.

One submission runs strictly in order: load the quiz, check the retake
policy, normalize and reshuffle the questions exactly as the learner saw
them, score, then persist attempt -> activity progress -> training progress
-> course progress -> XP. Nothing is written before scoring succeeds.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

import db
import xapi
from engines.feedback_engine import FeedbackEngine
from engines.normalizer import MalformedQuizError, normalize_questions
from engines.progression import (
    LEVEL_COURSE,
    LEVEL_MINI_TRAINING,
    LEVEL_TRAINING,
    CascadeResult,
    ProgressAggregator,
    cascade_summary,
)
from engines.scorer import ScoreReport, score_attempt
from engines.shuffler import randomize_quiz
from engines.xp import XpAwarder
from errors import AttemptConflict, AttemptNotAllowed, MalformedInput, NotFound
from schemas import (
    OptionView,
    QuestionResult,
    QuizFeedback,
    QuizSubmission,
    QuizSubmissionResult,
)

logger = logging.getLogger(__name__)

# xAPI object kinds for levels that emit "completed"; quiz and video leaves do not
_COMPLETION_OBJECTS = {
    LEVEL_MINI_TRAINING: "mini-training",
    LEVEL_TRAINING: "training",
    LEVEL_COURSE: "course",
}


@dataclass
class AttemptTiming:
    started_at: Optional[datetime]
    completed_at: datetime
    time_spent: Optional[int]


def parse_started_at(value: Union[str, float, int, None]) -> Optional[datetime]:
    """ISO-8601 text or epoch milliseconds; ``None`` when absent."""

    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise MalformedInput("startedAt must be a valid timestamp")
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedInput("startedAt must be a valid timestamp") from exc
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedInput("startedAt must be an ISO-8601 date or a timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def attempt_timing(
    submission: QuizSubmission, completed_at: Optional[datetime] = None
) -> AttemptTiming:
    """Elapsed seconds from ``startedAt`` win over the client's ``timeSpent``."""

    completed = completed_at or datetime.now(timezone.utc)
    started = parse_started_at(submission.started_at)
    if started is not None:
        time_spent: Optional[int] = max(0, math.floor((completed - started).total_seconds()))
    elif submission.time_spent is not None:
        time_spent = math.floor(submission.time_spent)
    else:
        time_spent = None
    return AttemptTiming(started_at=started, completed_at=completed, time_spent=time_spent)


def check_retake_policy(quiz: Mapping[str, Any], previous_attempts: int) -> None:
    if previous_attempts > 0 and not quiz.get("allow_retake", True):
        raise AttemptNotAllowed("Quiz does not allow retakes")
    max_attempts = quiz.get("max_attempts")
    if max_attempts is not None and max_attempts > 0 and previous_attempts >= max_attempts:
        raise AttemptNotAllowed("Maximum attempts reached")


class QuizService:
    def __init__(
        self,
        aggregator: Optional[ProgressAggregator] = None,
        awarder: Optional[XpAwarder] = None,
        feedback: Optional[FeedbackEngine] = None,
    ) -> None:
        self.aggregator = aggregator or ProgressAggregator()
        self.awarder = awarder or XpAwarder()
        self.feedback = feedback or FeedbackEngine()

    # ----- public entry points ----------------------------------------
    def submit_mini_training_quiz(
        self, user_id: str, mini_training_id: str, submission: QuizSubmission
    ) -> QuizSubmissionResult:
        mini_training = db.get_mini_training(mini_training_id)
        if mini_training is None:
            raise NotFound("Mini training not found")
        training = db.get_training(mini_training["training_id"])
        if training is None:
            raise NotFound("Training not found")
        quiz = db.get_quiz_for_activity(db.ACTIVITY_MINI_TRAINING, mini_training_id)
        if quiz is None:
            raise NotFound("Quiz not found")

        report, attempt, timing = self._evaluate(user_id, quiz, submission)
        completed_at = timing.completed_at.isoformat()
        cascade = self.aggregator.record_mini_training_quiz(
            user_id,
            mini_training,
            training,
            passed=report.passed,
            score=report.score,
            completed_at=completed_at,
        )

        xp_earned = 0
        if cascade.leaf.transitioned and report.passed:
            xp_earned = self.awarder.award_xp(
                user_id,
                self.awarder.mini_training_base(training),
                report.score,
                report.passed,
                activity_type=db.ACTIVITY_MINI_TRAINING,
                activity_id=mini_training_id,
            )

        self._record_learning(user_id, quiz, report, attempt, cascade, xp_earned)
        return self._result(
            report,
            attempt,
            timing,
            is_completed=cascade.leaf.is_completed,
            progress=cascade.training.progress if cascade.training else None,
            xp_earned=xp_earned,
        )

    def submit_training_quiz(
        self, user_id: str, training_id: str, submission: QuizSubmission
    ) -> QuizSubmissionResult:
        training = db.get_training(training_id)
        if training is None:
            raise NotFound("Training not found")
        quiz = db.get_quiz_for_activity(db.ACTIVITY_TRAINING, training_id)
        if quiz is None:
            raise NotFound("Quiz not found")

        report, attempt, timing = self._evaluate(user_id, quiz, submission)
        cascade = self.aggregator.record_training_quiz(
            user_id,
            training,
            passed=report.passed,
            score=report.score,
            completed_at=timing.completed_at.isoformat(),
        )

        xp_earned = 0
        if cascade.training_completed_now and report.passed:
            xp_earned = self.awarder.award_xp(
                user_id,
                int(training.get("total_xp") or 0),
                report.score,
                report.passed,
                activity_type=db.ACTIVITY_TRAINING,
                activity_id=training_id,
            )

        self._record_learning(user_id, quiz, report, attempt, cascade, xp_earned)
        return self._result(
            report,
            attempt,
            timing,
            is_completed=bool(cascade.training and cascade.training.is_completed),
            progress=cascade.training.progress if cascade.training else None,
            xp_earned=xp_earned,
        )

    def highest_score(self, user_id: str, quiz_id: str) -> Optional[int]:
        if db.get_quiz(quiz_id) is None:
            raise NotFound("Quiz not found")
        return db.get_highest_score(user_id, quiz_id)

    # ----- pipeline steps ---------------------------------------------
    def _evaluate(
        self, user_id: str, quiz: Mapping[str, Any], submission: QuizSubmission
    ) -> tuple[ScoreReport, Dict[str, Any], AttemptTiming]:
        quiz_id = quiz["quiz_id"]
        previous = db.count_quiz_attempts(user_id, quiz_id)
        check_retake_policy(quiz, previous)
        attempt_number = previous + 1

        try:
            questions = normalize_questions(quiz["questions"])
        except MalformedQuizError as exc:
            logger.warning("Quiz %s cannot be evaluated: %s", quiz_id, exc)
            raise MalformedInput(str(exc)) from exc

        shown = randomize_quiz(
            questions, quiz.get("questions_to_show"), user_id, attempt_number, quiz_id
        )
        report = score_attempt(shown, submission.answers, int(quiz["passing_score"]))
        timing = attempt_timing(submission)

        try:
            attempt = db.create_quiz_attempt(
                user_id,
                quiz_id,
                attempt_number,
                score=report.score,
                passed=report.passed,
                answers=submission.answers,
                time_spent=timing.time_spent,
                started_at=timing.started_at.isoformat() if timing.started_at else None,
                completed_at=timing.completed_at.isoformat(),
            )
        except sqlite3.IntegrityError as exc:
            logger.warning(
                "Attempt %s for user %s on quiz %s was already recorded",
                attempt_number,
                user_id,
                quiz_id,
            )
            raise AttemptConflict("Another submission for this quiz is in progress") from exc

        logger.info(
            "User %s attempt %s on quiz %s scored %s (passed=%s)",
            user_id,
            attempt_number,
            quiz_id,
            report.score,
            report.passed,
        )
        return report, attempt, timing

    def _record_learning(
        self,
        user_id: str,
        quiz: Mapping[str, Any],
        report: ScoreReport,
        attempt: Mapping[str, Any],
        cascade: CascadeResult,
        xp_earned: int,
    ) -> None:
        """Emit learning records; a failure here never fails the submission."""

        quiz_object = xapi.object_id("quiz", quiz["quiz_id"])
        summary = cascade_summary(cascade)
        try:
            xapi.emit(
                user_id,
                xapi.VERB_ATTEMPTED,
                quiz_object,
                score=report.score,
                success=report.passed,
                context={
                    "attempt_number": attempt["attempt_number"],
                    "time_spent": attempt["time_spent"],
                    "correct_answers": report.correct_count,
                    "total_questions": report.total_questions,
                    "activity_type": quiz["activity_type"],
                },
            )
            xapi.emit(
                user_id,
                xapi.VERB_PASSED if report.passed else xapi.VERB_FAILED,
                quiz_object,
                score=report.score,
                success=report.passed,
                context={"attempt_number": attempt["attempt_number"], "xp_earned": xp_earned},
            )
            for update in (cascade.leaf, cascade.training, cascade.course):
                kind = _COMPLETION_OBJECTS.get(update.level) if update else None
                if kind is None or not update.transitioned:
                    continue
                xapi.emit(
                    user_id,
                    xapi.VERB_COMPLETED,
                    xapi.object_id(kind, update.activity_id),
                    success=True,
                    context={"progress": update.progress, "cascade": summary},
                )
        except (ValueError, sqlite3.Error) as exc:
            logger.warning("Failed to record learning statements for user %s: %s", user_id, exc)

    def _result(
        self,
        report: ScoreReport,
        attempt: Mapping[str, Any],
        timing: AttemptTiming,
        *,
        is_completed: bool,
        progress: Optional[float],
        xp_earned: int,
    ) -> QuizSubmissionResult:
        feedback = self.feedback.generate_feedback(
            report.score, report.total_questions, report.correct_count
        )
        return QuizSubmissionResult(
            score=report.score,
            correct_answers=report.correct_count,
            total_questions=report.total_questions,
            passed=report.passed,
            attempt_number=attempt["attempt_number"],
            results=[
                QuestionResult(
                    question_id=outcome.question_id,
                    question=outcome.question,
                    user_answer=outcome.user_answer,
                    correct_answer=outcome.correct_answer,
                    correct_answer_text=outcome.correct_answer_text,
                    is_correct=outcome.is_correct,
                    options=[OptionView(id=opt.id, text=opt.text) for opt in outcome.options],
                    explanation=outcome.explanation,
                )
                for outcome in report.results
            ],
            is_completed=is_completed,
            progress=progress,
            xp_earned=xp_earned,
            feedback=QuizFeedback(
                title=feedback.title,
                message=feedback.message,
                encouragement=feedback.encouragement,
            ),
            started_at=timing.started_at,
            completed_at=timing.completed_at,
            time_spent=timing.time_spent,
        )
