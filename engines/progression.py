"""Hierarchical progress aggregation: activity -> training -> course.

A training's progress is a weighted combination of up to three signals:

* video watch progress (weight 50),
* training quiz completion (weight 30),
* completed mini-trainings ratio (weight 20).

Only signals that exist for the training carry weight; the present weights
are renormalized so they always sum to 100%. A course's progress is the share
of its published trainings that are completed.

Completion is sticky at every level: the store only ever moves
``is_completed`` from false to true and sets ``completed_at`` once, so a
failed retake never reverts a completed activity, training or course.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import db

_LOGGER = logging.getLogger(__name__)

VIDEO_WEIGHT = 50
QUIZ_WEIGHT = 30
MINI_TRAINING_WEIGHT = 20

VIDEO_COMPLETE_THRESHOLD = 90.0

LEVEL_MINI_TRAINING = "mini_training"
LEVEL_TRAINING_QUIZ = "training_quiz"
LEVEL_TRAINING_VIDEO = "training_video"
LEVEL_TRAINING = "training"
LEVEL_COURSE = "course"


@dataclass
class TrainingSignals:
    """Inputs to a training's weighted progress.

    ``None`` marks an absent signal (no video, no quiz); a training without
    mini-trainings has ``total_mini_trainings == 0``.
    """

    video_progress: Optional[float] = None
    quiz_completed: Optional[bool] = None
    mini_trainings_completed: int = 0
    total_mini_trainings: int = 0


@dataclass
class LevelUpdate:
    """State of one hierarchy level after a write."""

    level: str
    activity_id: str
    progress: float
    is_completed: bool
    transitioned: bool = False
    completed_at: Optional[str] = None


@dataclass
class CascadeResult:
    leaf: LevelUpdate
    training: Optional[LevelUpdate] = None
    course: Optional[LevelUpdate] = None

    @property
    def training_completed_now(self) -> bool:
        return self.training is not None and self.training.transitioned


@dataclass
class RecalculationReport:
    """Per-user outcome of a bulk training recalculation."""

    user_id: str
    previous_progress: float
    progress: float
    is_completed: bool
    course_recalculated: bool = False
    notes: List[str] = field(default_factory=list)


def compute_training_progress(signals: TrainingSignals) -> float:
    """Renormalized weighted progress (0-100, two decimals).

    A training with no signals at all reports 0.
    """

    weighted = 0.0
    total_weight = 0
    if signals.video_progress is not None:
        weighted += VIDEO_WEIGHT * max(0.0, min(100.0, float(signals.video_progress)))
        total_weight += VIDEO_WEIGHT
    if signals.quiz_completed is not None:
        weighted += QUIZ_WEIGHT * (100.0 if signals.quiz_completed else 0.0)
        total_weight += QUIZ_WEIGHT
    if signals.total_mini_trainings > 0:
        ratio = min(signals.mini_trainings_completed, signals.total_mini_trainings) / signals.total_mini_trainings
        weighted += MINI_TRAINING_WEIGHT * ratio * 100.0
        total_weight += MINI_TRAINING_WEIGHT
    if total_weight == 0:
        return 0.0
    return round(weighted / total_weight, 2)


def compute_course_progress(completed_trainings: int, published_trainings: int) -> float:
    if published_trainings <= 0:
        return 0.0
    return round(min(completed_trainings, published_trainings) / published_trainings * 100, 2)


def video_progress(watched_seconds: float, duration: Optional[float]) -> float:
    """Percentage of the video watched, capped at 100."""

    if not duration or duration <= 0:
        return 0.0
    return round(min(100.0, max(0.0, watched_seconds) / float(duration) * 100), 2)


def _was_completed(row: Optional[Mapping[str, Any]], key: str = "is_completed") -> bool:
    return bool(row and row.get(key))


class ProgressAggregator:
    """Apply one completion event bottom-up through the hierarchy.

    Every write is an idempotent upsert, so replaying the same event
    converges to the same stored state. A course is only recomputed when the
    training flips to completed during this cascade.
    """

    # ----- signals -----------------------------------------------------
    def training_signals(
        self, user_id: str, training: Mapping[str, Any]
    ) -> TrainingSignals:
        training_id = training["training_id"]
        row = db.get_training_progress(user_id, training_id) or {}

        has_video = bool(training.get("video_duration") and training["video_duration"] > 0)
        has_quiz = bool(db.activities_with_quiz(db.ACTIVITY_TRAINING, [training_id]))
        mini_ids = db.list_mini_training_ids(training_id)

        return TrainingSignals(
            video_progress=float(row.get("video_progress") or 0.0) if has_video else None,
            quiz_completed=bool(row.get("quiz_completed")) if has_quiz else None,
            mini_trainings_completed=db.count_completed_mini_trainings(user_id, mini_ids),
            total_mini_trainings=len(mini_ids),
        )

    # ----- parent / grandparent ---------------------------------------
    def recalculate_training(
        self,
        user_id: str,
        training: Mapping[str, Any],
        *,
        completed_at: Optional[str] = None,
    ) -> LevelUpdate:
        training_id = training["training_id"]
        before = db.get_training_progress(user_id, training_id)
        signals = self.training_signals(user_id, training)
        progress = compute_training_progress(signals)

        after = db.save_training_progress(
            user_id,
            training_id,
            progress=progress,
            is_completed=progress >= 100,
            mini_trainings_completed=signals.mini_trainings_completed,
            total_mini_trainings=signals.total_mini_trainings,
            completed_at=completed_at,
        )
        transitioned = not _was_completed(before) and _was_completed(after)
        if transitioned:
            _LOGGER.info("User %s completed training %s", user_id, training_id)
        return LevelUpdate(
            level=LEVEL_TRAINING,
            activity_id=training_id,
            progress=float(after["progress"]),
            is_completed=bool(after["is_completed"]),
            transitioned=transitioned,
            completed_at=after["completed_at"],
        )

    def recalculate_course(
        self, user_id: str, course_id: str, *, completed_at: Optional[str] = None
    ) -> LevelUpdate:
        published = db.list_published_training_ids(course_id)
        completed = db.count_completed_trainings(user_id, published)
        progress = compute_course_progress(completed, len(published))

        before = db.get_course_progress(user_id, course_id)
        after = db.save_course_progress(
            user_id,
            course_id,
            progress=progress,
            is_completed=progress >= 100,
            completed_at=completed_at,
        )
        transitioned = not _was_completed(before) and _was_completed(after)
        if transitioned:
            _LOGGER.info("User %s completed course %s", user_id, course_id)
        return LevelUpdate(
            level=LEVEL_COURSE,
            activity_id=course_id,
            progress=float(after["progress"]),
            is_completed=bool(after["is_completed"]),
            transitioned=transitioned,
            completed_at=after["completed_at"],
        )

    def _cascade(
        self,
        user_id: str,
        leaf: LevelUpdate,
        training: Mapping[str, Any],
        completed_at: Optional[str],
    ) -> CascadeResult:
        result = CascadeResult(leaf=leaf)
        result.training = self.recalculate_training(user_id, training, completed_at=completed_at)
        if result.training.transitioned:
            result.course = self.recalculate_course(
                user_id, training["course_id"], completed_at=completed_at
            )
        return result

    # ----- leaf events -------------------------------------------------
    def record_mini_training_quiz(
        self,
        user_id: str,
        mini_training: Mapping[str, Any],
        training: Mapping[str, Any],
        *,
        passed: bool,
        score: int,
        completed_at: str,
    ) -> CascadeResult:
        mini_id = mini_training["mini_training_id"]
        before = db.get_mini_training_progress(user_id, mini_id)
        after = db.upsert_mini_training_quiz_result(
            user_id, mini_id, passed=passed, score=score, completed_at=completed_at
        )
        transitioned = not _was_completed(before) and _was_completed(after)
        if transitioned:
            _LOGGER.info("User %s completed mini-training %s", user_id, mini_id)
        leaf = LevelUpdate(
            level=LEVEL_MINI_TRAINING,
            activity_id=mini_id,
            progress=100.0 if after["is_completed"] else 0.0,
            is_completed=bool(after["is_completed"]),
            transitioned=transitioned,
            completed_at=after["completed_at"],
        )
        return self._cascade(user_id, leaf, training, completed_at)

    def record_training_quiz(
        self,
        user_id: str,
        training: Mapping[str, Any],
        *,
        passed: bool,
        score: int,
        completed_at: str,
    ) -> CascadeResult:
        training_id = training["training_id"]
        before = db.get_training_progress(user_id, training_id)
        after = db.upsert_training_quiz_result(user_id, training_id, passed=passed, score=score)
        leaf = LevelUpdate(
            level=LEVEL_TRAINING_QUIZ,
            activity_id=training_id,
            progress=100.0 if after["quiz_completed"] else 0.0,
            is_completed=bool(after["quiz_completed"]),
            transitioned=not _was_completed(before, "quiz_completed")
            and _was_completed(after, "quiz_completed"),
            completed_at=completed_at if after["quiz_completed"] else None,
        )
        return self._cascade(user_id, leaf, training, completed_at)

    def record_training_video(
        self, user_id: str, training: Mapping[str, Any], watched_seconds: float
    ) -> CascadeResult:
        training_id = training["training_id"]
        percent = video_progress(watched_seconds, training.get("video_duration"))
        after = db.upsert_training_video(
            user_id, training_id, video_progress=percent, watched_seconds=watched_seconds
        )
        stored = float(after["video_progress"])
        leaf = LevelUpdate(
            level=LEVEL_TRAINING_VIDEO,
            activity_id=training_id,
            progress=stored,
            is_completed=stored >= VIDEO_COMPLETE_THRESHOLD,
        )
        return self._cascade(user_id, leaf, training, None)

    def record_mini_training_video(
        self, user_id: str, mini_training: Mapping[str, Any], watched_seconds: float
    ) -> LevelUpdate:
        """Store video progress for a mini-training.

        Mini-training completion is quiz-gated, so watching never cascades.
        """

        mini_id = mini_training["mini_training_id"]
        percent = video_progress(watched_seconds, mini_training.get("video_duration"))
        after = db.upsert_mini_training_video(
            user_id, mini_id, video_progress=percent, watched_seconds=watched_seconds
        )
        return LevelUpdate(
            level=LEVEL_MINI_TRAINING,
            activity_id=mini_id,
            progress=float(after["video_progress"]),
            is_completed=bool(after["is_completed"]),
            completed_at=after["completed_at"],
        )

    # ----- bulk --------------------------------------------------------
    def recalculate_training_for_all_users(self, training_id: str) -> List[RecalculationReport]:
        """Recompute one training for every user with a progress record.

        Used after authors add or remove mini-trainings, the video or the quiz.
        """

        training = db.get_training(training_id)
        if training is None:
            raise LookupError(f"Training not found: {training_id}")

        reports: List[RecalculationReport] = []
        for row in db.list_training_progress(training_id):
            user_id = row["user_id"]
            update = self.recalculate_training(user_id, training)
            report = RecalculationReport(
                user_id=user_id,
                previous_progress=float(row["progress"]),
                progress=update.progress,
                is_completed=update.is_completed,
            )
            if update.transitioned:
                self.recalculate_course(user_id, training["course_id"])
                report.course_recalculated = True
            if update.is_completed and update.progress < 100:
                report.notes.append("completed earlier; stays completed below 100%")
            reports.append(report)

        _LOGGER.info("Recalculated training %s for %s users", training_id, len(reports))
        return reports


def cascade_summary(result: CascadeResult) -> Dict[str, Any]:
    """Flat view of a cascade for logs and learning records."""

    summary: Dict[str, Any] = {
        "leaf": result.leaf.activity_id,
        "leafCompleted": result.leaf.is_completed,
        "leafTransitioned": result.leaf.transitioned,
    }
    if result.training is not None:
        summary["trainingProgress"] = result.training.progress
        summary["trainingCompleted"] = result.training.is_completed
    if result.course is not None:
        summary["courseProgress"] = result.course.progress
        summary["courseCompleted"] = result.course.is_completed
    return summary
