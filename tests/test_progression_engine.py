import pytest

import db
from engines.progression import (
    ProgressAggregator,
    TrainingSignals,
    compute_course_progress,
    compute_training_progress,
    video_progress,
)


def test_quiz_only_training_passed_is_complete():
    assert compute_training_progress(TrainingSignals(quiz_completed=True)) == 100.0


def test_video_half_watched_and_quiz_passed():
    signals = TrainingSignals(video_progress=50, quiz_completed=True)
    expected = (50 * 0.5 + 100 * 0.3) / (0.5 + 0.3)
    assert compute_training_progress(signals) == pytest.approx(expected)
    assert compute_training_progress(signals) == 68.75


def test_no_video_renormalises_quiz_and_mini_trainings():
    signals = TrainingSignals(quiz_completed=True, mini_trainings_completed=0, total_mini_trainings=2)
    assert compute_training_progress(signals) == 60.0
    signals = TrainingSignals(quiz_completed=False, mini_trainings_completed=1, total_mini_trainings=2)
    assert compute_training_progress(signals) == 20.0


def test_training_without_signals_reports_zero():
    assert compute_training_progress(TrainingSignals()) == 0.0


def test_course_progress_is_completed_share():
    assert compute_course_progress(3, 4) == 75.0
    assert compute_course_progress(0, 0) == 0.0


def test_video_progress_caps_at_100():
    assert video_progress(30, 60) == 50.0
    assert video_progress(90, 60) == 100.0
    assert video_progress(10, None) == 0.0


def _seed(total_mini=1, with_video=False, with_quiz=False):
    db.upsert_course("c1", "Course")
    db.upsert_training("t1", "c1", "Training", video_duration=100 if with_video else None, total_xp=100)
    db.upsert_training("t2", "c1", "Other")
    for i in range(total_mini):
        db.upsert_mini_training(f"m{i}", "t1", f"Mini {i}", position=i)
    if with_quiz:
        db.upsert_quiz("tq", db.ACTIVITY_TRAINING, "t1", [{"id": "q", "options": ["a"], "correctAnswer": 0}])
    return db.get_training("t1"), db.get_mini_training("m0") if total_mini else None


@pytest.mark.usefixtures("temp_db")
def test_mini_training_pass_cascades_to_training_and_course():
    training, mini = _seed(total_mini=1)
    aggregator = ProgressAggregator()

    result = aggregator.record_mini_training_quiz(
        "u1", mini, training, passed=True, score=80, completed_at="2025-01-01T00:00:00+00:00"
    )
    assert result.leaf.transitioned is True
    assert result.training.progress == 100.0
    assert result.training.transitioned is True
    assert result.course.progress == 50.0
    assert result.course.is_completed is False


@pytest.mark.usefixtures("temp_db")
def test_cascade_is_idempotent():
    training, mini = _seed(total_mini=2)
    aggregator = ProgressAggregator()
    kwargs = dict(passed=True, score=90, completed_at="2025-01-01T00:00:00+00:00")

    first = aggregator.record_mini_training_quiz("u1", mini, training, **kwargs)
    state_once = (db.get_mini_training_progress("u1", "m0"), db.get_training_progress("u1", "t1"))
    second = aggregator.record_mini_training_quiz("u1", mini, training, **kwargs)
    state_twice = (db.get_mini_training_progress("u1", "m0"), db.get_training_progress("u1", "t1"))

    assert state_once == state_twice
    assert first.leaf.transitioned is True
    assert second.leaf.transitioned is False
    assert second.training.progress == 50.0
    assert second.course is None


@pytest.mark.usefixtures("temp_db")
def test_failed_retake_never_uncompletes():
    training, mini = _seed(total_mini=1)
    aggregator = ProgressAggregator()
    aggregator.record_mini_training_quiz(
        "u1", mini, training, passed=True, score=90, completed_at="2025-01-01T00:00:00+00:00"
    )
    result = aggregator.record_mini_training_quiz(
        "u1", mini, training, passed=False, score=10, completed_at="2025-02-01T00:00:00+00:00"
    )

    row = db.get_mini_training_progress("u1", "m0")
    assert row["is_completed"] is True
    assert row["quiz_score"] == 10
    assert row["completed_at"] == "2025-01-01T00:00:00+00:00"
    assert result.training.is_completed is True


@pytest.mark.usefixtures("temp_db")
def test_course_only_recomputed_when_training_flips():
    training, mini = _seed(total_mini=2)
    result = ProgressAggregator().record_mini_training_quiz(
        "u1", mini, training, passed=True, score=100, completed_at="2025-01-01T00:00:00+00:00"
    )
    assert result.training.is_completed is False
    assert result.course is None
    assert db.get_course_progress("u1", "c1") is None


@pytest.mark.usefixtures("temp_db")
def test_training_video_and_quiz_signals():
    training, _ = _seed(total_mini=0, with_video=True, with_quiz=True)
    aggregator = ProgressAggregator()

    watched = aggregator.record_training_video("u1", training, 50)
    assert watched.leaf.progress == 50.0
    assert watched.training.progress == pytest.approx(31.25)

    quiz = aggregator.record_training_quiz("u1", training, passed=True, score=100, completed_at="2025-01-01T00:00:00+00:00")
    assert quiz.leaf.transitioned is True
    assert quiz.training.progress == 68.75
    assert quiz.training.is_completed is False

    rewatch = aggregator.record_training_video("u1", training, 20)
    assert rewatch.leaf.progress == 50.0


@pytest.mark.usefixtures("temp_db")
def test_mini_training_video_does_not_complete():
    _, mini = _seed(total_mini=1)
    db.upsert_mini_training("m0", "t1", "Mini 0", video_duration=60)
    update = ProgressAggregator().record_mini_training_video("u1", db.get_mini_training("m0"), 60)
    assert update.progress == 100.0
    assert update.is_completed is False


@pytest.mark.usefixtures("temp_db")
def test_bulk_recalculation_keeps_completion():
    training, mini = _seed(total_mini=1)
    aggregator = ProgressAggregator()
    aggregator.record_mini_training_quiz(
        "u1", mini, training, passed=True, score=100, completed_at="2025-01-01T00:00:00+00:00"
    )
    db.upsert_mini_training("m1", "t1", "Added later", position=1)

    [report] = aggregator.recalculate_training_for_all_users("t1")
    assert report.user_id == "u1"
    assert report.previous_progress == 100.0
    assert report.progress == 50.0
    assert report.is_completed is True
    assert report.notes


@pytest.mark.usefixtures("temp_db")
def test_bulk_recalculation_unknown_training():
    with pytest.raises(LookupError):
        ProgressAggregator().recalculate_training_for_all_users("missing")
