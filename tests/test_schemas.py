import pytest
from pydantic import ValidationError

from schemas import (
    QuizPostponeBody,
    QuizSubmission,
    QuizSubmissionResult,
    WatchProgressBody,
    validation_message,
)


def test_submission_accepts_camel_case_and_numeric_ids():
    submission = QuizSubmission.model_validate(
        {"answers": {"q1": "opt-q1-0", "q2": 3, "q3": None}, "timeSpent": 12.5, "startedAt": "2025-01-01T00:00:00Z"}
    )
    assert submission.answers == {"q1": "opt-q1-0", "q2": "3", "q3": None}
    assert submission.time_spent == 12.5
    assert submission.started_at == "2025-01-01T00:00:00Z"


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"answers": ["opt"]},
        {"answers": {"q1": {"id": "x"}}},
        {"answers": {"q1": True}},
        {"answers": {}, "timeSpent": -3},
        {"answers": {}, "timeSpent": float("inf")},
        {"answers": {}, "timeSpent": float("nan")},
    ],
)
def test_submission_rejects_malformed_payloads(payload):
    with pytest.raises(ValidationError) as info:
        QuizSubmission.model_validate(payload)
    assert validation_message(info.value)


def test_watch_progress_rejects_infinite_seconds():
    with pytest.raises(ValidationError):
        WatchProgressBody.model_validate({"watchedSeconds": float("inf")})


def test_result_serialises_with_camel_case_aliases():
    result = QuizSubmissionResult(
        score=80,
        correct_answers=4,
        total_questions=5,
        passed=True,
        attempt_number=1,
        results=[],
        is_completed=True,
        xp_earned=80,
    )
    dumped = result.model_dump(by_alias=True)
    assert dumped["correctAnswers"] == 4
    assert dumped["xpEarned"] == 80
    assert dumped["isCompleted"] is True
    assert "correct_answers" not in dumped


def test_postpone_body_accepts_only_booleans():
    assert QuizPostponeBody.model_validate({"postponed": False}).postponed is False
    for value in ("true", 1, None):
        with pytest.raises(ValidationError):
            QuizPostponeBody.model_validate({"postponed": value})
