import asyncio
import json
import sqlite3
import time
from typing import Any, Optional

import pytest

import app
import db
import xapi


def _prepare_scope(method: str, path: str, *, headers: Optional[dict[str, str]] = None, body: bytes = b"") -> dict:
    raw_headers = [(b"host", b"testserver")]
    for key, value in (headers or {}).items():
        raw_headers.append((key.lower().encode("latin-1"), value.encode("utf-8")))
    if body:
        raw_headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode("ascii")),
            ]
        )
    return {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode("utf-8"),
        "root_path": "",
        "scheme": "http",
        "query_string": b"",
        "headers": raw_headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }


async def _call_app(method: str, path: str, *, body: bytes = b"", headers: Optional[dict[str, str]] = None) -> tuple[int, dict]:
    scope = _prepare_scope(method, path, headers=headers, body=body)
    messages: list[dict] = []

    async def receive() -> dict:
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message: dict) -> None:
        messages.append(message)

    await app.app(scope, receive, send)
    status_code = 500
    response_body = b""
    for message in messages:
        if message.get("type") == "http.response.start":
            status_code = message.get("status", 500)
        elif message.get("type") == "http.response.body":
            response_body += message.get("body", b"")
    return status_code, json.loads(response_body.decode("utf-8") or "{}")


def _post(path: str, payload: Any, token: Optional[str] = None) -> tuple[int, dict]:
    headers = {"Authorization": f"Bearer {token}"} if token else None
    return asyncio.run(_call_app("POST", path, body=json.dumps(payload).encode("utf-8"), headers=headers))


def _post_raw(path: str, body: bytes, token: Optional[str] = None) -> tuple[int, dict]:
    headers = {"Authorization": f"Bearer {token}"} if token else None
    return asyncio.run(_call_app("POST", path, body=body, headers=headers))


def _get(path: str, token: Optional[str] = None) -> tuple[int, dict]:
    headers = {"Authorization": f"Bearer {token}"} if token else None
    return asyncio.run(_call_app("GET", path, headers=headers))


def _answers(questions, correct: int) -> dict:
    # option ids come from the authored position, so they survive the shuffle
    answers = {}
    for i, question in enumerate(questions):
        pick = question["correctAnswer"] if i < correct else question["correctAnswer"] + 1
        answers[question["id"]] = f"opt-{question['id']}-{pick}"
    return answers


@pytest.fixture
def course(temp_db, make_quiz_questions):
    app.TOKENS.clear()
    db.upsert_course("c1", "Onboarding")
    db.upsert_training("t-mini", "c1", "Safety", total_xp=500, position=1)
    db.upsert_training("t-quiz", "c1", "Tools", total_xp=300, position=2)
    db.upsert_mini_training("m1", "t-mini", "Exits")
    mini_questions = make_quiz_questions(5, prefix="m")
    training_questions = make_quiz_questions(5, prefix="t")
    db.upsert_quiz("quiz-m1", db.ACTIVITY_MINI_TRAINING, "m1", mini_questions, passing_score=70)
    db.upsert_quiz("quiz-t", db.ACTIVITY_TRAINING, "t-quiz", training_questions, passing_score=70)
    return {"mini": mini_questions, "training": training_questions, "token": app.issue_token("alice")}


def test_mini_training_submission_cascades_and_awards_once(course):
    status, body = _post(
        "/mini-trainings/m1/quiz/submit",
        {"answers": _answers(course["mini"], 4)},
        course["token"],
    )
    assert status == 200, body
    assert body["score"] == 80
    assert body["passed"] is True
    assert body["correctAnswers"] == 4
    assert body["totalQuestions"] == 5
    assert body["attemptNumber"] == 1
    assert body["isCompleted"] is True
    assert body["progress"] == 100.0
    assert body["xpEarned"] == 80
    assert body["feedback"]["title"] == "Great Job!"
    assert sum(1 for r in body["results"] if r["isCorrect"]) == 4

    assert db.get_training_progress("alice", "t-mini")["is_completed"] is True
    assert db.get_course_progress("alice", "c1")["progress"] == 50.0

    status, again = _post(
        "/mini-trainings/m1/quiz/submit",
        {"answers": _answers(course["mini"], 5)},
        course["token"],
    )
    assert status == 200
    assert again["attemptNumber"] == 2
    assert again["score"] == 100
    assert again["xpEarned"] == 0
    assert db.get_user("alice")["xp"] == 80
    assert len(db.list_xp_awards("alice")) == 1


def test_training_quiz_completes_course(course):
    _post("/mini-trainings/m1/quiz/submit", {"answers": _answers(course["mini"], 5)}, course["token"])
    status, body = _post(
        "/trainings/t-quiz/quiz/submit",
        {"answers": _answers(course["training"], 4)},
        course["token"],
    )
    assert status == 200, body
    assert body["isCompleted"] is True
    assert body["progress"] == 100.0
    assert body["xpEarned"] == 240

    status, progress = _get("/courses/c1/progress", course["token"])
    assert status == 200
    assert progress["progress"] == 100.0
    assert progress["isCompleted"] is True

    completed = xapi.list_statements("alice", xapi.VERB_COMPLETED)
    assert {row["object_id"] for row in completed} == {
        "mini-training:m1",
        "training:t-mini",
        "training:t-quiz",
        "course:c1",
    }


def test_failed_submission_records_attempt_without_completion(course):
    status, body = _post(
        "/mini-trainings/m1/quiz/submit",
        {"answers": _answers(course["mini"], 2), "timeSpent": 42.7},
        course["token"],
    )
    assert status == 200
    assert body["score"] == 40
    assert body["passed"] is False
    assert body["isCompleted"] is False
    assert body["xpEarned"] == 0
    assert body["timeSpent"] == 42
    assert db.get_highest_score("alice", "quiz-m1") == 40


def test_started_at_overrides_client_time(course):
    started = int(time.time() * 1000) - 90_000
    status, body = _post(
        "/mini-trainings/m1/quiz/submit",
        {"answers": {}, "startedAt": started, "timeSpent": 5},
        course["token"],
    )
    assert status == 200
    assert 89 <= body["timeSpent"] <= 92
    assert body["score"] == 0


def test_highest_score_endpoint(course):
    status, body = _get("/quizzes/quiz-m1/highest-score", course["token"])
    assert (status, body) == (200, {"highestScore": None})
    _post("/mini-trainings/m1/quiz/submit", {"answers": _answers(course["mini"], 3)}, course["token"])
    _post("/mini-trainings/m1/quiz/submit", {"answers": _answers(course["mini"], 1)}, course["token"])
    status, body = _get("/quizzes/quiz-m1/highest-score", course["token"])
    assert body == {"highestScore": 60}


def test_missing_token_is_rejected_without_side_effects(course):
    status, body = _post("/mini-trainings/m1/quiz/submit", {"answers": {}})
    assert status == 401
    assert body == {"success": False, "error": "Unauthorized"}
    assert db.count_quiz_attempts("alice", "quiz-m1") == 0


@pytest.mark.parametrize(
    "path",
    ["/mini-trainings/nope/quiz/submit", "/trainings/nope/quiz/submit"],
)
def test_unknown_activity_is_not_found(course, path):
    status, body = _post(path, {"answers": {}}, course["token"])
    assert status == 404
    assert body["success"] is False


@pytest.mark.parametrize("payload", [{"answers": ["a"]}, {"answers": "x"}, [1, 2], {"answers": {}, "timeSpent": -1}])
def test_malformed_payload_is_bad_request(course, payload):
    status, body = _post("/mini-trainings/m1/quiz/submit", payload, course["token"])
    assert status == 400
    assert body["success"] is False
    assert db.count_quiz_attempts("alice", "quiz-m1") == 0


def test_invalid_started_at_is_bad_request(course):
    status, body = _post(
        "/mini-trainings/m1/quiz/submit",
        {"answers": {}, "startedAt": "yesterday"},
        course["token"],
    )
    assert status == 400
    assert "startedAt" in body["error"]


def test_invalid_json_is_bad_request(course):
    status, body = _post_raw("/mini-trainings/m1/quiz/submit", b"{not json", course["token"])
    assert status == 400
    assert body["success"] is False


@pytest.mark.parametrize("path", ["/mini-trainings/m1/quiz/submit", "/trainings/t-quiz/quiz/postpone"])
def test_missing_token_wins_over_unparseable_body(course, path):
    status, body = _post_raw(path, b"{not json")
    assert (status, body) == (401, {"success": False, "error": "Unauthorized"})


def test_infinite_time_spent_is_bad_request(course):
    status, body = _post_raw(
        "/mini-trainings/m1/quiz/submit", b'{"answers": {}, "timeSpent": 1e400}', course["token"]
    )
    assert status == 400
    assert "timeSpent" in body["error"]
    assert db.count_quiz_attempts("alice", "quiz-m1") == 0


def test_stored_quiz_with_no_questions_is_rejected(course):
    db.upsert_quiz("quiz-m1", db.ACTIVITY_MINI_TRAINING, "m1", "[]")
    status, body = _post("/mini-trainings/m1/quiz/submit", {"answers": {}}, course["token"])
    assert status == 400
    assert body["error"] == "Quiz has no questions"
    assert db.count_quiz_attempts("alice", "quiz-m1") == 0


def test_retake_policy(course):
    db.upsert_quiz("quiz-t", db.ACTIVITY_TRAINING, "t-quiz", course["training"], allow_retake=False)
    assert _post("/trainings/t-quiz/quiz/submit", {"answers": {}}, course["token"])[0] == 200
    status, body = _post("/trainings/t-quiz/quiz/submit", {"answers": {}}, course["token"])
    assert (status, body["error"]) == (400, "Quiz does not allow retakes")

    db.upsert_quiz("quiz-t", db.ACTIVITY_TRAINING, "t-quiz", course["training"], max_attempts=1)
    status, body = _post("/trainings/t-quiz/quiz/submit", {"answers": {}}, course["token"])
    assert (status, body["error"]) == (400, "Maximum attempts reached")


def test_duplicate_attempt_number_is_conflict(course, monkeypatch):
    monkeypatch.setattr(db, "count_quiz_attempts", lambda user_id, quiz_id: 0)
    assert _post("/mini-trainings/m1/quiz/submit", {"answers": {}}, course["token"])[0] == 200
    status, body = _post("/mini-trainings/m1/quiz/submit", {"answers": {}}, course["token"])
    assert status == 409
    assert body["success"] is False


def test_unexpected_failure_is_generic_500(course, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(app._SERVICE.aggregator, "record_mini_training_quiz", _boom)
    status, body = _post("/mini-trainings/m1/quiz/submit", {"answers": {}}, course["token"])
    assert status == 500
    assert body == {"success": False, "error": "Failed to submit quiz"}


def test_watch_progress_endpoints(course):
    db.upsert_training("t-video", "c1", "Video", video_duration=200, minimum_watch_time=120, position=3)
    token = course["token"]

    status, body = _post("/trainings/t-video/watch-progress", {"watchedSeconds": 100}, token)
    assert status == 200
    assert body["videoProgress"] == 50.0
    assert body["canTakeQuiz"] is False
    assert body["progress"] == 50.0

    _post("/trainings/t-video/watch-progress", {"watchedSeconds": 200}, token)
    status, body = _get("/trainings/t-video/watch-progress", token)
    assert body["watchedSeconds"] == 200
    assert body["canTakeQuiz"] is True
    assert body["isCompleted"] is True

    status, body = _get("/trainings/t-video/progress", token)
    assert body["progress"] == 100.0
    assert body["completedAt"]

    status, body = _post("/mini-trainings/m1/watch-progress", {"watchedSeconds": 10}, token)
    assert status == 200
    assert body["isCompleted"] is False

    status, body = _post("/trainings/t-video/watch-progress", {"watchedSeconds": -5}, token)
    assert status == 400


def test_postponed_quiz_is_cleared_by_submission(course):
    token = course["token"]
    status, body = _post("/trainings/t-quiz/quiz/postpone", {"postponed": True}, token)
    assert (status, body) == (200, {"quizPostponed": True})
    assert _get("/trainings/t-quiz/progress", token)[1]["quizPostponed"] is True

    assert _post("/trainings/t-quiz/quiz/submit", {"answers": {}}, token)[0] == 200
    status, body = _get("/trainings/t-quiz/progress", token)
    assert body["quizPostponed"] is False
    assert body["quizScore"] == 0


@pytest.mark.parametrize("payload", [{"postponed": "yes"}, {"postponed": 1}, {}])
def test_postpone_requires_a_boolean(course, payload):
    status, body = _post("/trainings/t-quiz/quiz/postpone", payload, course["token"])
    assert status == 400
    assert body["success"] is False
    assert db.get_training_progress("alice", "t-quiz") is None


def test_postpone_unknown_training_is_not_found(course):
    status, body = _post("/trainings/nope/quiz/postpone", {"postponed": True}, course["token"])
    assert (status, body["error"]) == (404, "Training not found")


def test_store_failure_on_progress_read_is_structured_500(course, monkeypatch):
    def _locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "get_training_progress", _locked)
    status, body = _get("/trainings/t-quiz/progress", course["token"])
    assert status == 500
    assert body == {"success": False, "error": "Internal server error"}
