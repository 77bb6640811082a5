import asyncio
import threading

import pytest

import db
import xapi


@pytest.mark.usefixtures("temp_db")
def test_xapi_emit_persists_and_calls_lrs(monkeypatch):
    event = threading.Event()
    calls = []

    async def fake_forward(statement, *, lrs_url, headers, timeout=5.0, max_attempts=3):
        calls.append((lrs_url, statement, headers))
        event.set()

    monkeypatch.setattr(xapi, "_forward_statement_with_retry", fake_forward)
    monkeypatch.setenv("LRS_URL", "https://example.com/xapi")
    monkeypatch.setenv("LRS_AUTH", "Token abc")

    xapi.emit(
        "alice",
        xapi.VERB_ATTEMPTED,
        xapi.object_id("quiz", "quiz-1"),
        score=80,
        success=True,
        context={"attempt_number": "2", "total_questions": 5, "unknown": "dropped"},
    )

    [stored] = xapi.list_statements("alice")
    assert stored["verb"] == xapi.VERB_ATTEMPTED
    assert stored["object_id"] == "quiz:quiz-1"
    assert stored["score"] == 80.0
    assert stored["success"] is True
    assert stored["context"] == {"attempt_number": 2, "total_questions": 5}

    event.wait(0.5)
    assert calls
    url, payload, headers = calls[0]
    assert url == "https://example.com/xapi"
    assert headers["Authorization"] == "Token abc"
    assert payload["actor"]["account"]["name"] == "alice"


@pytest.mark.usefixtures("temp_db")
def test_emit_without_lrs_only_persists(monkeypatch):
    monkeypatch.delenv("LRS_URL", raising=False)
    monkeypatch.setattr(
        xapi, "_schedule_forward", lambda *a, **k: pytest.fail("should not forward")
    )
    xapi.emit("bob", xapi.VERB_COMPLETED, "training:t1", success=True, context={"progress": 100})
    rows = db._query("SELECT verb FROM xapi_statements WHERE user_id = 'bob'")
    assert [row["verb"] for row in rows] == [xapi.VERB_COMPLETED]


@pytest.mark.parametrize(
    "verb,obj,kwargs",
    [
        ("http://adlnet.gov/expapi/verbs/answered", "quiz:q", {}),
        (xapi.VERB_PASSED, "lesson:q", {}),
        (xapi.VERB_PASSED, "quiz:q", {"score": 120}),
        (xapi.VERB_COMPLETED, "course:c", {"context": {"progress": 150}}),
    ],
)
def test_statement_validation_rejects(verb, obj, kwargs):
    with pytest.raises(ValueError):
        xapi.build_statement("alice", verb, obj, **kwargs)


def test_forward_retries_server_errors(monkeypatch):
    statuses = iter([503, 502, 200])
    calls = []

    class _Response:
        def __init__(self, status_code):
            self.status_code = status_code

    def fake_post(url, json, headers, timeout):
        calls.append(url)
        return _Response(next(statuses))

    async def no_sleep(_):
        return None

    monkeypatch.setattr(xapi.requests, "post", fake_post)
    monkeypatch.setattr(xapi.asyncio, "sleep", no_sleep)
    asyncio.run(
        xapi._forward_statement_with_retry({}, lrs_url="https://lrs", headers={})
    )
    assert len(calls) == 3
