"""Learning records for quiz attempts, completions and XP grants.

Statements follow a small xAPI profile. They are validated, stored in the
``xapi_statements`` table and, when ``LRS_URL`` is configured, forwarded to an
external Learning Record Store in the background with retry/backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import requests

import db

LOGGER = logging.getLogger("lms.xapi")

VERB_ATTEMPTED = "http://adlnet.gov/expapi/verbs/attempted"
VERB_PASSED = "http://adlnet.gov/expapi/verbs/passed"
VERB_FAILED = "http://adlnet.gov/expapi/verbs/failed"
VERB_COMPLETED = "http://adlnet.gov/expapi/verbs/completed"

XAPI_PROFILE_VERBS: dict[str, str] = {
    VERB_ATTEMPTED: "Learner submitted a quiz attempt.",
    VERB_PASSED: "Quiz attempt reached the passing score.",
    VERB_FAILED: "Quiz attempt stayed below the passing score.",
    VERB_COMPLETED: "Mini-training, training or course reached completion.",
}

_ALLOWED_OBJECT_PREFIXES: Sequence[str] = (
    "quiz:",
    "training:",
    "mini-training:",
    "course:",
    "https://",
    "http://",
)

_CONTEXT_EXTENSION_SCHEMA: dict[str, type] = {
    "attempt_number": int,
    "time_spent": int,
    "correct_answers": int,
    "total_questions": int,
    "xp_earned": int,
    "progress": float,
    "activity_type": str,
    "parent": str,
    "cascade": dict,
}


def object_id(kind: str, identifier: str) -> str:
    """``quiz:abc``, ``training:t1`` and so on."""

    return f"{kind}:{identifier}"


def _coerce_extension(key: str, value: Any) -> Any:
    expected = _CONTEXT_EXTENSION_SCHEMA[key]
    if value is None:
        return None
    if expected is float:
        coerced = float(value)
        if key == "progress" and not 0.0 <= coerced <= 100.0:
            raise ValueError("progress extension must be between 0 and 100")
        return round(coerced, 2)
    if expected is int:
        return int(value)
    if expected is dict:
        if not isinstance(value, dict):
            raise ValueError(f"{key} extension must be an object")
        return value
    return str(value)


def validate_statement(statement: Dict[str, Any]) -> Dict[str, Any]:
    """Check a statement against the local profile and normalise its context."""

    account = (statement.get("actor") or {}).get("account") or {}
    if not isinstance(account.get("name"), str) or not account["name"].strip():
        raise ValueError("actor.account.name is required")

    verb_id = ((statement.get("verb") or {}).get("id") or "").strip()
    if verb_id not in XAPI_PROFILE_VERBS:
        allowed = ", ".join(sorted(XAPI_PROFILE_VERBS))
        raise ValueError(f"Unsupported verb '{verb_id}'. Allowed verbs: {allowed}")
    statement["verb"]["id"] = verb_id

    obj_id = ((statement.get("object") or {}).get("id") or "").strip()
    if not any(obj_id.startswith(prefix) for prefix in _ALLOWED_OBJECT_PREFIXES):
        raise ValueError(
            "object.id must start with one of: " + ", ".join(_ALLOWED_OBJECT_PREFIXES)
        )
    statement["object"]["id"] = obj_id

    result = statement.get("result")
    if result is not None:
        score = result.get("score")
        if score is not None:
            raw = float(score["raw"])
            if not 0.0 <= raw <= 100.0:
                raise ValueError("result.score.raw must be between 0 and 100")
            score["raw"] = raw
        if "success" in result:
            result["success"] = bool(result["success"])

    context = statement.get("context") or {}
    cleaned: dict[str, Any] = {}
    for key, value in (context.get("extensions") or {}).items():
        if key not in _CONTEXT_EXTENSION_SCHEMA:
            LOGGER.debug("Dropping unsupported xAPI extension: %s", key)
            continue
        coerced = _coerce_extension(key, value)
        if coerced is not None:
            cleaned[key] = coerced
    context["platform"] = context.get("platform") or os.getenv("XAPI_PLATFORM", "LMS")
    context["language"] = context.get("language") or os.getenv("XAPI_LANGUAGE", "en")
    context["extensions"] = cleaned
    statement["context"] = context
    return statement


def build_statement(
    user_id: str,
    verb: str,
    obj: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    response: Optional[Any] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    statement: Dict[str, Any] = {
        "actor": {
            "account": {
                "homePage": os.getenv("APP_BASE_URL", "https://lms.local"),
                "name": user_id,
            }
        },
        "verb": {"id": verb},
        "object": {"id": obj},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "context": {"extensions": dict(context or {})},
    }
    result: Dict[str, Any] = {}
    if score is not None:
        result["score"] = {"raw": float(score)}
    if success is not None:
        result["success"] = success
    if response is not None:
        result["response"] = response
    if result:
        statement["result"] = result
    return validate_statement(statement)


async def _forward_statement_with_retry(
    statement: Dict[str, Any],
    *,
    lrs_url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
) -> None:
    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post, lrs_url, json=statement, headers=headers, timeout=timeout
            )
            if response.status_code < 500:
                return
            LOGGER.warning(
                "LRS responded with status %s on attempt %s", response.status_code, attempt
            )
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward xAPI statement (attempt %s): %s", attempt, exc)
        if attempt == max_attempts:
            break
        await asyncio.sleep(delay)
        delay *= 2


def _schedule_forward(statement: Dict[str, Any], *, lrs_url: str, headers: Dict[str, str]) -> None:
    coro = _forward_statement_with_retry(statement, lrs_url=lrs_url, headers=headers)
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        loop.create_task(coro)
    else:
        threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()


def _lrs_headers() -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Experience-API-Version": "1.0.3",
    }
    auth = os.getenv("LRS_AUTH")
    if auth:
        headers["Authorization"] = auth
    return headers


def emit(
    user_id: str,
    verb: str,
    obj: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    response: Optional[Any] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Persist a statement locally and forward it when an LRS is configured."""

    statement = build_statement(
        user_id, verb, obj, score=score, success=success, response=response, context=context
    )
    result = statement.get("result") or {}
    stored_response = response
    if isinstance(response, (dict, list)):
        stored_response = db.json_dumps(response)

    with db._conn() as con:
        con.execute(
            """
            INSERT INTO xapi_statements(user_id, verb, object_id, score, success, response, context)
            VALUES (?,?,?,?,?,?,?)
            """,
            (
                user_id,
                statement["verb"]["id"],
                statement["object"]["id"],
                result["score"]["raw"] if "score" in result else None,
                None if "success" not in result else int(result["success"]),
                stored_response,
                db.json_dumps(statement["context"]["extensions"]),
            ),
        )
        con.commit()

    lrs_url = os.getenv("LRS_URL")
    if lrs_url:
        _schedule_forward(statement, lrs_url=lrs_url, headers=_lrs_headers())
    return statement


def list_statements(user_id: str, verb: Optional[str] = None) -> list[Dict[str, Any]]:
    sql = "SELECT verb, object_id, score, success, response, context FROM xapi_statements WHERE user_id = ?"
    params: list[Any] = [user_id]
    if verb:
        sql += " AND verb = ?"
        params.append(verb)
    rows = db._query(sql + " ORDER BY id", params)
    statements = []
    for row in rows:
        data = dict(row)
        data["context"] = json.loads(data["context"]) if data["context"] else {}
        if data["success"] is not None:
            data["success"] = bool(data["success"])
        statements.append(data)
    return statements
