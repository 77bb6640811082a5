import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

ACTIVITY_TRAINING = "training"
ACTIVITY_MINI_TRAINING = "mini_training"
ACTIVITY_TYPES = (ACTIVITY_TRAINING, ACTIVITY_MINI_TRAINING)

_pool = SQLiteConnectionPool(DB_PATH, max_connections=int(os.getenv("DB_MAX_CONNECTIONS", "10")))


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_dict(row: Optional[sqlite3.Row], *bool_fields: str) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for field in bool_fields:
        if field in data and data[field] is not None:
            data[field] = bool(data[field])
    return data


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              id          TEXT PRIMARY KEY,
              xp          INTEGER NOT NULL DEFAULT 0,
              level       INTEGER NOT NULL DEFAULT 1,
              rank        TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS courses (
              course_id    TEXT PRIMARY KEY,
              title        TEXT NOT NULL,
              is_published INTEGER NOT NULL DEFAULT 1,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS trainings (
              training_id        TEXT PRIMARY KEY,
              course_id          TEXT NOT NULL,
              title              TEXT NOT NULL,
              is_published       INTEGER NOT NULL DEFAULT 1,
              video_duration     REAL,
              minimum_watch_time REAL DEFAULT 0,
              total_xp           INTEGER NOT NULL DEFAULT 0,
              position           INTEGER DEFAULT 0,
              created_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_trainings_course ON trainings(course_id);

            CREATE TABLE IF NOT EXISTS mini_trainings (
              mini_training_id TEXT PRIMARY KEY,
              training_id      TEXT NOT NULL,
              title            TEXT NOT NULL,
              video_duration   REAL,
              position         INTEGER DEFAULT 0,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(training_id) REFERENCES trainings(training_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_mini_trainings_training ON mini_trainings(training_id);

            CREATE TABLE IF NOT EXISTS quizzes (
              quiz_id           TEXT PRIMARY KEY,
              activity_type     TEXT NOT NULL CHECK (activity_type IN ('training', 'mini_training')),
              activity_id       TEXT NOT NULL,
              title             TEXT,
              questions         TEXT NOT NULL DEFAULT '[]',
              passing_score     INTEGER NOT NULL DEFAULT 70,
              questions_to_show INTEGER,
              allow_retake      INTEGER NOT NULL DEFAULT 1,
              max_attempts      INTEGER,
              updated_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(activity_type, activity_id)
            );

            CREATE TABLE IF NOT EXISTS quiz_attempts (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT NOT NULL,
              quiz_id        TEXT NOT NULL,
              attempt_number INTEGER NOT NULL,
              score          INTEGER NOT NULL,
              passed         INTEGER NOT NULL,
              answers        TEXT NOT NULL,
              time_spent     INTEGER,
              started_at     TEXT,
              completed_at   TEXT NOT NULL,
              UNIQUE(user_id, quiz_id, attempt_number),
              FOREIGN KEY(quiz_id) REFERENCES quizzes(quiz_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user_quiz ON quiz_attempts(user_id, quiz_id);

            CREATE TABLE IF NOT EXISTS mini_training_progress (
              user_id          TEXT NOT NULL,
              mini_training_id TEXT NOT NULL,
              video_progress   REAL NOT NULL DEFAULT 0,
              video_watched_seconds REAL NOT NULL DEFAULT 0,
              quiz_completed   INTEGER NOT NULL DEFAULT 0,
              quiz_score       INTEGER,
              is_completed     INTEGER NOT NULL DEFAULT 0,
              completed_at     TEXT,
              updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY(user_id, mini_training_id)
            );

            CREATE TABLE IF NOT EXISTS training_progress (
              user_id                  TEXT NOT NULL,
              training_id              TEXT NOT NULL,
              video_progress           REAL NOT NULL DEFAULT 0,
              video_watched_seconds    REAL NOT NULL DEFAULT 0,
              quiz_completed           INTEGER NOT NULL DEFAULT 0,
              quiz_score               INTEGER,
              quiz_postponed           INTEGER NOT NULL DEFAULT 0,
              mini_trainings_completed INTEGER NOT NULL DEFAULT 0,
              total_mini_trainings     INTEGER NOT NULL DEFAULT 0,
              progress                 REAL NOT NULL DEFAULT 0,
              is_completed             INTEGER NOT NULL DEFAULT 0,
              completed_at             TEXT,
              updated_at               TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY(user_id, training_id)
            );

            CREATE INDEX IF NOT EXISTS idx_training_progress_training ON training_progress(training_id);

            CREATE TABLE IF NOT EXISTS course_progress (
              user_id      TEXT NOT NULL,
              course_id    TEXT NOT NULL,
              progress     REAL NOT NULL DEFAULT 0,
              is_completed INTEGER NOT NULL DEFAULT 0,
              completed_at TEXT,
              updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY(user_id, course_id)
            );

            CREATE TABLE IF NOT EXISTS xp_awards (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id       TEXT NOT NULL,
              activity_type TEXT NOT NULL,
              activity_id   TEXT NOT NULL,
              base_points   INTEGER NOT NULL,
              score         INTEGER,
              points        INTEGER NOT NULL,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(user_id, activity_type, activity_id)
            );

            CREATE TABLE IF NOT EXISTS xapi_statements (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              verb        TEXT NOT NULL,
              object_id   TEXT NOT NULL,
              score       REAL,
              success     INTEGER,
              response    TEXT,
              context     TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_xapi_user ON xapi_statements(user_id, created_at DESC);
            """
        )
        con.commit()


# -------------- users / gamification --------------
def ensure_user(user_id: str) -> None:
    _exec("INSERT INTO users(id) VALUES (?) ON CONFLICT(id) DO NOTHING", (user_id,))


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT id, xp, level, rank FROM users WHERE id = ?", (user_id,))
    return _as_dict(rows[0]) if rows else None


def grant_xp(
    user_id: str,
    activity_type: str,
    activity_id: str,
    *,
    base_points: int,
    score: Optional[int],
    points: int,
) -> Optional[int]:
    """Record an XP grant and add ``points`` to the user's total.

    Returns the new XP total, or ``None`` when ``(user, activity)`` was already
    rewarded. Both writes share one transaction.
    """
    with _conn() as con:
        con.execute("INSERT INTO users(id) VALUES (?) ON CONFLICT(id) DO NOTHING", (user_id,))
        cur = con.execute(
            """
            INSERT INTO xp_awards(user_id, activity_type, activity_id, base_points, score, points)
            VALUES (?,?,?,?,?,?)
            ON CONFLICT(user_id, activity_type, activity_id) DO NOTHING
            """,
            (user_id, activity_type, activity_id, int(base_points), score, int(points)),
        )
        if cur.rowcount == 0:
            con.rollback()
            return None
        con.execute(
            "UPDATE users SET xp = xp + ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (int(points), user_id),
        )
        total = con.execute("SELECT xp FROM users WHERE id = ?", (user_id,)).fetchone()["xp"]
        con.commit()
    return int(total)


def update_user_rank(user_id: str, level: int, rank: str) -> None:
    _exec(
        "UPDATE users SET level = ?, rank = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (int(level), rank, user_id),
    )


def list_xp_awards(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT activity_type, activity_id, base_points, score, points, created_at
        FROM xp_awards WHERE user_id = ? ORDER BY id
        """,
        (user_id,),
    )
    return [dict(row) for row in rows]


# -------------- content --------------
def upsert_course(course_id: str, title: str, *, is_published: bool = True) -> None:
    _exec(
        """
        INSERT INTO courses(course_id, title, is_published) VALUES (?,?,?)
        ON CONFLICT(course_id) DO UPDATE SET
          title=excluded.title,
          is_published=excluded.is_published
        """,
        (course_id, title, int(is_published)),
    )


def get_course(course_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT course_id, title, is_published FROM courses WHERE course_id = ?",
        (course_id,),
    )
    return _as_dict(rows[0], "is_published") if rows else None


def upsert_training(
    training_id: str,
    course_id: str,
    title: str,
    *,
    is_published: bool = True,
    video_duration: Optional[float] = None,
    minimum_watch_time: float = 0,
    total_xp: int = 0,
    position: int = 0,
) -> None:
    _exec(
        """
        INSERT INTO trainings(
          training_id, course_id, title, is_published, video_duration,
          minimum_watch_time, total_xp, position
        ) VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(training_id) DO UPDATE SET
          course_id=excluded.course_id,
          title=excluded.title,
          is_published=excluded.is_published,
          video_duration=excluded.video_duration,
          minimum_watch_time=excluded.minimum_watch_time,
          total_xp=excluded.total_xp,
          position=excluded.position
        """,
        (
            training_id,
            course_id,
            title,
            int(is_published),
            None if video_duration is None else float(video_duration),
            float(minimum_watch_time or 0),
            int(total_xp),
            int(position),
        ),
    )


def get_training(training_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT training_id, course_id, title, is_published, video_duration,
               minimum_watch_time, total_xp
        FROM trainings WHERE training_id = ?
        """,
        (training_id,),
    )
    return _as_dict(rows[0], "is_published") if rows else None


def list_published_training_ids(course_id: str) -> list[str]:
    rows = _query(
        "SELECT training_id FROM trainings WHERE course_id = ? AND is_published = 1 ORDER BY position",
        (course_id,),
    )
    return [row["training_id"] for row in rows]


def upsert_mini_training(
    mini_training_id: str,
    training_id: str,
    title: str,
    *,
    video_duration: Optional[float] = None,
    position: int = 0,
) -> None:
    _exec(
        """
        INSERT INTO mini_trainings(mini_training_id, training_id, title, video_duration, position)
        VALUES (?,?,?,?,?)
        ON CONFLICT(mini_training_id) DO UPDATE SET
          training_id=excluded.training_id,
          title=excluded.title,
          video_duration=excluded.video_duration,
          position=excluded.position
        """,
        (
            mini_training_id,
            training_id,
            title,
            None if video_duration is None else float(video_duration),
            int(position),
        ),
    )


def get_mini_training(mini_training_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT mini_training_id, training_id, title, video_duration
        FROM mini_trainings WHERE mini_training_id = ?
        """,
        (mini_training_id,),
    )
    return _as_dict(rows[0]) if rows else None


def list_mini_training_ids(training_id: str) -> list[str]:
    rows = _query(
        "SELECT mini_training_id FROM mini_trainings WHERE training_id = ? ORDER BY position",
        (training_id,),
    )
    return [row["mini_training_id"] for row in rows]


# -------------- quizzes --------------
def upsert_quiz(
    quiz_id: str,
    activity_type: str,
    activity_id: str,
    questions: Any,
    *,
    passing_score: int = 70,
    questions_to_show: Optional[int] = None,
    allow_retake: bool = True,
    max_attempts: Optional[int] = None,
    title: Optional[str] = None,
) -> None:
    """Store a quiz. ``questions`` may be a list or an already-encoded JSON string."""
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"activity_type must be one of {ACTIVITY_TYPES}")
    payload = questions if isinstance(questions, str) else json_dumps(questions)
    _exec(
        """
        INSERT INTO quizzes(
          quiz_id, activity_type, activity_id, title, questions, passing_score,
          questions_to_show, allow_retake, max_attempts, updated_at
        ) VALUES (?,?,?,?,?,?,?,?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(quiz_id) DO UPDATE SET
          activity_type=excluded.activity_type,
          activity_id=excluded.activity_id,
          title=excluded.title,
          questions=excluded.questions,
          passing_score=excluded.passing_score,
          questions_to_show=excluded.questions_to_show,
          allow_retake=excluded.allow_retake,
          max_attempts=excluded.max_attempts,
          updated_at=CURRENT_TIMESTAMP
        """,
        (
            quiz_id,
            activity_type,
            activity_id,
            title,
            payload,
            int(passing_score),
            None if questions_to_show is None else int(questions_to_show),
            int(allow_retake),
            None if max_attempts is None else int(max_attempts),
        ),
    )


_QUIZ_COLUMNS = """
    quiz_id, activity_type, activity_id, title, questions, passing_score,
    questions_to_show, allow_retake, max_attempts
"""


def get_quiz(quiz_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_QUIZ_COLUMNS} FROM quizzes WHERE quiz_id = ?", (quiz_id,))
    return _as_dict(rows[0], "allow_retake") if rows else None


def get_quiz_for_activity(activity_type: str, activity_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_QUIZ_COLUMNS} FROM quizzes WHERE activity_type = ? AND activity_id = ?",
        (activity_type, activity_id),
    )
    return _as_dict(rows[0], "allow_retake") if rows else None


def activities_with_quiz(activity_type: str, activity_ids: Sequence[str]) -> set[str]:
    if not activity_ids:
        return set()
    rows = _query(
        f"""
        SELECT activity_id FROM quizzes
        WHERE activity_type = ? AND activity_id IN ({_placeholders(activity_ids)})
        """,
        (activity_type, *activity_ids),
    )
    return {row["activity_id"] for row in rows}


# -------------- attempts --------------
def count_quiz_attempts(user_id: str, quiz_id: str) -> int:
    rows = _query(
        "SELECT COUNT(*) AS n FROM quiz_attempts WHERE user_id = ? AND quiz_id = ?",
        (user_id, quiz_id),
    )
    return int(rows[0]["n"])


def create_quiz_attempt(
    user_id: str,
    quiz_id: str,
    attempt_number: int,
    *,
    score: int,
    passed: bool,
    answers: Dict[str, Any],
    time_spent: Optional[int],
    started_at: Optional[str],
    completed_at: str,
) -> Dict[str, Any]:
    """Insert an immutable attempt row.

    ``sqlite3.IntegrityError`` is raised when another submission already used
    ``attempt_number`` for this user and quiz.
    """
    cur = _exec(
        """
        INSERT INTO quiz_attempts(
          user_id, quiz_id, attempt_number, score, passed, answers,
          time_spent, started_at, completed_at
        ) VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (
            user_id,
            quiz_id,
            int(attempt_number),
            int(score),
            int(bool(passed)),
            json_dumps(answers),
            time_spent,
            started_at,
            completed_at,
        ),
    )
    return {
        "attempt_id": int(cur.lastrowid),
        "user_id": user_id,
        "quiz_id": quiz_id,
        "attempt_number": int(attempt_number),
        "score": int(score),
        "passed": bool(passed),
        "time_spent": time_spent,
        "started_at": started_at,
        "completed_at": completed_at,
    }


def list_quiz_attempts(user_id: str, quiz_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, attempt_number, score, passed, answers, time_spent, started_at, completed_at
        FROM quiz_attempts WHERE user_id = ? AND quiz_id = ?
        ORDER BY attempt_number
        """,
        (user_id, quiz_id),
    )
    attempts = []
    for row in rows:
        data = _as_dict(row, "passed")
        data["answers"] = json.loads(data["answers"])
        attempts.append(data)
    return attempts


def get_highest_score(user_id: str, quiz_id: str) -> Optional[int]:
    rows = _query(
        "SELECT MAX(score) AS best FROM quiz_attempts WHERE user_id = ? AND quiz_id = ?",
        (user_id, quiz_id),
    )
    best = rows[0]["best"] if rows else None
    return None if best is None else int(best)


# -------------- mini-training progress --------------
_MINI_PROGRESS_BOOLS = ("quiz_completed", "is_completed")


def get_mini_training_progress(user_id: str, mini_training_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT user_id, mini_training_id, video_progress, video_watched_seconds,
               quiz_completed, quiz_score, is_completed, completed_at
        FROM mini_training_progress WHERE user_id = ? AND mini_training_id = ?
        """,
        (user_id, mini_training_id),
    )
    return _as_dict(rows[0], *_MINI_PROGRESS_BOOLS) if rows else None


def upsert_mini_training_quiz_result(
    user_id: str,
    mini_training_id: str,
    *,
    passed: bool,
    score: int,
    completed_at: str,
) -> Dict[str, Any]:
    """Record a quiz outcome; completion flags only ever move from 0 to 1."""
    flag = int(bool(passed))
    _exec(
        """
        INSERT INTO mini_training_progress(
          user_id, mini_training_id, quiz_completed, quiz_score, is_completed, completed_at
        ) VALUES (?,?,?,?,?,?)
        ON CONFLICT(user_id, mini_training_id) DO UPDATE SET
          quiz_completed=MAX(mini_training_progress.quiz_completed, excluded.quiz_completed),
          quiz_score=excluded.quiz_score,
          is_completed=MAX(mini_training_progress.is_completed, excluded.is_completed),
          completed_at=COALESCE(mini_training_progress.completed_at, excluded.completed_at),
          updated_at=CURRENT_TIMESTAMP
        """,
        (user_id, mini_training_id, flag, int(score), flag, completed_at if passed else None),
    )
    return get_mini_training_progress(user_id, mini_training_id)


def upsert_mini_training_video(
    user_id: str, mini_training_id: str, *, video_progress: float, watched_seconds: float
) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO mini_training_progress(
          user_id, mini_training_id, video_progress, video_watched_seconds
        ) VALUES (?,?,?,?)
        ON CONFLICT(user_id, mini_training_id) DO UPDATE SET
          video_progress=MAX(mini_training_progress.video_progress, excluded.video_progress),
          video_watched_seconds=MAX(
            mini_training_progress.video_watched_seconds, excluded.video_watched_seconds
          ),
          updated_at=CURRENT_TIMESTAMP
        """,
        (user_id, mini_training_id, float(video_progress), float(watched_seconds)),
    )
    return get_mini_training_progress(user_id, mini_training_id)


def count_completed_mini_trainings(user_id: str, mini_training_ids: Sequence[str]) -> int:
    if not mini_training_ids:
        return 0
    rows = _query(
        f"""
        SELECT COUNT(*) AS n FROM mini_training_progress
        WHERE user_id = ? AND is_completed = 1
          AND mini_training_id IN ({_placeholders(mini_training_ids)})
        """,
        (user_id, *mini_training_ids),
    )
    return int(rows[0]["n"])


# -------------- training progress --------------
_TRAINING_PROGRESS_BOOLS = ("quiz_completed", "quiz_postponed", "is_completed")
_TRAINING_PROGRESS_COLUMNS = """
    user_id, training_id, video_progress, video_watched_seconds, quiz_completed,
    quiz_score, quiz_postponed, mini_trainings_completed, total_mini_trainings,
    progress, is_completed, completed_at
"""


def get_training_progress(user_id: str, training_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_TRAINING_PROGRESS_COLUMNS} FROM training_progress WHERE user_id = ? AND training_id = ?",
        (user_id, training_id),
    )
    return _as_dict(rows[0], *_TRAINING_PROGRESS_BOOLS) if rows else None


def set_quiz_postponed(user_id: str, training_id: str, postponed: bool) -> Dict[str, Any]:
    """Save or clear the "take it later" choice; the next quiz submission clears it."""
    _exec(
        """
        INSERT INTO training_progress(user_id, training_id, quiz_postponed) VALUES (?,?,?)
        ON CONFLICT(user_id, training_id) DO UPDATE SET
          quiz_postponed=excluded.quiz_postponed,
          updated_at=CURRENT_TIMESTAMP
        """,
        (user_id, training_id, int(bool(postponed))),
    )
    return get_training_progress(user_id, training_id)


def list_training_progress(training_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_TRAINING_PROGRESS_COLUMNS} FROM training_progress WHERE training_id = ? ORDER BY user_id",
        (training_id,),
    )
    return [_as_dict(row, *_TRAINING_PROGRESS_BOOLS) for row in rows]


def upsert_training_quiz_result(
    user_id: str, training_id: str, *, passed: bool, score: int
) -> Dict[str, Any]:
    """Record a training-quiz outcome and clear any postponement."""
    _exec(
        """
        INSERT INTO training_progress(user_id, training_id, quiz_completed, quiz_score)
        VALUES (?,?,?,?)
        ON CONFLICT(user_id, training_id) DO UPDATE SET
          quiz_completed=MAX(training_progress.quiz_completed, excluded.quiz_completed),
          quiz_score=excluded.quiz_score,
          quiz_postponed=0,
          updated_at=CURRENT_TIMESTAMP
        """,
        (user_id, training_id, int(bool(passed)), int(score)),
    )
    return get_training_progress(user_id, training_id)


def upsert_training_video(
    user_id: str, training_id: str, *, video_progress: float, watched_seconds: float
) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO training_progress(user_id, training_id, video_progress, video_watched_seconds)
        VALUES (?,?,?,?)
        ON CONFLICT(user_id, training_id) DO UPDATE SET
          video_progress=MAX(training_progress.video_progress, excluded.video_progress),
          video_watched_seconds=MAX(
            training_progress.video_watched_seconds, excluded.video_watched_seconds
          ),
          updated_at=CURRENT_TIMESTAMP
        """,
        (user_id, training_id, float(video_progress), float(watched_seconds)),
    )
    return get_training_progress(user_id, training_id)


def save_training_progress(
    user_id: str,
    training_id: str,
    *,
    progress: float,
    is_completed: bool,
    mini_trainings_completed: int,
    total_mini_trainings: int,
    completed_at: Optional[str] = None,
) -> Dict[str, Any]:
    """Persist a recomputed aggregate; completion is sticky and ``completed_at`` set once."""
    _exec(
        """
        INSERT INTO training_progress(
          user_id, training_id, progress, is_completed, completed_at,
          mini_trainings_completed, total_mini_trainings
        ) VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(user_id, training_id) DO UPDATE SET
          progress=excluded.progress,
          is_completed=MAX(training_progress.is_completed, excluded.is_completed),
          completed_at=COALESCE(training_progress.completed_at, excluded.completed_at),
          mini_trainings_completed=excluded.mini_trainings_completed,
          total_mini_trainings=excluded.total_mini_trainings,
          updated_at=CURRENT_TIMESTAMP
        """,
        (
            user_id,
            training_id,
            float(progress),
            int(bool(is_completed)),
            (completed_at or _now()) if is_completed else None,
            int(mini_trainings_completed),
            int(total_mini_trainings),
        ),
    )
    return get_training_progress(user_id, training_id)


def count_completed_trainings(user_id: str, training_ids: Sequence[str]) -> int:
    if not training_ids:
        return 0
    rows = _query(
        f"""
        SELECT COUNT(*) AS n FROM training_progress
        WHERE user_id = ? AND is_completed = 1
          AND training_id IN ({_placeholders(training_ids)})
        """,
        (user_id, *training_ids),
    )
    return int(rows[0]["n"])


# -------------- course progress --------------
def get_course_progress(user_id: str, course_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT user_id, course_id, progress, is_completed, completed_at
        FROM course_progress WHERE user_id = ? AND course_id = ?
        """,
        (user_id, course_id),
    )
    return _as_dict(rows[0], "is_completed") if rows else None


def save_course_progress(
    user_id: str,
    course_id: str,
    *,
    progress: float,
    is_completed: bool,
    completed_at: Optional[str] = None,
) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO course_progress(user_id, course_id, progress, is_completed, completed_at)
        VALUES (?,?,?,?,?)
        ON CONFLICT(user_id, course_id) DO UPDATE SET
          progress=excluded.progress,
          is_completed=MAX(course_progress.is_completed, excluded.is_completed),
          completed_at=COALESCE(course_progress.completed_at, excluded.completed_at),
          updated_at=CURRENT_TIMESTAMP
        """,
        (
            user_id,
            course_id,
            float(progress),
            int(bool(is_completed)),
            (completed_at or _now()) if is_completed else None,
        ),
    )
    return get_course_progress(user_id, course_id)
