import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.delenv("LRS_URL", raising=False)

    # Fresh pool per test so no connection outlives its database file
    old_pool = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = old_pool


def make_questions(count, *, prefix="q", correct=0, options=("A", "B", "C", "D")):
    """Authoring-style questions with bare-string options and an index answer."""
    return [
        {
            "id": f"{prefix}{i}",
            "type": "multiple_choice",
            "question": f"Question {i}?",
            "options": [f"{label}{i}" for label in options],
            "correctAnswer": correct,
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture
def make_quiz_questions():
    return make_questions
