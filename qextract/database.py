"""
SQLite Database Layer
=====================
Persistent storage for extracted tests, their questions, and operator
settings (calibration). Image bytes live on the filesystem; rows only
hold paths relative to the storage root.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default database path: project_root/database.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "database.sqlite")


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("QEXTRACT_DB_PATH", _DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times — uses IF NOT EXISTS.
    """
    db_path = db_path or get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Initializing database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS tests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                section TEXT DEFAULT 'quantitative',
                source_text TEXT DEFAULT '',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS questions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                test_id INTEGER NOT NULL,
                question_text TEXT DEFAULT '',
                question_image TEXT DEFAULT '',
                verification_image TEXT DEFAULT '',
                options_json TEXT DEFAULT '[]',
                correct_answer TEXT DEFAULT '?',
                page_number INTEGER DEFAULT 0,
                sort_order INTEGER DEFAULT 0,
                is_edited INTEGER DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(test_id) REFERENCES tests(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_questions_test_id
                ON questions(test_id);
            CREATE INDEX IF NOT EXISTS idx_questions_test_order
                ON questions(test_id, sort_order);
        """)


# ─── Test CRUD ────────────────────────────────────────────────────────────────


def insert_test(
    name: str,
    source_text: str = "",
    section: str = "quantitative",
    db_path: str = None,
) -> int:
    """Insert a new test record. Returns the test_id."""
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            "INSERT INTO tests (name, section, source_text) VALUES (?, ?, ?)",
            (name, section, source_text),
        )
        test_id = cursor.lastrowid
        logger.info(f"Inserted test id={test_id} name={name!r}")
        return test_id


def get_test(test_id: int, db_path: str = None) -> Optional[dict]:
    """Fetch a single test row by ID."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM tests WHERE id = ?", (test_id,)
        ).fetchone()
        return dict(row) if row else None


def list_tests(db_path: str = None) -> list[dict]:
    """List all tests with their question counts."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT t.*,
                      COUNT(q.id) AS total_questions,
                      SUM(CASE WHEN q.correct_answer = '?' THEN 1 ELSE 0 END)
                          AS unknown_answers
               FROM tests t
               LEFT JOIN questions q ON q.test_id = t.id
               GROUP BY t.id
               ORDER BY t.created_at DESC, t.id DESC"""
        ).fetchall()
        return [
            {**dict(r), "unknown_answers": r["unknown_answers"] or 0}
            for r in rows
        ]


def delete_test(test_id: int, db_path: str = None) -> bool:
    """Delete a test and its questions. Returns True if row existed."""
    with get_connection(db_path) as conn:
        cursor = conn.execute("DELETE FROM tests WHERE id = ?", (test_id,))
        return cursor.rowcount > 0


# ─── Question CRUD ────────────────────────────────────────────────────────────


def bulk_insert_questions(
    test_id: int, questions: list[dict], db_path: str = None
) -> int:
    """
    Insert question rows for a test in one transaction.

    Each dict carries: question_text, question_image, verification_image,
    options (list), correct_answer, page_number, order, is_edited.
    """
    with get_connection(db_path) as conn:
        conn.executemany(
            """INSERT INTO questions
               (test_id, question_text, question_image, verification_image,
                options_json, correct_answer, page_number, sort_order, is_edited)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    test_id,
                    q.get("question_text", ""),
                    q.get("question_image", ""),
                    q.get("verification_image", ""),
                    json.dumps(list(q.get("options", [])), ensure_ascii=False),
                    q.get("correct_answer", "?"),
                    q.get("page_number", 0),
                    q.get("order", 0),
                    int(bool(q.get("is_edited", False))),
                )
                for q in questions
            ],
        )
    logger.info(f"Inserted {len(questions)} questions for test_id={test_id}")
    return len(questions)


def get_questions_for_test(test_id: int, db_path: str = None) -> list[dict]:
    """Fetch all questions of a test in extraction order."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT * FROM questions WHERE test_id = ?
               ORDER BY sort_order, id""",
            (test_id,),
        ).fetchall()
        return [_question_row_to_dict(r) for r in rows]


def get_question(question_id: int, db_path: str = None) -> Optional[dict]:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM questions WHERE id = ?", (question_id,)
        ).fetchone()
        return _question_row_to_dict(row) if row else None


def update_question_answer(
    question_id: int, correct_answer: str, db_path: str = None
) -> bool:
    """Set a reviewed answer and flag the question as manually edited."""
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """UPDATE questions SET correct_answer = ?, is_edited = 1
               WHERE id = ?""",
            (correct_answer, question_id),
        )
        return cursor.rowcount > 0


def _question_row_to_dict(row: sqlite3.Row) -> dict:
    data = dict(row)
    data["options"] = json.loads(data.pop("options_json") or "[]")
    data["is_edited"] = bool(data["is_edited"])
    return data


# ─── Settings ─────────────────────────────────────────────────────────────────


def get_setting(key: str, db_path: str = None) -> Optional[str]:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT value FROM settings WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None


def set_setting(key: str, value: str, db_path: str = None):
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT INTO settings (key, value, updated_at)
               VALUES (?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = excluded.updated_at""",
            (key, value),
        )


def delete_setting(key: str, db_path: str = None) -> bool:
    with get_connection(db_path) as conn:
        cursor = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        return cursor.rowcount > 0
