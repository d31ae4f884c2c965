"""
CRUD Service Layer
==================
High-level operations that coordinate SQLite + filesystem.
Every mutation updates both the database AND the stored images.
This is the layer the CLI and the HTTP service call.

``SQLiteResultSink`` is the default persistence collaborator handed to
the FileProcessor: one ``add_test`` call per file, then one
``add_questions_to_test`` call with every extracted question.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import database as db
from .models import ExtractedQuestion
from .storage import Storage
from .vocabulary import CANONICAL_LETTERS, UNKNOWN_ANSWER

logger = logging.getLogger(__name__)


class SQLiteResultSink:
    """Stores extracted tests in SQLite and their images on disk."""

    def __init__(self, db_path: Optional[str] = None, storage: Optional[Storage] = None):
        self.db_path = db_path
        self.storage = storage or Storage()
        db.init_db(db_path)
        self.storage.init()

    # ─── ResultSink Contract ──────────────────────────────────────────────

    def add_test(self, name: str, source_text: str) -> str:
        test_id = db.insert_test(name, source_text=source_text, db_path=self.db_path)
        return str(test_id)

    def add_questions_to_test(
        self, test_id: str, questions: list[ExtractedQuestion]
    ) -> None:
        test = db.get_test(int(test_id), db_path=self.db_path)
        if not test:
            raise LookupError(f"Test {test_id} does not exist")

        image_dir = self.storage.test_image_dir(test["name"], test_id)
        try:
            rows = []
            for q in questions:
                stem = f"{q.order:03d}_p{q.page_number}"
                rows.append({
                    "question_text": q.question_text,
                    "question_image": self.storage.save_image(
                        q.question_image, image_dir, f"q_{stem}.webp"
                    ),
                    "verification_image": self.storage.save_image(
                        q.verification_image, image_dir, f"a_{stem}.webp"
                    ),
                    "options": list(q.options),
                    "correct_answer": q.correct_answer,
                    "page_number": q.page_number,
                    "order": q.order,
                    "is_edited": q.is_edited,
                })
            db.bulk_insert_questions(int(test_id), rows, db_path=self.db_path)
        except Exception:
            logger.error(f"Storing questions for test {test_id} failed, discarding the test")
            self._remove(int(test_id), test["name"])
            raise

    # ─── Review Operations ────────────────────────────────────────────────

    def list_tests(self) -> list[dict]:
        return db.list_tests(db_path=self.db_path)

    def get_test(self, test_id: int) -> Optional[dict]:
        """A test row with its questions in extraction order."""
        test = db.get_test(test_id, db_path=self.db_path)
        if not test:
            return None
        test["questions"] = db.get_questions_for_test(test_id, db_path=self.db_path)
        return test

    def update_question_answer(self, question_id: int, answer: str) -> bool:
        """
        Record a reviewer's answer; the question is flagged as edited.

        Raises:
            ValueError: If ``answer`` is not an option letter or "?".
        """
        question = db.get_question(question_id, db_path=self.db_path)
        if not question:
            return False
        allowed = set(question["options"] or CANONICAL_LETTERS) | {UNKNOWN_ANSWER}
        if answer not in allowed:
            raise ValueError(
                f"Answer must be one of {sorted(allowed)}, got {answer!r}"
            )
        updated = db.update_question_answer(question_id, answer, db_path=self.db_path)
        logger.info(f"Question {question_id}: answer set to {answer} (edited)")
        return updated

    def delete_tests(self, test_ids: list[int]) -> int:
        """Delete tests, their questions and their image directories."""
        deleted = 0
        for test_id in test_ids:
            test = db.get_test(test_id, db_path=self.db_path)
            if not test:
                logger.warning(f"Delete skipped, test {test_id} not found")
                continue
            if self._remove(test_id, test["name"]):
                deleted += 1
        logger.info(f"Deleted {deleted} test(s)")
        return deleted

    def _remove(self, test_id: int, name: str) -> bool:
        image_dir = self.storage.test_image_dir(name, str(test_id), create=False)
        if image_dir.is_dir():
            self.storage.delete_dir(
                image_dir.relative_to(self.storage.root).as_posix()
            )
        return db.delete_test(test_id, db_path=self.db_path)
