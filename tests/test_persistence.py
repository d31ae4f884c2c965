"""
Test Suite for Persistence
==========================
SQLite layer, filesystem storage, the SQLite result sink and the
calibration store.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from qextract import database as db
from qextract.calibration import CALIBRATION_KEY, CalibrationStore
from qextract.crud import SQLiteResultSink
from qextract.detector import AnswerDetector
from qextract.models import CalibrationConfig, ExtractedQuestion, Rectangle
from qextract.pipeline import FileProcessor, PageProcessor
from qextract.storage import Storage

from tests.fakes import (
    CALIBRATION,
    FakePage,
    FakeRasterizer,
    FakeRecognizer,
    answer_page,
    source,
)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "test.sqlite")
    db.init_db(path)
    return path


@pytest.fixture
def storage(tmp_path):
    store = Storage(tmp_path / "uploads")
    store.init()
    return store


@pytest.fixture
def sink(db_path, storage):
    return SQLiteResultSink(db_path, storage)


def question(order: int, answer: str = "ب", image: bytes = b"RIFFimg") -> ExtractedQuestion:
    return ExtractedQuestion(
        question_text=f"سؤال مستخرج من صفحة {order + 2}",
        question_image=image,
        verification_image=b"RIFFans",
        correct_answer=answer,
        page_number=order + 2,
        order=order,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestDatabase:
    """Test the SQLite layer."""

    def test_init_is_idempotent(self, db_path):
        db.init_db(db_path)
        db.init_db(db_path)
        assert db.list_tests(db_path=db_path) == []

    def test_db_path_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("QEXTRACT_DB_PATH", str(tmp_path / "env.sqlite"))
        assert db.get_db_path() == str(tmp_path / "env.sqlite")

    def test_insert_and_list_with_counts(self, db_path):
        test_id = db.insert_test("Test 1", source_text="Extracted source file: Test 1.pdf", db_path=db_path)
        db.bulk_insert_questions(test_id, [
            {"correct_answer": "أ", "order": 0, "options": ["أ", "ب", "ج", "د"]},
            {"correct_answer": "?", "order": 1},
        ], db_path=db_path)

        [row] = db.list_tests(db_path=db_path)

        assert row["name"] == "Test 1"
        assert row["section"] == "quantitative"
        assert row["total_questions"] == 2
        assert row["unknown_answers"] == 1

    def test_questions_in_extraction_order(self, db_path):
        test_id = db.insert_test("T", db_path=db_path)
        db.bulk_insert_questions(test_id, [
            {"order": 2, "page_number": 4},
            {"order": 0, "page_number": 2},
            {"order": 1, "page_number": 3},
        ], db_path=db_path)

        rows = db.get_questions_for_test(test_id, db_path=db_path)

        assert [r["page_number"] for r in rows] == [2, 3, 4]

    def test_options_round_trip_as_list(self, db_path):
        test_id = db.insert_test("T", db_path=db_path)
        db.bulk_insert_questions(test_id, [{"options": ["أ", "ب", "ج", "د"]}], db_path=db_path)

        [row] = db.get_questions_for_test(test_id, db_path=db_path)

        assert row["options"] == ["أ", "ب", "ج", "د"]
        assert row["is_edited"] is False

    def test_update_answer_marks_edited(self, db_path):
        test_id = db.insert_test("T", db_path=db_path)
        db.bulk_insert_questions(test_id, [{"correct_answer": "?"}], db_path=db_path)
        [row] = db.get_questions_for_test(test_id, db_path=db_path)

        assert db.update_question_answer(row["id"], "ج", db_path=db_path)

        updated = db.get_question(row["id"], db_path=db_path)
        assert updated["correct_answer"] == "ج"
        assert updated["is_edited"] is True

    def test_update_missing_question(self, db_path):
        assert not db.update_question_answer(999, "أ", db_path=db_path)

    def test_delete_cascades_to_questions(self, db_path):
        test_id = db.insert_test("T", db_path=db_path)
        db.bulk_insert_questions(test_id, [{}, {}], db_path=db_path)

        assert db.delete_test(test_id, db_path=db_path)
        assert db.get_questions_for_test(test_id, db_path=db_path) == []
        assert not db.delete_test(test_id, db_path=db_path)

    def test_settings_upsert_and_delete(self, db_path):
        assert db.get_setting("k", db_path=db_path) is None
        db.set_setting("k", "1", db_path=db_path)
        db.set_setting("k", "2", db_path=db_path)
        assert db.get_setting("k", db_path=db_path) == "2"
        assert db.delete_setting("k", db_path=db_path)
        assert db.get_setting("k", db_path=db_path) is None


# ═══════════════════════════════════════════════════════════════════════════════
# STORAGE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestStorage:
    """Test filesystem storage."""

    def test_init_creates_layout(self, storage):
        assert storage.images_dir.is_dir()

    def test_test_image_dir_is_sanitized(self, storage):
        path = storage.test_image_dir("Test 1/../x", "7")
        assert path.parent == storage.images_dir
        assert path.name.startswith("7_")
        assert "/" not in path.name

    def test_save_image_returns_relative_path(self, storage):
        image_dir = storage.test_image_dir("T", "1")
        rel = storage.save_image(b"data", image_dir, "q_000_p2.webp")

        assert rel == "images/1_T/q_000_p2.webp"
        assert storage.resolve(rel).read_bytes() == b"data"

    def test_empty_image_not_written(self, storage):
        image_dir = storage.test_image_dir("T", "1")
        assert storage.save_image(b"", image_dir, "a.webp") == ""
        assert list(image_dir.iterdir()) == []

    def test_resolve_rejects_escape(self, storage, tmp_path):
        (tmp_path / "secret.txt").write_text("x")
        assert storage.resolve("../secret.txt") is None
        assert storage.resolve("") is None

    def test_delete_dir_limited_to_images(self, storage):
        storage.test_image_dir("T", "1")
        (storage.root / "other").mkdir()
        assert not storage.delete_dir("other")
        assert storage.delete_dir("images/1_T")
        assert not (storage.images_dir / "1_T").exists()


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT SINK TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestSQLiteResultSink:
    """Test the default persistence collaborator."""

    def test_add_test_returns_string_id(self, sink):
        test_id = sink.add_test("Test 1", "Extracted source file: Test 1.pdf")
        assert isinstance(test_id, str)
        assert sink.get_test(int(test_id))["source_text"] == "Extracted source file: Test 1.pdf"

    def test_questions_stored_with_images(self, sink, storage):
        test_id = sink.add_test("Test 1", "")
        sink.add_questions_to_test(test_id, [question(0, "أ"), question(1, "?")])

        test = sink.get_test(int(test_id))

        assert [q["correct_answer"] for q in test["questions"]] == ["أ", "?"]
        first = test["questions"][0]
        assert first["question_image"] == f"images/{test_id}_Test_1/q_000_p2.webp"
        assert first["verification_image"] == f"images/{test_id}_Test_1/a_000_p2.webp"
        assert storage.resolve(first["question_image"]).read_bytes() == b"RIFFimg"
        assert first["options"] == ["أ", "ب", "ج", "د"]

    def test_empty_image_stored_as_empty_path(self, sink):
        test_id = sink.add_test("T", "")
        sink.add_questions_to_test(test_id, [question(0, image=b"")])

        [q] = sink.get_test(int(test_id))["questions"]

        assert q["question_image"] == ""

    def test_questions_for_missing_test(self, sink):
        with pytest.raises(LookupError):
            sink.add_questions_to_test("404", [question(0)])

    def test_update_answer(self, sink):
        test_id = sink.add_test("T", "")
        sink.add_questions_to_test(test_id, [question(0, "?")])
        [q] = sink.get_test(int(test_id))["questions"]

        assert sink.update_question_answer(q["id"], "د")

        [q] = sink.get_test(int(test_id))["questions"]
        assert q["correct_answer"] == "د"
        assert q["is_edited"] is True

    def test_update_answer_rejects_non_option(self, sink):
        test_id = sink.add_test("T", "")
        sink.add_questions_to_test(test_id, [question(0)])
        [q] = sink.get_test(int(test_id))["questions"]

        with pytest.raises(ValueError):
            sink.update_question_answer(q["id"], "ه")

    def test_update_missing_question(self, sink):
        assert sink.update_question_answer(12345, "أ") is False

    def test_list_tests(self, sink):
        first = sink.add_test("A", "")
        sink.add_questions_to_test(first, [question(0, "?")])
        sink.add_test("B", "")

        tests = {t["name"]: t for t in sink.list_tests()}

        assert tests["A"]["total_questions"] == 1
        assert tests["A"]["unknown_answers"] == 1
        assert tests["B"]["total_questions"] == 0

    def test_delete_tests_removes_images(self, sink, storage):
        test_id = sink.add_test("T", "")
        sink.add_questions_to_test(test_id, [question(0)])
        image_dir = storage.test_image_dir("T", test_id, create=False)
        assert image_dir.is_dir()

        assert sink.delete_tests([int(test_id), 999]) == 1

        assert not image_dir.exists()
        assert sink.get_test(int(test_id)) is None

    def test_failed_image_write_discards_test(self, db_path, tmp_path):
        class FullDisk(Storage):
            def save_image(self, data, image_dir, filename):
                if filename.startswith("a_"):
                    raise OSError("No space left on device")
                return super().save_image(data, image_dir, filename)

        storage = FullDisk(tmp_path / "full")
        sink = SQLiteResultSink(db_path, storage)
        test_id = sink.add_test("T", "")

        with pytest.raises(OSError):
            sink.add_questions_to_test(test_id, [question(0)])

        assert sink.list_tests() == []
        assert not storage.test_image_dir("T", test_id, create=False).exists()

    def test_failed_persistence_fails_the_file(self, db_path, tmp_path):
        class FullDisk(Storage):
            def save_image(self, data, image_dir, filename):
                raise OSError("No space left on device")

        sink = SQLiteResultSink(db_path, FullDisk(tmp_path / "full"))
        rasterizer = FakeRasterizer({b"pdf": [FakePage(), answer_page("ب")]})
        processor = FileProcessor(
            rasterizer, PageProcessor(rasterizer, AnswerDetector(FakeRecognizer())), sink=sink
        )

        with pytest.raises(OSError):
            asyncio.run(processor.process(source("exam.pdf", b"pdf"), CALIBRATION))

        assert db.list_tests(db_path=db_path) == []
        # a retry stores exactly one test
        processor.sink = SQLiteResultSink(db_path, Storage(tmp_path / "ok"))
        asyncio.run(processor.process(source("exam.pdf", b"pdf"), CALIBRATION))
        assert len(db.list_tests(db_path=db_path)) == 1


# ═══════════════════════════════════════════════════════════════════════════════
# CALIBRATION STORE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCalibrationStore:
    """Test calibration persistence."""

    def test_not_configured(self, db_path):
        assert CalibrationStore(db_path).load() is None

    def test_save_and_load(self, db_path):
        store = CalibrationStore(db_path)
        store.save(CALIBRATION)
        assert store.load() == CALIBRATION

    def test_overwrite(self, db_path):
        store = CalibrationStore(db_path)
        store.save(CALIBRATION)
        updated = CalibrationConfig(
            question_box=Rectangle(x=0, y=0, width=10, height=10),
            answer_box=CALIBRATION.answer_box,
        )
        store.save(updated)
        assert store.load() == updated

    def test_stored_as_camel_case_json(self, db_path):
        CalibrationStore(db_path).save(CALIBRATION)

        value = json.loads(db.get_setting(CALIBRATION_KEY, db_path=db_path))

        assert value["answerBox"] == {"x": 10.0, "y": 200.0, "width": 100.0, "height": 40.0}

    def test_clear(self, db_path):
        store = CalibrationStore(db_path)
        store.save(CALIBRATION)
        assert store.clear()
        assert store.load() is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
