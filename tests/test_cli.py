"""
Test Suite for the CLI
======================
Click commands run through CliRunner against real PDFs whose answers sit
in the text layer, so no OCR binary is needed.
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from qextract.cli import cli

from tests.fakes import build_pdf

QUESTION = "10,10,100,50"
ANSWER = "10,200,100,40"


@pytest.fixture
def run(tmp_path):
    runner = CliRunner()
    base = [
        "--db", str(tmp_path / "db.sqlite"),
        "--storage-dir", str(tmp_path / "storage"),
        "--log-level", "ERROR",
    ]

    def invoke(*args):
        return runner.invoke(cli, [*base, *args])

    return invoke


@pytest.fixture
def exam_pdf(tmp_path):
    path = tmp_path / "Test 3 - Quantitative.pdf"
    path.write_bytes(build_pdf([None, "B", "c"]))
    return path


class TestCalibrationCommands:
    """Test calibrate / show-calibration / reference."""

    def test_calibrate_and_show(self, run):
        result = run("calibrate", "--question", QUESTION, "--answer", ANSWER)
        assert result.exit_code == 0
        assert "Calibration saved" in result.output

        shown = run("show-calibration")
        assert shown.exit_code == 0
        assert "Answer" in shown.output
        assert "200" in shown.output

    def test_show_without_calibration(self, run):
        result = run("show-calibration")
        assert result.exit_code == 0
        assert "No calibration saved" in result.output

    def test_calibrate_rejects_bad_box(self, run):
        result = run("calibrate", "--question", "1,2,3", "--answer", ANSWER)
        assert result.exit_code == 2

    def test_reference_page(self, run, exam_pdf, tmp_path):
        output = tmp_path / "ref.png"

        result = run("reference", str(exam_pdf), "-o", str(output))

        assert result.exit_code == 0
        assert output.read_bytes().startswith(b"\x89PNG")

    def test_reference_preview_requires_calibration(self, run, exam_pdf, tmp_path):
        result = run("reference", str(exam_pdf), "-o", str(tmp_path / "p.png"), "--preview")
        assert result.exit_code == 1
        assert "No calibration saved" in result.output


class TestExtractCommand:
    """Test extract and the review commands."""

    def test_requires_calibration(self, run, exam_pdf):
        result = run("extract", str(exam_pdf))
        assert result.exit_code == 1
        assert "calibrate" in result.output

    def test_extract_and_review(self, run, exam_pdf):
        run("calibrate", "--question", QUESTION, "--answer", ANSWER)

        result = run("extract", str(exam_pdf))
        assert result.exit_code == 0, result.output
        assert "Extraction Summary" in result.output
        assert "completed" in result.output

        listed = run("tests")
        assert "Test 3" in listed.output

        shown = run("show", "1")
        assert shown.exit_code == 0
        assert "ب" in shown.output and "ج" in shown.output

    def test_json_output(self, run, exam_pdf):
        run("calibrate", "--question", QUESTION, "--answer", ANSWER)

        result = run("extract", str(exam_pdf), "--json-output")

        assert result.exit_code == 0
        [job] = json.loads(result.stdout)
        assert job["status"] == "completed"
        assert job["total_questions"] == 2
        assert job["file_name"] == "Test 3 - Quantitative.pdf"

    def test_corrupt_file_exits_nonzero(self, run, tmp_path):
        run("calibrate", "--question", QUESTION, "--answer", ANSWER)
        broken = tmp_path / "broken.pdf"
        broken.write_bytes(b"not a pdf")

        result = run("extract", str(broken), "--json-output")

        assert result.exit_code == 1
        assert json.loads(result.stdout)[0]["status"] == "error"

    def test_set_answer_and_delete(self, run, exam_pdf):
        run("calibrate", "--question", QUESTION, "--answer", ANSWER)
        run("extract", str(exam_pdf), "--json-output")

        assert run("set-answer", "1", "د").exit_code == 0
        assert run("set-answer", "1", "X").exit_code == 1
        assert run("set-answer", "999", "أ").exit_code == 1

        deleted = run("delete", "1", "--yes")
        assert deleted.exit_code == 0
        assert "Deleted 1 test(s)" in deleted.output
        assert "No tests extracted yet" in run("tests").output

    def test_version(self, run):
        result = run("--version")
        assert "qextract" in result.output


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
