"""
HTTP Microservice
=================
Flask-based HTTP API around the extraction queue.

The queue runs on a BackgroundQueue loop thread; request handlers only
submit work and read snapshots.

Endpoints:
    GET    /api/health                  → Health check
    GET    /api/info                    → Version and pipeline settings
    GET    /api/calibration             → Saved question/answer boxes
    PUT    /api/calibration             → Save question/answer boxes
    DELETE /api/calibration             → Forget the calibration
    POST   /api/jobs                    → Queue uploaded PDFs (multipart "files")
    GET    /api/jobs                    → Job list with progress
    POST   /api/jobs/cancel             → Remove pending jobs
    POST   /api/jobs/clear-completed    → Hide completed jobs
    GET    /api/tests                   → Extracted tests
    GET    /api/tests/<id>              → One test with its questions
    DELETE /api/tests                   → Delete tests {"ids": [...]}
    PUT    /api/questions/<id>/answer   → Reviewer answer {"answer": "ب"}
    GET    /uploads/<path>              → Stored question images
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from pydantic import ValidationError

from . import __version__
from .background_worker import BackgroundQueue
from .engine import ExtractionEngine, PipelineConfig
from .models import CalibrationConfig, SourceFile

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)


def create_app(
    config: dict = None, engine: Optional[ExtractionEngine] = None
) -> Flask:
    """Create and configure the Flask app and start its background queue."""
    if config:
        app.config.update(config)
    app.config.setdefault("MAX_CONTENT_LENGTH", 500 * 1024 * 1024)  # 500MB

    previous = app.extensions.get("qextract")
    if previous:
        previous["worker"].stop()

    engine = engine or ExtractionEngine(PipelineConfig(
        db_path=app.config.get("DB_PATH"),
        storage_dir=app.config.get("STORAGE_DIR"),
        log_level=app.config.get("LOG_LEVEL", "INFO"),
    ))
    engine.storage.init()
    worker = BackgroundQueue(engine).start()

    app.extensions["qextract"] = {"engine": engine, "worker": worker}
    return app


def _engine() -> ExtractionEngine:
    return app.extensions["qextract"]["engine"]


def _worker() -> BackgroundQueue:
    return app.extensions["qextract"]["worker"]


# ─── Health & Info ────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    jobs = _worker().jobs
    return jsonify({
        "status": "healthy",
        "service": "qextract",
        "version": __version__,
        "queue_running": _worker().is_running,
        "active_jobs": sum(
            1 for j in jobs if j.status.value in ("pending", "processing")
        ),
        "total_jobs": len(jobs),
    })


@app.route("/api/info", methods=["GET"])
def info():
    """Extractor version and pipeline settings."""
    cfg = _engine().config
    return jsonify({
        "version": __version__,
        "renderer": "PyMuPDF",
        "ocr": "tesseract",
        "ocr_language": cfg.ocr_language,
        "reference_scale": cfg.reference_scale,
        "batch_size": cfg.batch_size,
        "skip_leading_pages": cfg.skip_leading_pages,
        "options": list(_engine().vocabulary.canonical_letters),
        "supported_formats": ["pdf"],
    })


# ─── Calibration ──────────────────────────────────────────────────────────────


@app.route("/api/calibration", methods=["GET"])
def get_calibration():
    calibration = _engine().calibration_store.load()
    if calibration is None:
        return jsonify({"error": "Calibration not configured"}), 404
    return jsonify(calibration.model_dump(by_alias=True))


@app.route("/api/calibration", methods=["PUT"])
def save_calibration():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "JSON body with questionBox and answerBox required"}), 400
    try:
        calibration = CalibrationConfig.model_validate(data)
    except ValidationError as e:
        return jsonify({"error": "Invalid calibration", "details": e.errors(include_url=False)}), 400

    _engine().calibration_store.save(calibration)
    return jsonify(calibration.model_dump(by_alias=True))


@app.route("/api/calibration", methods=["DELETE"])
def delete_calibration():
    removed = _engine().calibration_store.clear()
    return jsonify({"success": removed})


# ─── Jobs ─────────────────────────────────────────────────────────────────────


@app.route("/api/jobs", methods=["POST"])
def submit_jobs():
    """
    Queue uploaded PDFs for extraction.

    Every job receives the calibration saved at submission time.
    """
    uploads = request.files.getlist("files") or request.files.getlist("file")
    uploads = [f for f in uploads if f and f.filename]
    if not uploads:
        return jsonify({"error": "No files provided"}), 400

    calibration = _engine().calibration_store.load()
    if calibration is None:
        return jsonify({"error": "Calibration not configured"}), 409

    sources = []
    for upload in uploads:
        # kept in memory by the queue; uploads are never written to disk
        sources.append(SourceFile(name=upload.filename, data=upload.read()))

    job_ids = _worker().submit(sources, calibration)
    return jsonify({
        "job_ids": job_ids,
        "status": "pending",
        "message": f"{len(job_ids)} file(s) queued",
    }), 202


@app.route("/api/jobs", methods=["GET"])
def list_jobs():
    worker = _worker()
    return jsonify({
        "jobs": [j.model_dump(mode="json") for j in worker.jobs],
        "is_working": worker.is_working(),
    })


@app.route("/api/jobs/cancel", methods=["POST"])
def cancel_jobs():
    return jsonify({"cancelled": _worker().cancel_all()})


@app.route("/api/jobs/clear-completed", methods=["POST"])
def clear_completed_jobs():
    return jsonify({"cleared": _worker().clear_completed()})


# ─── Tests & Review ───────────────────────────────────────────────────────────


@app.route("/api/tests", methods=["GET"])
def list_tests():
    return jsonify({"tests": _engine().sink.list_tests()})


@app.route("/api/tests/<int:test_id>", methods=["GET"])
def get_test(test_id: int):
    test = _engine().sink.get_test(test_id)
    if not test:
        return jsonify({"error": "Test not found"}), 404
    return jsonify(test)


@app.route("/api/tests", methods=["DELETE"])
def delete_tests():
    data = request.get_json(silent=True) or {}
    ids = data.get("ids")
    if not isinstance(ids, list) or not all(isinstance(i, int) for i in ids):
        return jsonify({"error": "JSON body with integer 'ids' list required"}), 400
    return jsonify({"deleted": _engine().sink.delete_tests(ids)})


@app.route("/api/questions/<int:question_id>/answer", methods=["PUT"])
def update_answer(question_id: int):
    data = request.get_json(silent=True) or {}
    answer = data.get("answer")
    if not isinstance(answer, str):
        return jsonify({"error": "JSON body with 'answer' required"}), 400
    try:
        updated = _engine().sink.update_question_answer(question_id, answer)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if not updated:
        return jsonify({"error": "Question not found"}), 404
    return jsonify({"success": True, "question_id": question_id, "answer": answer})


@app.route("/uploads/<path:filename>")
def serve_uploads(filename):
    """Serve stored images from the storage root."""
    return send_from_directory(str(_engine().storage.root.absolute()), filename)


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    config: dict = None,
):
    """Start the microservice server."""
    create_app(config)
    try:
        app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        _worker().stop()


if __name__ == "__main__":
    run_server(debug=True)
