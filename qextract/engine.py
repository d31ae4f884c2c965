"""
Extraction Engine
=================
Configuration, logging setup and component wiring.

Usage:
    engine = ExtractionEngine(PipelineConfig(batch_size=3))
    jobs = asyncio.run(engine.extract([SourceFile.from_path("test-1.pdf")]))

Architecture:
    CalibrationStore ─┐
                      ├→ JobQueue → FileProcessor → PageProcessor →
    SourceFile[] ─────┘     PyMuPDFRasterizer + AnswerDetector(TesseractRecognizer)
                                        → SQLiteResultSink
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from . import database as db
from .calibration import REFERENCE_SCALE, CalibrationStore
from .crud import SQLiteResultSink
from .detector import (
    DEFAULT_BINARIZE_THRESHOLD,
    DEFAULT_PADDING,
    DEFAULT_ROW_TOLERANCE,
    DEFAULT_SHORT_TEXT_LIMIT,
    AnswerDetector,
)
from .jobs import JobQueue
from .models import CalibrationConfig, CalibrationMissingError, JobView, SourceFile
from .ocr import TesseractRecognizer, TextRecognizer
from .pipeline import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_SKIP_LEADING_PAGES,
    FileProcessor,
    PageProcessor,
    ResultSink,
)
from .rasterizer import PyMuPDFRasterizer, Rasterizer
from .storage import Storage
from .vocabulary import AnswerVocabulary

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class PipelineConfig:
    """Configuration for the extraction engine."""

    # Geometry
    reference_scale: float = REFERENCE_SCALE
    answer_padding: float = DEFAULT_PADDING
    row_tolerance: float = DEFAULT_ROW_TOLERANCE

    # Processing
    batch_size: int = DEFAULT_BATCH_SIZE
    skip_leading_pages: int = DEFAULT_SKIP_LEADING_PAGES
    name_separators: str = "-"

    # Answer detection
    short_text_limit: int = DEFAULT_SHORT_TEXT_LIMIT
    binarize_threshold: int = DEFAULT_BINARIZE_THRESHOLD
    vocabulary_file: Optional[str] = None

    # OCR
    ocr_language: str = "ara"
    ocr_page_segmentation_mode: int = 7
    tesseract_cmd: Optional[str] = None

    # Image settings
    image_format: str = "webp"
    question_image_quality: int = 80
    verification_image_quality: int = 60

    # Persistence
    db_path: Optional[str] = None
    storage_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the qextract package logger (console + optional file)."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger("qextract")
    package_logger.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler
    console = next(
        (h for h in package_logger.handlers if type(h) is logging.StreamHandler),
        None,
    )
    if console is None:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        package_logger.addHandler(console)
    console.setLevel(log_level)

    # File handler
    if log_file:
        log_path = Path(log_file)
        already = any(
            isinstance(h, logging.FileHandler)
            and Path(h.baseFilename) == log_path.absolute()
            for h in package_logger.handlers
        )
        if not already:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            package_logger.addHandler(file_handler)


class ExtractionEngine:
    """
    Builds the pipeline from a PipelineConfig.

    The rasterizer, recognizer and sink can be injected; otherwise PyMuPDF,
    Tesseract and the SQLite sink are used.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        rasterizer: Optional[Rasterizer] = None,
        recognizer: Optional[TextRecognizer] = None,
        sink: Optional[ResultSink] = None,
        setup_logs: bool = True,
    ):
        self.config = config or PipelineConfig()
        if setup_logs:
            setup_logging(self.config.log_level, self.config.log_file)

        self.db_path = self.config.db_path or db.get_db_path()
        self.storage = Storage(self.config.storage_dir)
        self.rasterizer = rasterizer or PyMuPDFRasterizer()
        self.recognizer = recognizer or TesseractRecognizer(
            language=self.config.ocr_language,
            page_segmentation_mode=self.config.ocr_page_segmentation_mode,
            tesseract_cmd=self.config.tesseract_cmd,
        )
        self._sink = sink
        self.vocabulary = AnswerVocabulary.load(self.config.vocabulary_file)

    @property
    def sink(self) -> ResultSink:
        if self._sink is None:
            self._sink = SQLiteResultSink(self.db_path, self.storage)
        return self._sink

    @property
    def calibration_store(self) -> CalibrationStore:
        return CalibrationStore(self.db_path)

    def build_detector(self) -> AnswerDetector:
        return AnswerDetector(
            recognizer=self.recognizer,
            vocabulary=self.vocabulary,
            scale=self.config.reference_scale,
            padding=self.config.answer_padding,
            row_tolerance=self.config.row_tolerance,
            short_text_limit=self.config.short_text_limit,
            binarize_threshold=self.config.binarize_threshold,
        )

    def build_file_processor(self) -> FileProcessor:
        page_processor = PageProcessor(
            rasterizer=self.rasterizer,
            detector=self.build_detector(),
            scale=self.config.reference_scale,
            image_format=self.config.image_format,
            question_image_quality=self.config.question_image_quality,
            verification_image_quality=self.config.verification_image_quality,
        )
        return FileProcessor(
            rasterizer=self.rasterizer,
            page_processor=page_processor,
            sink=self.sink,
            batch_size=self.config.batch_size,
            skip_leading_pages=self.config.skip_leading_pages,
            name_separators=self.config.name_separators,
        )

    def build_queue(
        self, on_change: Optional[Callable[[list[JobView]], None]] = None
    ) -> JobQueue:
        return JobQueue(self.build_file_processor(), on_change=on_change)

    def require_calibration(self) -> CalibrationConfig:
        """The saved calibration snapshot, or CalibrationMissingError."""
        config = self.calibration_store.load()
        if config is None:
            raise CalibrationMissingError(
                "No calibration saved; run 'qextract calibrate' first"
            )
        return config

    async def extract(
        self,
        files: Iterable[SourceFile],
        calibration: Optional[CalibrationConfig] = None,
        on_change: Optional[Callable[[list[JobView]], None]] = None,
    ) -> list[JobView]:
        """Queue ``files``, wait for the queue to drain, return the final job list."""
        calibration = calibration or self.require_calibration()
        queue = self.build_queue(on_change)
        queue.submit(files, calibration)
        await queue.join()
        return queue.jobs
