"""
Extraction Pipeline
===================
Per-page and per-file orchestration.

Architecture:
    PDF → FileProcessor (skip cover, batches of pages) →
    PageProcessor (render → crop question/answer → AnswerDetector) →
    ExtractedQuestion[] → ExtractedTest → ResultSink

Page failures are logged and dropped; everything that escapes
FileProcessor.process is a file failure handled by the job queue.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Optional, Protocol

from .calibration import REFERENCE_SCALE
from .detector import AnswerDetector
from .models import (
    CalibrationConfig,
    ExtractedQuestion,
    ExtractedTest,
    SourceFile,
    TextFragment,
)
from .rasterizer import Rasterizer, crop, encode_image

logger = logging.getLogger(__name__)

QUESTION_TEXT_TEMPLATE = "سؤال مستخرج من صفحة {page_number}"
SOURCE_TEXT_TEMPLATE = "Extracted source file: {file_name}"

DEFAULT_BATCH_SIZE = 3
DEFAULT_SKIP_LEADING_PAGES = 1

_PDF_SUFFIX = re.compile(r"\.pdf$", re.IGNORECASE)


class ResultSink(Protocol):
    """Persistence collaborator that receives each completed test."""

    def add_test(self, name: str, source_text: str) -> str:
        ...

    def add_questions_to_test(
        self, test_id: str, questions: list[ExtractedQuestion]
    ) -> None:
        ...


def derive_test_name(file_name: str, separators: str = "-") -> str:
    """Text before the first separator of the file stem, e.g. ``"Test 12 - v2.pdf"`` → ``"Test 12"``."""
    stem = _PDF_SUFFIX.sub("", file_name)
    head = stem
    for i, char in enumerate(stem):
        if char in separators:
            head = stem[:i]
            break
    return head.strip() or stem.strip() or file_name


# ─── Page Processor ───────────────────────────────────────────────────────────


class PageProcessor:
    """Turns one rendered page into one ExtractedQuestion."""

    def __init__(
        self,
        rasterizer: Rasterizer,
        detector: AnswerDetector,
        scale: float = REFERENCE_SCALE,
        image_format: str = "webp",
        question_image_quality: int = 80,
        verification_image_quality: int = 60,
    ):
        self.rasterizer = rasterizer
        self.detector = detector
        self.scale = scale
        self.image_format = image_format
        self.question_image_quality = question_image_quality
        self.verification_image_quality = verification_image_quality

    async def process(
        self,
        document: Any,
        page_index: int,
        config: CalibrationConfig,
        order: int = 0,
    ) -> Optional[ExtractedQuestion]:
        """
        Extract the question on ``page_index`` (0-indexed).

        Returns:
            The question, or None when the page could not be rendered or cropped.
        """
        page_number = page_index + 1
        try:
            raster = await self.rasterizer.render(document, page_index, self.scale)
            question_raster = crop(raster, config.question_box)
            answer_raster = crop(raster, config.answer_box)

            fragments = await self._text_fragments(document, page_index)
            answer = await self.detector.detect(
                fragments, config.answer_box, answer_raster
            )

            return ExtractedQuestion(
                question_text=QUESTION_TEXT_TEMPLATE.format(page_number=page_number),
                question_image=encode_image(
                    question_raster, self.image_format, self.question_image_quality
                ),
                verification_image=encode_image(
                    answer_raster, self.image_format, self.verification_image_quality
                ),
                options=self.detector.vocabulary.canonical_letters,
                correct_answer=answer,
                page_number=page_number,
                order=order,
            )
        except Exception as e:
            logger.warning(
                f"Page {page_number}: extraction failed, page skipped — {e}",
                exc_info=True,
            )
            return None

    async def _text_fragments(self, document: Any, page_index: int) -> list[TextFragment]:
        # A broken text layer only disables the text pass; OCR still runs
        try:
            return await self.rasterizer.get_text_fragments(document, page_index)
        except Exception as e:
            logger.warning(f"Page {page_index + 1}: text layer unreadable — {e}")
            return []


# ─── File Processor ───────────────────────────────────────────────────────────


class FileProcessor:
    """Runs PageProcessor over every content page of one PDF."""

    def __init__(
        self,
        rasterizer: Rasterizer,
        page_processor: PageProcessor,
        sink: Optional[ResultSink] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        skip_leading_pages: int = DEFAULT_SKIP_LEADING_PAGES,
        name_separators: str = "-",
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.rasterizer = rasterizer
        self.page_processor = page_processor
        self.sink = sink
        self.batch_size = batch_size
        self.skip_leading_pages = skip_leading_pages
        self.name_separators = name_separators

    async def process(
        self,
        source: SourceFile,
        config: CalibrationConfig,
        progress_callback: Optional[Callable[[int], None]] = None,
    ) -> ExtractedTest:
        """
        Extract every content page of ``source`` and hand the test to the sink.

        Args:
            source: The PDF to process.
            config: Calibration snapshot used for every page.
            progress_callback: Called with a 0-100 percentage after each batch.

        Raises:
            Any error opening the document or persisting the result.
        """
        data = source.read_bytes()
        document = await self.rasterizer.open(data)
        questions: list[ExtractedQuestion] = []

        try:
            page_count = self.rasterizer.page_count(document)
            page_indexes = list(range(self.skip_leading_pages, page_count))
            total = len(page_indexes)
            logger.info(
                f"{source.name}: {page_count} pages, {total} to extract "
                f"in batches of {self.batch_size}"
            )

            completed = 0
            for start in range(0, total, self.batch_size):
                batch = page_indexes[start:start + self.batch_size]
                results = await asyncio.gather(*(
                    self.page_processor.process(
                        document,
                        page_index,
                        config,
                        order=page_index - self.skip_leading_pages,
                    )
                    for page_index in batch
                ))
                questions.extend(q for q in results if q is not None)

                completed += len(batch)
                if progress_callback:
                    progress_callback(round(completed / total * 100))
        finally:
            self.rasterizer.close(document)

        test = ExtractedTest(
            name=derive_test_name(source.name, self.name_separators),
            source_file=source.name,
            questions=questions,
        )
        self._emit(test)
        return test

    def _emit(self, test: ExtractedTest):
        if self.sink is None:
            return
        test.test_id = self.sink.add_test(
            test.name, SOURCE_TEXT_TEMPLATE.format(file_name=test.source_file)
        )
        if test.questions:
            self.sink.add_questions_to_test(test.test_id, test.questions)
        logger.info(
            f"Test {test.name!r} (id={test.test_id}) stored with "
            f"{len(test.questions)} questions"
        )
