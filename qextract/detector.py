"""
Answer Detector
===============
Reads the correct-answer letter of one page from its answer region.

Two passes, first success wins:
    1. Text layer: fragments whose anchor falls inside the (padded) answer
       box are put back in reading order and concatenated.
    2. OCR: the answer raster is binarized and recognized as one text line.

Both passes share the same marker-anchored extraction:
    clean → find the last "correct answer" marker → first option letter
    after it (or anywhere, when the cleaned text is very short) →
    normalize the variant to its canonical letter.

Nothing here raises for an inconclusive page; the "?" sentinel is returned
instead and left for a human reviewer.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterable, Optional

from PIL import Image

from .calibration import REFERENCE_SCALE
from .models import Rectangle, TextFragment
from .ocr import TextRecognizer
from .rasterizer import binarize
from .vocabulary import UNKNOWN_ANSWER, AnswerVocabulary

logger = logging.getLogger(__name__)

# Whitespace, zero-width/bidi controls, soft hyphen, tatweel, Arabic
# diacritics and separator punctuation. Removed before any matching.
STRIP_PATTERN = re.compile(
    r"[\s"
    r"\u00ad\u0640\u064b-\u065f\u0670\u06d6-\u06ed"
    r"\u200b-\u200f\u202a-\u202e\u2060-\u2069\ufeff"
    r":：؛;،,.\-_–—()\[\]{}\"'«»|/\\!؟?*]+"
)

DEFAULT_PADDING = 15.0
DEFAULT_ROW_TOLERANCE = 5.0
DEFAULT_SHORT_TEXT_LIMIT = 10
DEFAULT_BINARIZE_THRESHOLD = 140


# ─── Text Matching ────────────────────────────────────────────────────────────


def clean_text(text: str) -> str:
    """Compatibility-normalize, drop stripped characters, casefold."""
    normalized = unicodedata.normalize("NFKC", text)
    return STRIP_PATTERN.sub("", normalized).casefold()


def find_last_marker(cleaned: str, markers: Iterable[str]) -> Optional[tuple[int, int]]:
    """
    (start, end) of the last marker occurrence in ``cleaned``.
    Markers starting at the same index resolve to the longest one.
    """
    best: Optional[tuple[int, int]] = None
    for marker in markers:
        needle = clean_text(marker)
        if not needle:
            continue
        start = cleaned.rfind(needle)
        if start < 0:
            continue
        candidate = (start, start + len(needle))
        if best is None or (candidate[0], candidate[1]) > best:
            best = candidate
    return best


def extract_answer_letter(
    text: str,
    vocabulary: AnswerVocabulary,
    short_text_limit: int = DEFAULT_SHORT_TEXT_LIMIT,
) -> Optional[str]:
    """Canonical letter named by ``text``, or None when inconclusive."""
    cleaned = clean_text(text)
    if not cleaned:
        return None

    span = find_last_marker(cleaned, vocabulary.markers)
    if span is not None:
        candidate = cleaned[span[1]:]
    elif len(cleaned) < short_text_limit:
        candidate = cleaned
    else:
        return None

    for char in candidate:
        letter = vocabulary.normalize(char)
        if letter is not None:
            return letter
    return None


# ─── Text Layer Geometry ──────────────────────────────────────────────────────


def is_rtl(text: str) -> bool:
    """True when ``text`` holds any right-to-left letter (Arabic, Hebrew)."""
    return any(unicodedata.bidirectional(c) in ("R", "AL") for c in text)


def _row_order(row: list[TextFragment]) -> list[TextFragment]:
    rtl = any(is_rtl(f.text) for f in row)
    return sorted(row, key=lambda f: f.x, reverse=rtl)


def order_fragments(
    fragments: list[TextFragment], row_tolerance: float = DEFAULT_ROW_TOLERANCE
) -> list[TextFragment]:
    """
    Reading order: rows top to bottom. Within a row fragments run right to
    left when the row holds right-to-left text, left to right otherwise. A
    fragment more than ``row_tolerance`` below the first fragment of the
    current row starts a new row.
    """
    ordered: list[TextFragment] = []
    row: list[TextFragment] = []
    row_top = 0.0

    for frag in sorted(fragments, key=lambda f: (f.y, f.x)):
        if row and frag.y - row_top > row_tolerance:
            ordered.extend(_row_order(row))
            row = []
        if not row:
            row_top = frag.y
        row.append(frag)

    ordered.extend(_row_order(row))
    return ordered


def fragments_in_box(
    fragments: list[TextFragment],
    box: Rectangle,
    scale: float = REFERENCE_SCALE,
    padding: float = DEFAULT_PADDING,
) -> list[TextFragment]:
    """Fragments (converted to pixel space) anchored inside the padded box."""
    x0, y0, x1, y1 = box.expanded(padding)
    selected = []
    for frag in fragments:
        scaled = frag.scaled(scale)
        if x0 <= scaled.x <= x1 and y0 <= scaled.y <= y1:
            selected.append(scaled)
    return selected


# ─── Detector ─────────────────────────────────────────────────────────────────


class AnswerDetector:
    """Text-layer pass first, OCR fallback second, "?" when both fail."""

    def __init__(
        self,
        recognizer: TextRecognizer,
        vocabulary: Optional[AnswerVocabulary] = None,
        scale: float = REFERENCE_SCALE,
        padding: float = DEFAULT_PADDING,
        row_tolerance: float = DEFAULT_ROW_TOLERANCE,
        short_text_limit: int = DEFAULT_SHORT_TEXT_LIMIT,
        binarize_threshold: int = DEFAULT_BINARIZE_THRESHOLD,
    ):
        self.recognizer = recognizer
        self.vocabulary = vocabulary or AnswerVocabulary()
        self.scale = scale
        self.padding = padding
        self.row_tolerance = row_tolerance
        self.short_text_limit = short_text_limit
        self.binarize_threshold = binarize_threshold
        self._hint = self.vocabulary.recognition_hint()

    def answer_region_text(
        self, fragments: list[TextFragment], answer_box: Rectangle
    ) -> str:
        """Concatenated text layer of the answer region, in reading order."""
        selected = fragments_in_box(
            fragments, answer_box, self.scale, self.padding
        )
        ordered = order_fragments(selected, self.row_tolerance)
        return "".join(f.text for f in ordered)

    def detect_from_text_layer(
        self, fragments: list[TextFragment], answer_box: Rectangle
    ) -> Optional[str]:
        text = self.answer_region_text(fragments, answer_box)
        if not text:
            return None
        return extract_answer_letter(text, self.vocabulary, self.short_text_limit)

    async def detect_from_image(self, answer_image: Image.Image) -> Optional[str]:
        prepared = binarize(answer_image, self.binarize_threshold)
        try:
            text = await self.recognizer.recognize(prepared, self._hint)
        except Exception as e:
            logger.warning(f"OCR failed on answer region: {e}")
            return None
        return extract_answer_letter(text, self.vocabulary, self.short_text_limit)

    async def detect(
        self,
        fragments: list[TextFragment],
        answer_box: Rectangle,
        answer_image: Image.Image,
    ) -> str:
        """Canonical answer letter for one page, or the "?" sentinel."""
        letter = self.detect_from_text_layer(fragments, answer_box)
        if letter is not None:
            logger.debug(f"Answer {letter} from text layer")
            return letter

        letter = await self.detect_from_image(answer_image)
        if letter is not None:
            logger.debug(f"Answer {letter} from OCR")
            return letter

        return UNKNOWN_ANSWER
