"""
Test Doubles
============
In-memory stand-ins for the Rasterizer and TextRecognizer contracts,
plus small builders shared by the test modules.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import fitz
from PIL import Image

from qextract.models import CalibrationConfig, Rectangle, SourceFile, TextFragment

# Answer box (10, 200) 100x40 in reference pixels; at scale 2 that is
# x 5..55 / y 100..120 in document points.
CALIBRATION = CalibrationConfig(
    question_box=Rectangle(x=10, y=10, width=100, height=50),
    answer_box=Rectangle(x=10, y=200, width=100, height=40),
)

ANSWER_POINT = (20.0, 112.0)


@dataclass
class FakePage:
    fragments: list[TextFragment] = field(default_factory=list)
    size: tuple[int, int] = (400, 600)
    fail_render: bool = False
    fail_text: bool = False


def answer_page(text: str) -> FakePage:
    """A page whose text layer holds ``text`` inside the answer box."""
    x, y = ANSWER_POINT
    return FakePage(fragments=[TextFragment(text=text, x=x, y=y)])


def scanned_page() -> FakePage:
    return FakePage()


class FakeDocument:
    def __init__(self, pages: list[FakePage]):
        self.pages = pages
        self.closed = False


class FakeRasterizer:
    """
    Serves pre-built pages keyed by the raw bytes of the "PDF". Unknown
    bytes fail to open, like a corrupt file.
    """

    def __init__(self, documents: Optional[dict[bytes, list[FakePage]]] = None):
        self.documents = documents or {}
        self.opened: list[FakeDocument] = []
        self.events: list[tuple[str, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def open(self, data: bytes) -> FakeDocument:
        await asyncio.sleep(0)
        if data not in self.documents:
            raise ValueError("cannot open document: not a PDF")
        doc = FakeDocument(self.documents[data])
        self.opened.append(doc)
        return doc

    def page_count(self, document: FakeDocument) -> int:
        return len(document.pages)

    async def render(self, document: FakeDocument, page_index: int, scale: float) -> Image.Image:
        self.events.append(("start", page_index))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            page = document.pages[page_index]
            if page.fail_render:
                raise RuntimeError(f"render failed on page {page_index + 1}")
            return Image.new("RGB", page.size, "white")
        finally:
            self.in_flight -= 1
            self.events.append(("end", page_index))

    async def get_text_fragments(self, document: FakeDocument, page_index: int) -> list[TextFragment]:
        await asyncio.sleep(0)
        page = document.pages[page_index]
        if page.fail_text:
            raise RuntimeError("broken text layer")
        return list(page.fragments)

    def close(self, document: FakeDocument) -> None:
        document.closed = True


class FakeRecognizer:
    """Returns a fixed OCR string (or raises) and records every call."""

    def __init__(self, text: str = "", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: list[tuple[Image.Image, str]] = []

    async def recognize(self, image: Image.Image, alphabet_hint: str) -> str:
        self.calls.append((image, alphabet_hint))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.text


def source(name: str, data: bytes) -> SourceFile:
    return SourceFile(name=name, data=data)


def build_pdf(
    page_texts: list[Optional[str]],
    width: float = 200,
    height: float = 300,
    point: tuple[float, float] = ANSWER_POINT,
) -> bytes:
    """A real PDF with one page per entry; ``None`` pages carry no text."""
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page(width=width, height=height)
        if text:
            page.insert_text(point, text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data
