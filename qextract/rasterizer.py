"""
Page Rasterizer
===============
Renders PDF pages to Pillow images at a given scale, exposes the page
text layer as positioned fragments, and crops calibrated regions.

The pipeline depends only on the ``Rasterizer`` contract; the default
implementation uses PyMuPDF (fitz). Rendering stays on the event loop
thread because a fitz Document must not be shared across threads; each
call yields to the loop first so sibling page tasks interleave.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, Protocol

import fitz  # PyMuPDF
from PIL import Image

from .models import Rectangle, TextFragment

logger = logging.getLogger(__name__)


class Rasterizer(Protocol):
    """Renderer contract used by the page and file processors."""

    async def open(self, data: bytes) -> Any:
        """Open a PDF held in memory and return a document handle."""

    def page_count(self, document: Any) -> int:
        ...

    async def render(self, document: Any, page_index: int, scale: float) -> Image.Image:
        """Render one page (0-indexed) to an RGB raster."""

    async def get_text_fragments(self, document: Any, page_index: int) -> list[TextFragment]:
        """Text layer of one page, anchors in document space."""

    def close(self, document: Any) -> None:
        ...


class PyMuPDFRasterizer:
    """Rasterizer backed by PyMuPDF."""

    async def open(self, data: bytes) -> fitz.Document:
        await asyncio.sleep(0)
        doc = fitz.open(stream=data, filetype="pdf")
        logger.debug(f"Opened document with {doc.page_count} pages")
        return doc

    def page_count(self, document: fitz.Document) -> int:
        return document.page_count

    async def render(
        self, document: fitz.Document, page_index: int, scale: float
    ) -> Image.Image:
        await asyncio.sleep(0)
        page = document[page_index]
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)

    async def get_text_fragments(
        self, document: fitz.Document, page_index: int
    ) -> list[TextFragment]:
        await asyncio.sleep(0)
        page = document[page_index]
        rotation = page.rotation_matrix
        fragments: list[TextFragment] = []

        page_dict = page.get_text("dict")
        for block in page_dict.get("blocks", []):
            if block.get("type") != 0:  # Text only
                continue
            for line in block.get("lines", []):
                for span in line.get("spans", []):
                    text = span.get("text", "")
                    if not text.strip():
                        continue
                    origin = fitz.Point(span["origin"]) * rotation
                    fragments.append(
                        TextFragment(text=text, x=origin.x, y=origin.y)
                    )
        return fragments

    def close(self, document: fitz.Document) -> None:
        document.close()


# ─── Raster Helpers ───────────────────────────────────────────────────────────


def crop(raster: Image.Image, rect: Rectangle) -> Image.Image:
    """
    Cut ``rect`` out of ``raster``. The result is exactly
    ``round(rect.width) x round(rect.height)`` pixels.

    Raises:
        ValueError: If the rectangle does not lie within the raster.
    """
    left, top, right, bottom = rect.to_box()
    if right > raster.width or bottom > raster.height:
        raise ValueError(
            f"Crop box {(left, top, right, bottom)} exceeds raster "
            f"size {raster.width}x{raster.height}"
        )
    return raster.crop((left, top, right, bottom))


def encode_image(image: Image.Image, fmt: str = "webp", quality: int = 80) -> bytes:
    """Compress a raster for storage. Empty rasters encode to empty bytes."""
    if image.width == 0 or image.height == 0:
        return b""
    buf = io.BytesIO()
    image.save(buf, format=fmt.upper(), quality=quality)
    return buf.getvalue()


def binarize(image: Image.Image, threshold: int) -> Image.Image:
    """
    Grayscale with ITU-R 601-2 luma weights, then hard threshold:
    pixels brighter than ``threshold`` become white, the rest black.
    """
    gray = image.convert("L")
    return gray.point(lambda p: 255 if p > threshold else 0)
