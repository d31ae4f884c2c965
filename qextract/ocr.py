"""OCR functionality for the answer-detection fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

import pytesseract
from PIL import Image

logger = logging.getLogger(__name__)


class TextRecognizer(Protocol):
    """Recognizes the text of a single-line image."""

    async def recognize(self, image: Image.Image, alphabet_hint: str) -> str:
        ...


class TesseractRecognizer:
    """
    Tesseract via pytesseract, restricted to ``alphabet_hint`` and run in
    single-text-line mode. The blocking tesseract subprocess is awaited in
    a worker thread; the image passed in is never touched by the caller
    afterwards.
    """

    def __init__(
        self,
        language: str = "ara",
        page_segmentation_mode: int = 7,
        tesseract_cmd: Optional[str] = None,
    ):
        self.language = language
        self.page_segmentation_mode = page_segmentation_mode
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def build_config(self, alphabet_hint: str) -> str:
        config = f"--psm {self.page_segmentation_mode}"
        if alphabet_hint:
            config += f" -c tessedit_char_whitelist={alphabet_hint}"
        return config

    async def recognize(self, image: Image.Image, alphabet_hint: str) -> str:
        if image.width == 0 or image.height == 0:
            return ""
        text = await asyncio.to_thread(
            pytesseract.image_to_string,
            image,
            lang=self.language,
            config=self.build_config(alphabet_hint),
        )
        logger.debug(f"OCR output: {text!r}")
        return text
