"""
Calibration Store
=================
Persists the operator-drawn question and answer boxes.

Both boxes are measured on a reference page rendered at ``REFERENCE_SCALE``.
Extraction renders every page at the same scale, so the stored pixel
coordinates can be used as crop boxes directly.
"""

from __future__ import annotations

import io
import json
import logging
from typing import Optional

from PIL import Image, ImageDraw

from . import database as db
from .models import CalibrationConfig, Rectangle

logger = logging.getLogger(__name__)

# Render multiplier relative to the native page size (72 dpi → 144 dpi)
REFERENCE_SCALE = 2.0

CALIBRATION_KEY = "quantitative_crop_config"

QUESTION_BOX_COLOR = (56, 189, 248)
ANSWER_BOX_COLOR = (52, 211, 153)


class CalibrationStore:
    """Durable key/value storage of one CalibrationConfig."""

    def __init__(self, db_path: Optional[str] = None, key: str = CALIBRATION_KEY):
        self.db_path = db_path
        self.key = key
        db.init_db(db_path)

    def save(self, config: CalibrationConfig) -> None:
        value = json.dumps(config.model_dump(by_alias=True))
        db.set_setting(self.key, value, db_path=self.db_path)
        logger.info(
            f"Calibration saved: question={_describe(config.question_box)} "
            f"answer={_describe(config.answer_box)}"
        )

    def load(self) -> Optional[CalibrationConfig]:
        """The last saved config, or None when not configured."""
        value = db.get_setting(self.key, db_path=self.db_path)
        if value is None:
            return None
        return CalibrationConfig.model_validate(json.loads(value))

    def clear(self) -> bool:
        return db.delete_setting(self.key, db_path=self.db_path)


def _describe(box: Rectangle) -> str:
    return f"({box.x:.0f},{box.y:.0f} {box.width:.0f}x{box.height:.0f})"


# ─── Operator Helpers ─────────────────────────────────────────────────────────


def reference_page_index(page_count: int) -> int:
    """Second page when there is one (the first is a cover), else the first."""
    return 1 if page_count > 1 else 0


async def render_reference_page(data: bytes, rasterizer) -> Image.Image:
    """Render the page an operator calibrates against, at REFERENCE_SCALE."""
    doc = await rasterizer.open(data)
    try:
        index = reference_page_index(rasterizer.page_count(doc))
        return await rasterizer.render(doc, index, REFERENCE_SCALE)
    finally:
        rasterizer.close(doc)


def preview_calibration(image: Image.Image, config: CalibrationConfig) -> Image.Image:
    """Overlay both boxes on a reference raster for visual verification."""
    base = image.convert("RGBA")
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)

    for box, color in (
        (config.question_box, QUESTION_BOX_COLOR),
        (config.answer_box, ANSWER_BOX_COLOR),
    ):
        left, top, right, bottom = box.to_box()
        draw.rectangle(
            (left, top, right, bottom),
            fill=(*color, 51),
            outline=(*color, 255),
            width=4,
        )

    return Image.alpha_composite(base, overlay).convert("RGB")


def encode_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()
