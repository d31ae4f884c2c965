"""
Filesystem Storage Manager
===========================
Stores the question and verification images of extracted tests.
Paths handed to the database are relative to the storage root.

Directory Layout:
    uploads/
    └── images/
        └── {id}_{name}/   # Cropped question/answer images per test
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Project root: one level up from /qextract/ package
_PROJECT_ROOT = Path(__file__).parent.parent.absolute()


def get_storage_root() -> Path:
    return Path(os.environ.get("QEXTRACT_STORAGE_DIR", _PROJECT_ROOT / "uploads"))


class Storage:
    """Image storage under one root directory."""

    def __init__(self, root: Optional[str | Path] = None):
        self.root = Path(root) if root else get_storage_root()
        self.images_dir = self.root / "images"

    def init(self):
        """Ensure all required directories exist."""
        self.images_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Storage initialized: {self.root}")

    # ─── Image Storage ────────────────────────────────────────────────────

    def test_image_dir(
        self, test_name: str, test_id: str, create: bool = True
    ) -> Path:
        image_dir = self.images_dir / f"{test_id}_{_sanitize_name(test_name)}"
        if create:
            image_dir.mkdir(parents=True, exist_ok=True)
        return image_dir

    def save_image(self, data: bytes, image_dir: Path, filename: str) -> str:
        """
        Write image bytes and return the path relative to the storage root.
        Empty images are not written; an empty string is returned.
        """
        if not data:
            return ""
        dest = image_dir / filename
        dest.write_bytes(data)
        return dest.relative_to(self.root).as_posix()

    def resolve(self, relative_path: str) -> Optional[Path]:
        """Absolute path of a stored file, or None if missing or outside the root."""
        if not relative_path:
            return None
        candidate = (self.root / relative_path).resolve()
        try:
            candidate.relative_to(self.root.resolve())
        except ValueError:
            return None
        return candidate if candidate.is_file() else None

    def delete_dir(self, relative_dir: str) -> bool:
        target = self.resolve_dir(relative_dir)
        if target is None:
            return False
        shutil.rmtree(target)
        logger.info(f"Deleted image directory: {relative_dir}")
        return True

    def resolve_dir(self, relative_dir: str) -> Optional[Path]:
        if not relative_dir:
            return None
        candidate = (self.root / relative_dir).resolve()
        if candidate == self.root.resolve() or not candidate.is_dir():
            return None
        try:
            candidate.relative_to(self.images_dir.resolve())
        except ValueError:
            return None
        return candidate


def _sanitize_name(name: str) -> str:
    """Make a name safe for use as a directory or file name."""
    safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in name)
    return safe.strip("._")[:80] or "unnamed"
