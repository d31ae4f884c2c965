"""
Data Models
===========
Pydantic models shared by the calibration, extraction and queue layers.
All models are serializable to JSON for the HTTP service and the CLI.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .vocabulary import CANONICAL_LETTERS, UNKNOWN_ANSWER


# ─── Errors ───────────────────────────────────────────────────────────────────


class ExtractionError(RuntimeError):
    """Base error for the extraction pipeline."""


class CalibrationMissingError(ExtractionError):
    """Raised when extraction is requested before any calibration was saved."""


# ─── Calibration Models ───────────────────────────────────────────────────────


class Rectangle(BaseModel):
    """
    A box in the pixel space of a page rendered at the reference scale.

    Zero-area boxes are accepted; they only degrade extraction quality.
    """
    model_config = ConfigDict(frozen=True)

    x: float = Field(ge=0)
    y: float = Field(ge=0)
    width: float = Field(ge=0)
    height: float = Field(ge=0)

    @property
    def is_empty(self) -> bool:
        return round(self.width) <= 0 or round(self.height) <= 0

    def to_box(self) -> tuple[int, int, int, int]:
        """Integer (left, top, right, bottom) box with exact width/height."""
        left, top = round(self.x), round(self.y)
        return left, top, left + round(self.width), top + round(self.height)

    def expanded(self, margin: float) -> tuple[float, float, float, float]:
        """(x0, y0, x1, y1) of this box grown by ``margin`` on every side."""
        return (
            self.x - margin,
            self.y - margin,
            self.x + self.width + margin,
            self.y + self.height + margin,
        )

    @classmethod
    def parse(cls, value: str) -> "Rectangle":
        """Build a rectangle from an ``"x,y,width,height"`` string."""
        parts = [p.strip() for p in value.split(",")]
        if len(parts) != 4:
            raise ValueError(f"Expected x,y,width,height but got: {value!r}")
        x, y, width, height = (float(p) for p in parts)
        return cls(x=x, y=y, width=width, height=height)


class CalibrationConfig(BaseModel):
    """Question and answer boxes shared by every file of a batch."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    question_box: Rectangle = Field(alias="questionBox")
    answer_box: Rectangle = Field(alias="answerBox")


# ─── Page Text Layer ──────────────────────────────────────────────────────────


class TextFragment(BaseModel):
    """A glyph run from a page text layer, anchored at its baseline origin."""
    model_config = ConfigDict(frozen=True)

    text: str
    x: float = Field(description="Anchor x in document space (points)")
    y: float = Field(description="Anchor y in document space (points)")

    def scaled(self, scale: float) -> "TextFragment":
        """Same fragment with its anchor converted to reference pixel space."""
        return TextFragment(text=self.text, x=self.x * scale, y=self.y * scale)


# ─── Extraction Output ────────────────────────────────────────────────────────


class ExtractedQuestion(BaseModel):
    """
    One question cut from one page. The question prose only lives in
    ``question_image``; ``question_text`` is a placeholder.
    """
    model_config = ConfigDict(frozen=True)

    question_text: str
    question_image: bytes = Field(repr=False)
    verification_image: bytes = Field(repr=False)
    options: tuple[str, ...] = CANONICAL_LETTERS
    correct_answer: str = UNKNOWN_ANSWER
    page_number: int = Field(ge=1)
    order: int = Field(ge=0)
    is_edited: bool = False

    @property
    def is_answer_known(self) -> bool:
        return self.correct_answer != UNKNOWN_ANSWER


class ExtractedTest(BaseModel):
    """All questions extracted from one source file."""
    name: str
    source_file: str
    questions: list[ExtractedQuestion] = Field(default_factory=list)
    test_id: Optional[str] = None

    @property
    def unknown_answer_count(self) -> int:
        return sum(1 for q in self.questions if not q.is_answer_known)


# ─── Job Models ───────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    """Lifecycle status of a queued source file."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class SourceFile(BaseModel):
    """A PDF handed to the queue, either as a path on disk or raw bytes."""
    name: str
    path: Optional[Path] = None
    data: Optional[bytes] = Field(default=None, repr=False)

    @classmethod
    def from_path(cls, path: str | Path) -> "SourceFile":
        path = Path(path)
        return cls(name=path.name, path=path)

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise ExtractionError(f"Source file {self.name!r} has no content")
        return self.path.read_bytes()


class JobView(BaseModel):
    """Read-only snapshot of a job, as shown by progress displays."""
    model_config = ConfigDict(frozen=True)

    id: str
    file_name: str
    status: JobStatus
    progress: int = Field(ge=0, le=100)
    total_questions: int = 0
    test_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
