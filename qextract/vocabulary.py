"""
Answer Vocabulary
=================
Marker phrases ("the correct answer is") and the option-letter alphabet
used to read the correct answer from an answer region.

The built-in tables are tuned to one exam vendor's Arabic phrasing. Other
document sources can supply their own JSON file with the same shape:

    {
        "markers": ["الإجابة الصحيحة", ...],
        "letters": {"أ": ["ا", "آ", "A", "a"], "ب": [...], "ج": [...], "د": [...]}
    }
"""

from __future__ import annotations

import json
import logging
import unicodedata
from functools import cached_property
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# Canonical option letters, in option order
CANONICAL_LETTERS: tuple[str, ...] = ("أ", "ب", "ج", "د")

# Sentinel stored when no detector pass is conclusive
UNKNOWN_ANSWER = "?"

DEFAULT_MARKERS: tuple[str, ...] = (
    "الإجابة الصحيحة",
    "الاجابة الصحيحة",
    "الأجابة الصحيحة",
    "الإجابه الصحيحه",
    "الاجابه الصحيحه",
    "الإجابة الصحيحه",
    "الاجابة الصحيحه",
    "الجواب الصحيح",
    "الإجابة",
    "الاجابة",
    "الإجابه",
    "الاجابه",
    "الجواب",
)

DEFAULT_LETTER_VARIANTS: dict[str, tuple[str, ...]] = {
    # Alif with and without hamza/madda, isolated and final presentation forms
    "أ": ("أ", "ا", "آ", "إ", "ٱ", "ﺃ", "ﺄ", "ﺍ", "ﺎ", "ﺁ", "ﺂ", "ﺇ", "ﺈ", "A", "a"),
    "ب": ("ب", "ﺏ", "ﺐ", "ﺑ", "ﺒ", "B", "b"),
    "ج": ("ج", "ﺝ", "ﺞ", "ﺟ", "ﺠ", "C", "c"),
    "د": ("د", "ﺩ", "ﺪ", "D", "d"),
}


def fold_letter(char: str) -> str:
    """Compatibility-normalize and casefold, as answer text is before matching."""
    return unicodedata.normalize("NFKC", char).casefold()


class AnswerVocabulary(BaseModel):
    """Marker phrases plus a many-to-one table of letter variants."""

    markers: list[str] = Field(default_factory=lambda: list(DEFAULT_MARKERS))
    letters: dict[str, list[str]] = Field(
        default_factory=lambda: {
            k: list(v) for k, v in DEFAULT_LETTER_VARIANTS.items()
        }
    )

    @model_validator(mode="after")
    def _check_tables(self) -> "AnswerVocabulary":
        if not self.markers:
            raise ValueError("At least one marker phrase is required")
        if len(self.letters) != len(CANONICAL_LETTERS):
            raise ValueError(
                f"Exactly {len(CANONICAL_LETTERS)} canonical letters are required, "
                f"got {len(self.letters)}"
            )
        seen: dict[str, str] = {}
        for canonical, variants in self.letters.items():
            for variant in [canonical, *variants]:
                key = fold_letter(variant)
                if len(variant) != 1 or len(key) != 1:
                    raise ValueError(f"Letter variant must be one character: {variant!r}")
                owner = seen.setdefault(key, canonical)
                if owner != canonical:
                    raise ValueError(
                        f"Variant {variant!r} maps to both {owner!r} and {canonical!r}"
                    )
        return self

    @cached_property
    def normalization_table(self) -> dict[str, str]:
        """Folded variant character → canonical letter."""
        table: dict[str, str] = {}
        for canonical, variants in self.letters.items():
            for variant in [canonical, *variants]:
                table[fold_letter(variant)] = canonical
        return table

    @property
    def alphabet(self) -> frozenset[str]:
        """Every accepted letter character, as written and as folded."""
        written = {
            c for canonical, variants in self.letters.items()
            for c in [canonical, *variants]
        }
        return frozenset(written | set(self.normalization_table))

    @property
    def canonical_letters(self) -> tuple[str, ...]:
        return tuple(self.letters)

    def normalize(self, char: str) -> Optional[str]:
        """Map one accepted variant to its canonical letter, else None."""
        return self.normalization_table.get(fold_letter(char))

    def recognition_hint(self) -> str:
        """Every character OCR should be allowed to emit."""
        chars = set(self.alphabet)
        for marker in self.markers:
            chars.update(c for c in marker if not c.isspace())
        return "".join(sorted(chars))

    @classmethod
    def load(cls, path: Optional[str | Path] = None) -> "AnswerVocabulary":
        """Load a vocabulary JSON file, or the built-in tables when path is None."""
        if path is None:
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        vocabulary = cls.model_validate(data)
        logger.info(
            f"Loaded answer vocabulary from {path}: "
            f"{len(vocabulary.markers)} markers, "
            f"{len(vocabulary.alphabet)} letter variants"
        )
        return vocabulary
