"""
Text extraction collaborator.

Only plain-text formats are handled here; richer formats plug in through
the `TextExtractor` protocol.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, Union

from .errors import ExtractionError

PLAIN_TEXT_SUFFIXES = (".txt", ".text", ".md")


class TextExtractor(Protocol):
    def extract(self, path: Path) -> str:
        """Return the document's plain text (possibly empty)."""
        ...


class PlainTextExtractor:
    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    def extract(self, path: Union[str, Path]) -> str:
        path = Path(path)
        if path.suffix.lower() not in PLAIN_TEXT_SUFFIXES:
            raise ExtractionError(f"Unsupported file type: {path.name}")
        try:
            return path.read_text(encoding=self._encoding, errors="replace")
        except OSError as exc:
            raise ExtractionError(f"{path.name}: {exc}") from exc
