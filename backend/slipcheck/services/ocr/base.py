"""Abstract base for OCR collaborators."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Optional


class OcrError(RuntimeError):
    """The OCR collaborator could not produce text for a file."""


@dataclass(frozen=True)
class OcrResult:
    """What every collaborator returns: the text and how much to trust it (0-100)."""

    text: str
    confidence: Optional[float]
    provider: str
    latency_ms: float = 0.0


class OcrProvider(abc.ABC):
    name: str = "base"

    @abc.abstractmethod
    async def extract(self, content: bytes, *, content_type: Optional[str] = None) -> OcrResult:
        """Read *content* and return an ``OcrResult``; raise ``OcrError`` on failure."""
