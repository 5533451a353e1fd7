"""Mock OCR: treats the uploaded bytes as already-extracted text.

Used in tests and local development, where no OCR service is running.
"""

from __future__ import annotations

import time
from typing import Optional

from .base import OcrError, OcrProvider, OcrResult


class MockOcrProvider(OcrProvider):
    name = "mock"

    def __init__(self, confidence: Optional[float] = 90.0) -> None:
        self._confidence = confidence

    async def extract(self, content: bytes, *, content_type: Optional[str] = None) -> OcrResult:
        t0 = time.monotonic()
        if content is None:
            raise OcrError("No content to read")
        text = content.decode("utf-8", errors="ignore")
        elapsed = (time.monotonic() - t0) * 1000
        return OcrResult(
            text=text,
            confidence=self._confidence,
            provider=self.name,
            latency_ms=round(elapsed, 2),
        )
