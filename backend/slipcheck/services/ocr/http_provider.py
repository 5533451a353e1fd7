"""HTTP OCR collaborator: POSTs the file and expects ``{"text": ..., "confidence": ...}``."""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from slipcheck.utils.retry import with_retries

from .base import OcrError, OcrProvider, OcrResult

logger = logging.getLogger(__name__)


class HttpOcrProvider(OcrProvider):
    name = "http"

    def __init__(
        self,
        url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 20.0,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    async def extract(self, content: bytes, *, content_type: Optional[str] = None) -> OcrResult:
        t0 = time.monotonic()
        files = {"file": ("slip", content, content_type or "application/octet-stream")}

        async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:

            async def _post() -> httpx.Response:
                resp = await client.post(self._url, headers=self._headers(), files=files)
                resp.raise_for_status()
                return resp

            try:
                resp = await with_retries(
                    _post,
                    max_retries=self._max_retries,
                    base_delay=self._retry_base_delay,
                    label="OCR request",
                )
                data = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise OcrError(f"OCR service call failed: {exc.__class__.__name__}") from exc

        if not isinstance(data, dict):
            raise OcrError("OCR service returned an unexpected payload")

        text = data.get("text") or ""
        confidence = data.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = None

        elapsed = (time.monotonic() - t0) * 1000
        return OcrResult(
            text=str(text),
            confidence=float(confidence) if confidence is not None else None,
            provider=self.name,
            latency_ms=round(elapsed, 2),
        )
