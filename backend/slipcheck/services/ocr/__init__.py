"""OCR collaborator factory: returns the configured provider or falls back to mock."""

from __future__ import annotations

import logging

from slipcheck.core.config import get_settings

from .base import OcrError, OcrProvider, OcrResult
from .mock import MockOcrProvider

logger = logging.getLogger(__name__)

__all__ = ["get_ocr_provider", "OcrError", "OcrProvider", "OcrResult", "MockOcrProvider"]


def get_ocr_provider() -> OcrProvider:
    settings = get_settings()
    name = settings.ocr_provider

    if name == "http":
        if not settings.ocr_service_url:
            logger.warning("OCR_SERVICE_URL not set, falling back to mock")
            return MockOcrProvider(confidence=settings.ocr_mock_confidence)
        from .http_provider import HttpOcrProvider

        return HttpOcrProvider(
            settings.ocr_service_url,
            api_key=settings.ocr_api_key,
            timeout_seconds=settings.ocr_timeout_seconds,
            max_retries=settings.ocr_max_retries,
            retry_base_delay=settings.ocr_retry_base_delay_seconds,
        )

    if name != "mock":
        logger.warning("Unknown OCR provider %r, falling back to mock", name)
    return MockOcrProvider(confidence=settings.ocr_mock_confidence)
