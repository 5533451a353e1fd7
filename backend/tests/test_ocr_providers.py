import json

import httpx
import pytest

from slipcheck.services.ocr import MockOcrProvider, OcrError, get_ocr_provider
from slipcheck.services.ocr.http_provider import HttpOcrProvider


def _provider(handler, **kwargs):
    kwargs.setdefault("retry_base_delay", 0)
    return HttpOcrProvider(
        "http://ocr.test/extract",
        api_key="k-123",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_http_provider_returns_text_and_confidence():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.content
        return httpx.Response(200, json={"text": "Bank Transfer 100.00", "confidence": 88.5})

    result = await _provider(handler).extract(b"png-bytes", content_type="image/png")
    assert result.text == "Bank Transfer 100.00"
    assert result.confidence == 88.5
    assert result.provider == "http"
    assert seen["auth"] == "Bearer k-123"
    assert b"png-bytes" in seen["body"]


@pytest.mark.asyncio
async def test_http_provider_retries_server_errors():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"text": "ok", "confidence": 70})

    result = await _provider(handler, max_retries=2).extract(b"x")
    assert result.text == "ok"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_http_provider_wraps_exhausted_retries_in_ocr_error():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(OcrError):
        await _provider(handler, max_retries=2).extract(b"x")
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_http_provider_does_not_retry_client_errors():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(422, json={"detail": "unsupported"})

    with pytest.raises(OcrError):
        await _provider(handler).extract(b"x")
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_http_provider_rejects_non_json_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>", headers={"content-type": "text/html"})

    with pytest.raises(OcrError):
        await _provider(handler).extract(b"x")


@pytest.mark.asyncio
async def test_http_provider_ignores_non_numeric_confidence():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=json.dumps({"text": "t", "confidence": "high"}).encode())

    result = await _provider(handler).extract(b"x")
    assert result.confidence is None


@pytest.mark.asyncio
async def test_mock_provider_decodes_bytes():
    result = await MockOcrProvider(confidence=77).extract("Bank ☺".encode("utf-8"))
    assert result.text == "Bank ☺"
    assert result.confidence == 77


def test_factory_falls_back_to_mock_without_service_url(monkeypatch):
    monkeypatch.setenv("OCR_PROVIDER", "http")
    monkeypatch.delenv("OCR_SERVICE_URL", raising=False)
    assert isinstance(get_ocr_provider(), MockOcrProvider)


def test_factory_builds_http_provider(monkeypatch):
    monkeypatch.setenv("OCR_PROVIDER", "HTTP")
    monkeypatch.setenv("OCR_SERVICE_URL", "http://ocr.test/extract")
    assert isinstance(get_ocr_provider(), HttpOcrProvider)
