import httpx
import pytest

from slipcheck.utils.retry import compute_backoff, is_transient_http_error, with_retries


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://ocr.test/extract")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


def test_transient_errors():
    request = httpx.Request("GET", "http://ocr.test")
    assert is_transient_http_error(httpx.ConnectError("down", request=request)) is True
    assert is_transient_http_error(httpx.ReadTimeout("slow", request=request)) is True
    assert is_transient_http_error(_status_error(503)) is True
    assert is_transient_http_error(_status_error(500)) is True
    assert is_transient_http_error(_status_error(404)) is False
    assert is_transient_http_error(_status_error(422)) is False
    assert is_transient_http_error(ValueError("bad json")) is False


def test_compute_backoff_doubles():
    assert compute_backoff(1, 0.5) == 0.5
    assert compute_backoff(2, 0.5) == 1.0
    assert compute_backoff(3, 0.5) == 2.0


class _Flaky:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.calls = 0
        self.result = result

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_with_retries_recovers_from_transient_errors():
    call = _Flaky([_status_error(502), _status_error(503)])
    sleep = _Sleeps()
    assert await with_retries(call, max_retries=2, base_delay=0.5, sleep=sleep) == "ok"
    assert call.calls == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_with_retries_gives_up_after_max_retries():
    call = _Flaky([_status_error(500)] * 3)
    sleep = _Sleeps()
    with pytest.raises(httpx.HTTPStatusError):
        await with_retries(call, max_retries=2, base_delay=0.1, sleep=sleep)
    assert call.calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_with_retries_does_not_retry_client_errors():
    call = _Flaky([_status_error(400)])
    sleep = _Sleeps()
    with pytest.raises(httpx.HTTPStatusError):
        await with_retries(call, max_retries=2, sleep=sleep)
    assert call.calls == 1
    assert sleep.delays == []
