"""Async client for the slip API, used by POS terminals and the website checkout.

Besides plain calls it carries the client-side contracts of the slip flow:
polling a slip until it leaves ``processing``, showing only the newest of
several in-flight validation results, and cleaning up preview files.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional, TypeVar

import httpx

from slipcheck.core.config import get_settings
from slipcheck.services.slip_lifecycle import should_keep_polling
from slipcheck.utils.retry import is_transient_http_error, with_retries

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SlipPollTimeout(RuntimeError):
    """The slip was still ``processing`` after the allowed number of polls."""


class SlipApiClient:
    """Thin wrapper over ``httpx.AsyncClient``.

    Reads and side-effect-free validations are retried on transport errors
    and 5xx responses. Writes are sent once.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    async def __aenter__(self) -> SlipApiClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, retry: bool, **kwargs: Any) -> Any:
        async def _send() -> httpx.Response:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response

        response = await with_retries(
            _send,
            max_retries=self._max_retries if retry else 0,
            base_delay=self._retry_base_delay,
            is_retryable=is_transient_http_error,
            sleep=self._sleep,
            label=f"{method} {path}",
        )
        return response.json()

    async def get_slip(self, slip_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/v1/slips/{slip_id}", retry=True)

    async def list_slips(self, **filters: Any) -> dict[str, Any]:
        params = {key: value for key, value in filters.items() if value is not None}
        return await self._request("GET", "/api/v1/slips", retry=True, params=params)

    async def update_slip(self, slip_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/api/v1/slips/{slip_id}", retry=False, json=payload)

    async def revalidate(self, slip_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/api/v1/slips/{slip_id}/revalidate", retry=False)

    async def upload_slip(
        self,
        content: bytes,
        *,
        filename: str,
        content_type: str,
        transaction_id: Optional[str] = None,
        expected_amount: Optional[str] = None,
        source: str = "pos",
    ) -> dict[str, Any]:
        data = {"source": source}
        if transaction_id:
            data["transaction_id"] = transaction_id
        if expected_amount is not None:
            data["expected_amount"] = str(expected_amount)
        return await self._request(
            "POST",
            "/api/v1/slips",
            retry=False,
            data=data,
            files={"slip": (filename, content, content_type)},
        )

    async def validate_slip(
        self,
        content: bytes,
        *,
        filename: str,
        content_type: str,
        reference: str,
        expected_amount: Optional[str] = None,
        persist: bool = False,
    ) -> dict[str, Any]:
        data = {"reference": reference, "persist": "true" if persist else "false"}
        if expected_amount is not None:
            data["expected_amount"] = str(expected_amount)
        return await self._request(
            "POST",
            "/api/v1/validate-slip",
            retry=not persist,
            data=data,
            files={"file": (filename, content, content_type)},
        )


async def poll_slip_until_settled(
    client: SlipApiClient,
    slip_id: str,
    *,
    interval: Optional[float] = None,
    max_polls: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_update: Optional[Callable[[dict[str, Any]], None]] = None,
) -> dict[str, Any]:
    """Re-fetch a slip every *interval* seconds while it is ``processing``.

    Returns the first snapshot in any other status and issues no further
    requests. Only reads; never changes the slip.
    Without an explicit *interval*, ``SLIP_POLL_INTERVAL_SECONDS`` applies.
    """
    if interval is None:
        interval = get_settings().slip_poll_interval_seconds
    polls = 0
    while True:
        slip = await client.get_slip(slip_id)
        polls += 1
        if on_update is not None:
            on_update(slip)
        if not should_keep_polling(slip.get("status")):
            logger.debug("Slip %s settled as %s after %s polls", slip_id, slip.get("status"), polls)
            return slip
        if max_polls is not None and polls >= max_polls:
            raise SlipPollTimeout(f"Slip {slip_id} still processing after {polls} polls")
        await sleep(interval)


class LatestVerdict:
    """Keeps only the result of the most recently started validation.

    Each call takes a ticket; a result that arrives for an older ticket is
    dropped, so a slow response can never replace a newer one.
    """

    def __init__(self) -> None:
        self._ticket = 0
        self.verdict: Optional[Any] = None

    def issue(self) -> int:
        self._ticket += 1
        return self._ticket

    def is_current(self, ticket: int) -> bool:
        return ticket == self._ticket

    def offer(self, ticket: int, verdict: Any) -> bool:
        if not self.is_current(ticket):
            logger.debug("Dropping stale verdict ticket=%s current=%s", ticket, self._ticket)
            return False
        self.verdict = verdict
        return True

    def clear(self) -> None:
        # Invalidates anything still in flight.
        self._ticket += 1
        self.verdict = None

    async def run(self, call: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Await *call* under a fresh ticket. Returns None if it was superseded meanwhile."""
        ticket = self.issue()
        result = await call()
        return result if self.offer(ticket, result) else None


class SlipPreviews:
    """Owns temporary preview files, one per slot.

    Showing a new file in a slot deletes the one it replaces. ``close``
    deletes everything still held.
    """

    def __init__(self, directory: Optional[str] = None) -> None:
        self._directory = directory
        self._handles: dict[str, Path] = {}

    def __enter__(self) -> SlipPreviews:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._handles)

    def get(self, slot: str = "current") -> Optional[Path]:
        return self._handles.get(slot)

    def show(self, content: bytes, *, suffix: str = "", slot: str = "current") -> Path:
        fd, name = tempfile.mkstemp(prefix="slip-preview-", suffix=suffix, dir=self._directory)
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        self.release(slot)
        path = Path(name)
        self._handles[slot] = path
        return path

    def release(self, slot: str = "current") -> None:
        path = self._handles.pop(slot, None)
        if path is None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def close(self) -> None:
        for slot in list(self._handles):
            self.release(slot)
