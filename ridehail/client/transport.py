"""
HTTP transport with retry and exponential backoff.

Classification
--------------
* **Retryable** -- connect / read / write / pool timeouts, DNS and
  connection failures, dropped connections, HTTP 5xx, HTTP 429.
* **Terminal**  -- any other 4xx, a body that is not JSON, a body that does
  not match the expected schema (``DecodeError``).

Retryable failures are retried up to ``max_attempts`` in total with a delay
of ``base_delay * 2**attempt`` (capped at ``max_delay``, optional jitter).
Only the last failure is surfaced, and only once attempts run out.
Terminal failures are raised on the first attempt.

Backoff waits are plain awaitables: cancelling the task that called
``send`` cancels the pending sleep with it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from ridehail.config import settings

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class TransportError(Exception):
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class RetryableTransportError(TransportError):
    retryable = True


class TerminalTransportError(TransportError):
    pass


class DecodeError(TerminalTransportError):
    """The server answered, but not with what the caller can use."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = settings.retry_max_attempts
    base_delay: float = settings.retry_base_delay_seconds
    max_delay: float = settings.retry_max_delay_seconds
    jitter: float = 0.0  # fraction of the delay added at random

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Wait before retry number *attempt* + 1 (``attempt`` is 0-based)."""
        delay = min(self.max_delay, self.base_delay * (2**attempt))
        if self.jitter:
            delay += (rng or random).uniform(0, delay * self.jitter)
        return delay


def _response_detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and "detail" in body:
        return body["detail"]
    return body


class TransportClient:
    def __init__(
        self,
        base_url: str = settings.api_base_url,
        *,
        policy: Optional[RetryPolicy] = None,
        timeout: float = settings.request_timeout_seconds,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )
        self._sleep = sleep
        self._rng = rng
        self.last_attempts = 0

    async def __aenter__(self) -> TransportClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Perform the request, retrying retryable failures; returns decoded JSON."""
        attempt = 0
        while True:
            self.last_attempts = attempt + 1
            try:
                return await self._send_once(method, path, json, params)
            except RetryableTransportError as exc:
                if self.last_attempts >= self.policy.max_attempts:
                    logger.error(
                        "%s %s gave up after %d attempts", method, path, self.last_attempts
                    )
                    raise
                delay = self.policy.delay_for(attempt, self._rng)
                logger.warning(
                    "%s %s failed (%s); retry %d/%d in %.2fs",
                    method,
                    path,
                    exc,
                    attempt + 1,
                    self.policy.max_attempts - 1,
                    delay,
                )
                await self._sleep(delay)
            attempt += 1

    async def _send_once(
        self,
        method: str,
        path: str,
        json: Any,
        params: Optional[dict[str, Any]],
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            raise RetryableTransportError(f"timeout: {exc!r}") from exc
        except (httpx.NetworkError, httpx.RemoteProtocolError) as exc:
            raise RetryableTransportError(f"connection failed: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise TerminalTransportError(f"transport error: {exc!r}") from exc

        status = response.status_code
        if status >= 500 or status == 429:
            raise RetryableTransportError(
                f"HTTP {status}", status_code=status, detail=_response_detail(response)
            )
        if status >= 400:
            raise TerminalTransportError(
                f"HTTP {status}", status_code=status, detail=_response_detail(response)
            )

        try:
            return response.json()
        except ValueError as exc:
            raise DecodeError("response is not valid JSON", status_code=status) from exc
