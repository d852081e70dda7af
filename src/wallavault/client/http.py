"""HTTP execution: timeout, error classification and retry with backoff.

Every request to the wallabag server goes through ``HttpExecutor``. A
request is retried only when the failure is transient:

  retryable: timeout, connection/transport failure, HTTP 5xx, HTTP 429
  terminal:  any other 4xx, a 2xx response that is not JSON, a bad URL

Created: 2026-10-08
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from wallavault.exceptions import (
    ApiFormatError,
    HttpStatusError,
    InvalidServerUrlError,
    NetworkError,
    RequestTimeoutError,
    WallabagError,
)
from wallavault.models import ApiErrorBody

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: the n-th retry waits ``base_delay * 2**(n-1)``.

    ``max_attempts`` counts the first try, so 3 means at most two retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    jitter: bool = False

    def delay_for_retry(self, retry: int) -> float:
        delay = self.base_delay * 2 ** (retry - 1)
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        return attempt < self.max_attempts and is_retryable(error)


def is_retryable(error: Exception) -> bool:
    return isinstance(error, WallabagError) and bool(error.retryable)


def _status_error(response: httpx.Response) -> HttpStatusError:
    message = f"HTTP {response.status_code}: {response.reason_phrase}"
    body: dict[str, Any] | None = None
    if "application/json" in response.headers.get("content-type", ""):
        try:
            parsed = response.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed
            description = ApiErrorBody.model_validate(parsed).error_description
            if description:
                message = description
    return HttpStatusError(message, status=response.status_code, body=body)


class HttpExecutor:
    """Sends requests through a shared ``httpx.AsyncClient``.

    Args:
        client: The HTTP client. Not closed by the executor.
        timeout: Seconds before a single attempt is cancelled.
        policy: Retry policy.
        user_agent: Sent with every request.
        sleep: Awaitable used between attempts (replaceable in tests).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout: float = 30.0,
        policy: RetryPolicy | None = None,
        user_agent: str = "wallavault",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self.timeout = timeout
        self.policy = policy or RetryPolicy()
        self.user_agent = user_agent
        self._sleep = sleep

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises the last ``WallabagError`` once retries are exhausted or on
        the first terminal failure.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._send_once(method, url, headers=headers, **kwargs)
            except WallabagError as e:
                if not self.policy.should_retry(e, attempt):
                    raise
                delay = self.policy.delay_for_retry(attempt)
                logger.warning(
                    "%s %s failed (%s); retry %d/%d in %.1fs",
                    method,
                    url,
                    e,
                    attempt,
                    self.policy.max_attempts - 1,
                    delay,
                )
                await self._sleep(delay)

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        merged_headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        if headers:
            merged_headers.update(headers)

        try:
            async with asyncio.timeout(self.timeout):
                response = await self._client.request(
                    method, url, headers=merged_headers, **kwargs
                )
        except TimeoutError as e:
            raise RequestTimeoutError(
                f"Request to {url} timed out after {self.timeout:g}s"
            ) from e
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request to {url} timed out: {e}") from e
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise InvalidServerUrlError(f"Invalid server URL {url!r}: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Cannot reach {url}: {e or type(e).__name__}") from e

        if not response.is_success:
            raise _status_error(response)

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            raise ApiFormatError(
                f"Expected JSON from {url}, got {content_type or 'no content type'}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ApiFormatError(f"Invalid JSON from {url}: {e}") from e
