"""
http.py – Async HTTP client built on *aiohttp* with classified retries,
          transparent 429 / 5xx back-off and per-instance default headers.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import aiohttp

from ..clock import Clock
from ..errors import FatalError, RateLimitedError, TransientError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "mangadex-bot/1.0 (+https://github.com/mangadex-bot)"


class HttpClient:
    """
    Thin wrapper over *aiohttp.ClientSession* adding:

    * global & per-request headers (keeps user-agent in one place)
    * exponential back-off **with jitter** for 5xx / network errors
    * *Retry-After* aware waits for 429, on a separate budget
    * failures surfaced as TransientError / RateLimitedError / FatalError
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_rate_limit_waits: int = 3,
        rate_limit_delay: float = 60.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._external_session = session
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_rate_limit_waits = max_rate_limit_waits
        self._rate_limit_delay = rate_limit_delay
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._default_headers: Dict[str, str] = {"User-Agent": DEFAULT_USER_AGENT}
        self._clock = clock or Clock()

    # ---------------------------------------------- #
    # Session management
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None

    # ---------------------------------------------- #
    # Internal helpers
    @staticmethod
    def parse_retry_after(header_val: str | None) -> Optional[float]:
        """Return seconds given a Retry-After header value."""
        if not header_val:
            return None
        header_val = header_val.strip()
        # seconds
        try:
            return max(0.0, float(header_val))
        except ValueError:
            pass
        # HTTP-date
        try:
            retry_at = parsedate_to_datetime(header_val)
        except (TypeError, ValueError):
            return None
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())

    def backoff_delay(self, attempt: int) -> float:
        exponential = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
        jitter = random.uniform(0, self._base_delay)
        return exponential + jitter

    def _merge_headers(self, extra: Mapping[str, str] | None) -> Dict[str, str]:
        merged: Dict[str, str] = {**self._default_headers}
        if extra:
            merged.update(extra)
        return merged

    async def _request(
        self,
        method: str,
        url: str,
        *,
        retry_for_status: tuple[int, ...] = (408, 500, 502, 503, 504),
        **kwargs,
    ) -> aiohttp.ClientResponse:
        """Perform a request with retries; returns *aiohttp.ClientResponse*."""
        session = await self._ensure_session()

        headers = self._merge_headers(kwargs.pop("headers", None))
        kwargs["headers"] = headers

        attempt = 0
        rate_limit_waits = 0
        while True:
            try:
                resp = await session.request(method, url, **kwargs)
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                error: Exception = TransientError(f"{method} {url}: {str(e) or type(e).__name__}")
            else:
                if resp.status < 400:
                    return resp

                body = await resp.text()
                resp.release()
                if resp.status == 429:
                    retry_after = self.parse_retry_after(resp.headers.get("Retry-After"))
                    error = RateLimitedError(f"{method} {url}: rate limited", retry_after=retry_after)
                elif resp.status in retry_for_status:
                    error = TransientError(f"{method} {url}: retryable status {resp.status}")
                else:
                    # Client errors and auth failures will not fix themselves
                    logger.error("HTTP %s %s returned %d: %s", method, url, resp.status, body[:500])
                    raise FatalError(f"{method} {url}: status {resp.status}")

            if isinstance(error, RateLimitedError):
                rate_limit_waits += 1
                if rate_limit_waits > self._max_rate_limit_waits:
                    logger.error("HTTP %s %s still rate limited after %d waits", method, url, rate_limit_waits - 1)
                    raise error
                sleep_seconds = (
                    error.retry_after if error.retry_after is not None else self._rate_limit_delay
                )
                logger.warning(
                    "HTTP %s %s rate limited (wait %d/%d – retrying in %.1fs)",
                    method,
                    url,
                    rate_limit_waits,
                    self._max_rate_limit_waits,
                    sleep_seconds,
                )
            else:
                attempt += 1
                # final attempt – re-raise
                if attempt >= self._max_retries:
                    logger.error("HTTP %s %s failed after %d attempts: %s", method, url, attempt, error)
                    raise error
                sleep_seconds = self.backoff_delay(attempt)
                logger.warning(
                    "HTTP %s %s failed (attempt %d/%d – will retry in %.1fs): %s",
                    method,
                    url,
                    attempt,
                    self._max_retries,
                    sleep_seconds,
                    str(error).splitlines()[0],
                )

            await self._clock.sleep(sleep_seconds)

    # ---------------------------------------------- #
    # Public helpers
    async def get_json(self, url: str, **kwargs) -> Any:
        async with await self._request("GET", url, **kwargs) as resp:
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise FatalError(f"GET {url}: malformed JSON ({e})") from e

    async def post_json(self, url: str, data: Dict[str, Any] | Any, **kwargs) -> int:
        """POST a JSON body and return the response status."""
        kwargs["json"] = data
        async with await self._request("POST", url, **kwargs) as resp:
            return resp.status
