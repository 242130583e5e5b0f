from __future__ import annotations

import asyncio
import random
from typing import Any, Mapping, Optional

import httpx
from loguru import logger


class JsonHttpClient:
    """
    Async JSON client shared by the venue funding feeds.

    Returns the decoded body, or None once the request is given up on; httpx
    request errors never reach the caller. Timeouts, connection/proxy errors,
    429 and 5xx are retried with capped exponential backoff and jitter. Other
    4xx, redirect loops, bad URLs and undecodable bodies fail at once.
    """

    def __init__(
        self,
        base_url: str,
        name: str,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_cap_seconds: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.timeout_seconds = float(timeout_seconds)
        self.retry_attempts = max(1, int(retry_attempts))
        self.backoff_base_seconds = float(backoff_base_seconds)
        self.backoff_cap_seconds = float(backoff_cap_seconds)

        limits = httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
            keepalive_expiry=30.0,
        )

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=httpx.Timeout(self.timeout_seconds),
            limits=limits,
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _sleep_seconds(self, attempt: int) -> float:
        # exponential backoff + jitter
        base = self.backoff_base_seconds * (2 ** (attempt - 1))
        base = min(self.backoff_cap_seconds, base)
        jitter = 0.8 + 0.4 * random.random()  # 0.8..1.2
        return base * jitter

    @staticmethod
    def _should_retry_status(code: int) -> bool:
        # retry: rate limit or server errors
        return code == 429 or 500 <= code <= 599

    async def get_json(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Optional[Any]:
        return await self._request("GET", path, params=params)

    async def post_json(self, path: str, payload: Mapping[str, Any]) -> Optional[Any]:
        return await self._request("POST", path, json=dict(payload))

    async def _request(self, method: str, path: str, **kwargs: Any) -> Optional[Any]:
        last_err: Optional[str] = None

        for attempt in range(1, self.retry_attempts + 1):
            tries = f"attempt={attempt}/{self.retry_attempts}"
            try:
                resp = await self._client.request(method, path, **kwargs)

                if resp.status_code >= 400:
                    if not self._should_retry_status(resp.status_code):
                        logger.error(f"HTTP_REJECTED | client={self.name} {method} {path} status={resp.status_code} {tries}")
                        return None
                    last_err = f"HTTP {resp.status_code}"
                    logger.warning(f"HTTP_RETRY | client={self.name} {method} {path} status={resp.status_code} {tries}")
                else:
                    try:
                        return resp.json()
                    except ValueError as e:
                        last_err = f"json-decode:{type(e).__name__}"
                        logger.warning(f"HTTP_RETRY | client={self.name} {method} {path} err={last_err} {tries}")

            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError, httpx.ProxyError) as e:
                last_err = type(e).__name__
                logger.warning(f"HTTP_RETRY | client={self.name} {method} {path} err={last_err} {tries}")
            except httpx.RequestError as e:
                # not transient; another attempt gets the same answer
                logger.error(f"HTTP_FAILED | client={self.name} {method} {path} err={type(e).__name__}: {e} {tries}")
                return None

            if attempt < self.retry_attempts:
                await asyncio.sleep(self._sleep_seconds(attempt))

        logger.error(f"HTTP_GAVE_UP | client={self.name} {method} {path} last_err={last_err} attempts={self.retry_attempts}")
        return None
