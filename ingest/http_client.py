import asyncio
import json
import logging
import random
from typing import Any, Dict, Optional, Tuple

import aiohttp

from api.metrics import metrics
from config import config


logger = logging.getLogger(__name__)

RETRYABLE_STATUS = 429


class HTTPStatusError(Exception):
    def __init__(self, status: int, url: str, body: str, payload: Any = None):
        self.status = status
        self.url = url
        self.body = body
        self.payload = payload
        super().__init__(f"HTTP {status} from {url}: {body[:200]}")

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status)


def is_retryable_status(status: int) -> bool:
    return status == RETRYABLE_STATUS or 500 <= status < 600


def backoff_delay(attempt: int, base: float, cap: float, jitter: float) -> float:
    return min(base * (2 ** attempt) + random.uniform(0, jitter), cap)


class JSONHTTPClient:
    """aiohttp session wrapper returning decoded JSON with bounded retries.

    429 and 5xx responses and connection errors are retried with exponential
    backoff; other error statuses raise HTTPStatusError straight away.
    """

    def __init__(
        self,
        name: str,
        base_url: str = '',
        default_headers: Optional[Dict[str, str]] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_cap: Optional[float] = None,
        backoff_jitter: Optional[float] = None,
        timeout_s: Optional[float] = None,
    ):
        http_cfg = config.section('http')
        self.name = name
        self.base_url = (base_url or '').rstrip('/')
        self.default_headers = dict(default_headers or {})
        self.max_attempts = max(1, int(max_attempts or http_cfg.get('max_attempts', 4)))
        self.backoff_base = float(backoff_base if backoff_base is not None else http_cfg.get('backoff_base_s', 0.5))
        self.backoff_cap = float(backoff_cap if backoff_cap is not None else http_cfg.get('backoff_cap_s', 8))
        self.backoff_jitter = float(
            backoff_jitter if backoff_jitter is not None else http_cfg.get('backoff_jitter_s', 0.25)
        )
        self.timeout_s = float(timeout_s or http_cfg.get('timeout_s', 15))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._sleep = asyncio.sleep

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                )
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    def url_for(self, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f"{self.base_url}{path}"

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Any, str]:
        session = await self._get_session()
        async with session.request(method, url, params=params, json=json_body, headers=headers) as resp:
            text = await resp.text()
            payload: Any = text
            if text:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            return resp.status, payload, text

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = self.url_for(path)
        merged = dict(self.default_headers)
        merged.update(headers or {})
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                status, payload, text = await self._send(
                    method.upper(), url, params=params, json_body=json_body, headers=merged
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc
                retry_reason = f"{type(exc).__name__}: {exc}"
            else:
                if status < 400:
                    return payload
                error = HTTPStatusError(status, url, text, payload)
                if not error.retryable:
                    raise error
                last_error = error
                retry_reason = f"status {status}"

            if attempt + 1 >= self.max_attempts:
                break
            delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap, self.backoff_jitter)
            logger.warning(
                "%s %s %s failed (%s); retry %s/%s in %.2fs",
                self.name,
                method.upper(),
                path,
                retry_reason,
                attempt + 1,
                self.max_attempts - 1,
                delay,
            )
            metrics.record_http_retry(self.name)
            await self._sleep(delay)

        logger.error("%s %s %s gave up after %s attempts", self.name, method.upper(), path, self.max_attempts)
        raise last_error

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.request('GET', path, params=params, headers=headers)

    async def post(self, path: str, json_body: Any = None, headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.request('POST', path, json_body=json_body, headers=headers)
