from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import requests

from compliance_monitor.errors import SourceUnavailable

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


def retry_jitter_ms(*, key: str, attempt: int) -> int:
    seed = f"{key}:{attempt}".encode("utf-8")
    digest = hashlib.sha256(seed).digest()
    return int.from_bytes(digest[:2], byteorder="big") % 301


def retry_backoff_ms(*, key: str, attempt: int, base_ms: int, max_ms: int) -> int:
    normalized = max(1, int(attempt))
    base = max(0, int(base_ms))
    ceiling = max(base, int(max_ms))
    exponential = base * (2 ** (normalized - 1))
    return min(ceiling, exponential) + retry_jitter_ms(key=key, attempt=normalized)


class JsonHttpClient:
    """GET-only JSON client with a timeout on every call and bounded retries."""

    def __init__(
        self,
        *,
        session: Any | None = None,
        timeout_s: float = 20.0,
        retry_max: int = 2,
        backoff_base_ms: int = 500,
        backoff_max_ms: int = 8000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self.timeout_s = max(0.1, float(timeout_s))
        self.retry_max = max(0, int(retry_max))
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self._sleep = sleep

    def get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        source: str = "http",
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._get_once(url, params=params, headers=headers, source=source)
            except SourceUnavailable as exc:
                if not exc.retryable or attempt > self.retry_max:
                    raise
                delay_ms = retry_backoff_ms(
                    key=url,
                    attempt=attempt,
                    base_ms=self.backoff_base_ms,
                    max_ms=self.backoff_max_ms,
                )
                logger.warning(
                    "%s request failed (%s), retry %d/%d in %dms",
                    source,
                    exc.message,
                    attempt,
                    self.retry_max,
                    delay_ms,
                )
                self._sleep(delay_ms / 1000.0)

    def _get_once(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None,
        source: str,
    ) -> Any:
        try:
            resp = self._session.get(
                url,
                params=dict(params or {}),
                headers=dict(headers or {}),
                timeout=self.timeout_s,
            )
        except requests.Timeout as exc:
            raise SourceUnavailable(f"{source} timed out after {self.timeout_s}s", retryable=True) from exc
        except requests.RequestException as exc:
            raise SourceUnavailable(f"{source} unreachable: {type(exc).__name__}", retryable=True) from exc

        status = int(getattr(resp, "status_code", 0))
        if status >= 400:
            body = str(getattr(resp, "text", ""))[:200]
            raise SourceUnavailable(
                f"{source} HTTP {status}: {body}",
                retryable=status in _RETRYABLE_STATUS,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise SourceUnavailable(f"{source} returned invalid JSON", retryable=False) from exc
