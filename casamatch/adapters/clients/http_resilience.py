# casamatch/adapters/clients/http_resilience.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from ...config import settings

log = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


@dataclass
class _CircuitState:
    fails: int = 0
    opened_at: float | None = None


# one breaker per host: a dead geocoder must not block the listing sources
_CIRCUITS: dict[str, _CircuitState] = {}
_RATE_LOCK = asyncio.Lock()
_LAST_TS = 0.0


class CircuitOpen(httpx.HTTPError):
    pass


def _circuit(host: str) -> _CircuitState:
    return _CIRCUITS.setdefault(host, _CircuitState())


def _circuit_is_open(host: str, now: float) -> bool:
    st = _circuit(host)
    if st.opened_at is None:
        return False
    return (now - st.opened_at) < float(settings.HTTP_CIRCUIT_RESET_S)


def _circuit_on_success(host: str) -> None:
    st = _circuit(host)
    st.fails = 0
    st.opened_at = None


def _circuit_on_failure(host: str) -> None:
    st = _circuit(host)
    st.fails += 1
    if st.fails >= int(settings.HTTP_CIRCUIT_FAIL_THRESHOLD):
        if st.opened_at is None:
            log.warning("circuit opened for %s after %d failures", host, st.fails)
        st.opened_at = time.time()


def reset_circuits() -> None:
    _CIRCUITS.clear()


async def _rate_limit() -> None:
    """Very simple per-process limiter."""
    global _LAST_TS
    rps = float(settings.HTTP_RATE_LIMIT_RPS)
    if rps <= 0:
        return
    min_gap = 1.0 / rps
    async with _RATE_LOCK:
        now = time.time()
        wait = (_LAST_TS + min_gap) - now
        if wait > 0:
            await asyncio.sleep(wait)
        _LAST_TS = time.time()


async def resilient_request(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json: Any | None = None,
    timeout_s: float | None = None,
    max_retries: int | None = None,
) -> httpx.Response:
    """
    One external call with retries on 429/5xx/transport errors and capped exponential backoff.
    Raises the last httpx error when retries are exhausted; callers decide what a failure means.
    """
    host = urlsplit(url).netloc
    if _circuit_is_open(host, time.time()):
        raise CircuitOpen(f"circuit_open: refusing external call to {url}")

    await _rate_limit()

    timeout = httpx.Timeout(float(timeout_s if timeout_s is not None else settings.HTTP_TIMEOUT_S))
    retries = int(max_retries if max_retries is not None else settings.HTTP_MAX_RETRIES)
    backoff = float(settings.HTTP_BACKOFF_BASE_S)

    last_exc: Exception | None = None
    for attempt in range(retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                resp = await client.request(method, url, headers=headers, params=params, json=json)

            if resp.status_code in RETRYABLE_STATUS:
                raise httpx.HTTPStatusError("retryable_status", request=resp.request, response=resp)

            resp.raise_for_status()
            _circuit_on_success(host)
            return resp
        except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as e:
            last_exc = e
            if isinstance(e, httpx.HTTPStatusError) and e.response.status_code not in RETRYABLE_STATUS:
                # 4xx other than 429: retrying will not help
                raise
            _circuit_on_failure(host)
            if attempt >= retries:
                break
            await asyncio.sleep(min(5.0, backoff * (2**attempt)))

    assert last_exc is not None
    raise last_exc
