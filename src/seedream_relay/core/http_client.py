"""Retrying, timeout-bounded HTTP client for the upstream prediction API.

Every outbound call to Replicate goes through :class:`ResilientClient`.  It
wraps a shared ``httpx.AsyncClient`` and adds three things:

- **A wall-clock bound per attempt.**  ``asyncio.wait_for`` cancels the
  in-flight request once ``request_timeout_ms`` has elapsed.  httpx's own
  timeouts are per phase (connect, read...) and cannot bound a request that
  keeps trickling bytes, so the outer bound is applied on top.
- **Failure classification.**  Statuses 408, 429, 502, 503, 504 and timeouts
  are transient.  Every other non-2xx status and every other transport error
  is terminal and raised immediately.
- **Exponential backoff.**  Before retry ``n`` (0-based) the client sleeps
  ``min(base * 2**n, cap)`` milliseconds, for at most ``max_retries`` retries.

Errors carry the call *label* so a log line or client-facing error says which
upstream call failed (``official-predict``, ``model-info``, ``poll``...).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from .config import RelayConfig
from .errors import TerminalUpstreamError, TransientUpstreamError

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({408, 429, 502, 503, 504})

# Bodies are truncated to this many characters in log lines only.
LOG_BODY_LIMIT = 200


def backoff_delay_ms(attempt: int, base_ms: int, cap_ms: int) -> int:
    """Return the wait before retry *attempt* (0-based), in milliseconds."""
    return min(base_ms * (2**attempt), cap_ms)


def read_body(response: httpx.Response) -> tuple[str, Any]:
    """Return ``(raw_text, parsed_json)`` for *response*.

    ``parsed_json`` is ``None`` when the body is empty or not valid JSON.
    """
    raw = response.text
    try:
        return raw, response.json()
    except ValueError:
        return raw, None


class ResilientClient:
    """Upstream HTTP client with per-attempt timeout and transient retries.

    Args:
        http: Shared ``httpx.AsyncClient``.  Its lifecycle belongs to the
            caller (the FastAPI lifespan in production).
        token: Replicate credential sent as ``Authorization: Token ...``.
        timeout_ms: Wall-clock bound of one attempt.
        max_retries: Retries after the first attempt.
        backoff_base_ms: First backoff interval.
        backoff_cap_ms: Upper bound of any backoff interval.
        sleep: Coroutine used to wait between attempts.  Tests pass a
            recorder here instead of sleeping for real.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        token: str | None,
        timeout_ms: int = 60_000,
        max_retries: int = 4,
        backoff_base_ms: int = 1_000,
        backoff_cap_ms: int = 8_000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._token = token
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._sleep = sleep

    @classmethod
    def from_config(cls, http: httpx.AsyncClient, settings: RelayConfig) -> ResilientClient:
        return cls(
            http,
            token=settings.replicate_api_token,
            timeout_ms=settings.request_timeout_ms,
            max_retries=settings.max_retries,
            backoff_base_ms=settings.backoff_base_ms,
            backoff_cap_ms=settings.backoff_cap_ms,
        )

    def _headers(self, extra: dict[str, str] | None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Token {self._token}"
        if extra:
            headers.update(extra)
        return headers

    async def call(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        json: Any = None,
        label: str = "request",
    ) -> httpx.Response:
        """Perform one logical upstream request, retrying transient failures.

        Args:
            url: Absolute upstream URL.
            method: HTTP method.
            headers: Extra headers, merged over the authorization header.
            json: Optional JSON body.
            label: Name of the call site used in logs and errors.

        Returns:
            The first 2xx response.

        Raises:
            TerminalUpstreamError: Non-retryable status, transport error or
                unusable URL.
            TransientUpstreamError: Transient failures outlasted the retry
                budget.  Carries the last status and body seen.
        """
        request_headers = self._headers(headers)
        timeout_s = self.timeout_ms / 1000
        last_status: int | None = None
        last_body = ""
        last_detail = ""

        for attempt in range(self.max_retries + 1):
            try:
                response = await asyncio.wait_for(
                    self._http.request(method, url, headers=request_headers, json=json),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError:
                last_status, last_body = None, ""
                last_detail = f"timed out after {self.timeout_ms} ms"
            except httpx.TimeoutException as exc:
                last_status, last_body = None, ""
                last_detail = f"timeout: {exc}"
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise TerminalUpstreamError(label, f"{type(exc).__name__}: {exc}") from exc
            else:
                if response.is_success:
                    return response

                raw = response.text
                if response.status_code not in TRANSIENT_STATUSES:
                    raise TerminalUpstreamError(label, "request failed", status=response.status_code, body=raw)

                last_status, last_body = response.status_code, raw
                last_detail = f"{response.status_code}: {raw[:LOG_BODY_LIMIT]}"

            if attempt >= self.max_retries:
                break

            delay_ms = backoff_delay_ms(attempt, self.backoff_base_ms, self.backoff_cap_ms)
            logger.warning(
                "[%s] Retry %d/%d in %d ms after %s",
                label,
                attempt + 1,
                self.max_retries,
                delay_ms,
                last_detail,
            )
            await self._sleep(delay_ms / 1000)

        detail = f"gave up after {self.max_retries + 1} attempts"
        if last_status is None:
            detail = f"{detail}, {last_detail}"
        raise TransientUpstreamError(label, detail, status=last_status, body=last_body)
