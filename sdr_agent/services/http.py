"""Shared ``httpx`` plumbing for the external REST clients.

All clients get the same failure policy: timeouts, connection errors and
5xx responses are retried with exponential backoff; 4xx responses are
raised immediately.  After ``MAX_RETRIES`` attempts the client's own
error class is raised with the last status code attached.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0


class ExternalAPIError(Exception):
    """Raised when an external API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RetryingClient:
    """Base class wrapping an ``httpx.Client`` with retries and metrics.

    Subclasses set ``service_name`` (metrics dimension) and ``error_class``.
    """

    service_name = "external"
    error_class: type[ExternalAPIError] = ExternalAPIError

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self._base_url = base_url
        self._client = httpx.Client(base_url=base_url, headers=headers or {}, timeout=timeout)

    def _auth_headers(self) -> dict[str, str]:
        """Per-request headers (e.g. short-lived bearer tokens)."""
        return {}

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path.split('?')[0]}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    data=data,
                    files=files,
                    headers=self._auth_headers(),
                )
                if response.status_code >= 500:
                    raise self.error_class(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise self.error_class(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    self.service_name, operation,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure(
                    self.service_name, operation, error_type=type(exc).__name__,
                )
                logger.warning(
                    "%s attempt %d/%d failed (%s). Retrying in %.1fs…",
                    self.service_name,
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except ExternalAPIError as exc:
                metrics.record_failure(
                    self.service_name, operation, error_type=f"http_{exc.status_code}",
                )
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "%s server error on attempt %d/%d. Retrying…",
                        self.service_name,
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        status_code = getattr(last_error, "status_code", None)
        raise self.error_class(
            f"{self.service_name} request failed after {MAX_RETRIES} retries: {last_error}",
            status_code=status_code,
        )

    def close(self) -> None:
        self._client.close()
