"""Retrying HTTP requests for the Buildkite REST API.

Buildkite answers 429 when the organization's request budget is spent and
says how long until it refills in the ``RateLimit-Reset`` header. Those waits
are honoured up to ``MAX_RATE_LIMIT_WAIT_SEC``; other failures wait
``RetryPolicy.sleep_sec`` between attempts.
"""

import logging
import time
from typing import Any

import httpx


logger = logging.getLogger(__name__)

# Client errors that will not change on a second attempt.
NON_RETRYABLE_STATUS = {400, 401, 403, 404, 410, 422}
RATE_LIMITED_STATUS = 429
MAX_RATE_LIMIT_WAIT_SEC = 60


class RetryPolicy:
    def __init__(self, attempts: int, sleep_sec: float):
        self.attempts = attempts
        self.sleep_sec = sleep_sec


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


def rate_limit_wait(response: httpx.Response, default: float) -> float:
    reset = response.headers.get("RateLimit-Reset")
    try:
        seconds = float(reset) if reset is not None else default
    except ValueError:
        return default
    return min(max(seconds, 0.0), MAX_RATE_LIMIT_WAIT_SEC)


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempt = 0
    while attempt < retry.attempts:
        attempt += 1
        wait_sec = retry.sleep_sec
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            body = (exc.response.text or "").strip()
            detail = (
                f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"
            )
            error_type = exc.__class__.__name__
            if status_code in NON_RETRYABLE_STATUS:
                break
            if status_code == RATE_LIMITED_STATUS:
                wait_sec = rate_limit_wait(exc.response, retry.sleep_sec)
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            logger.warning(
                "request attempt %s/%s failed: %s %s (%s)",
                attempt,
                retry.attempts,
                method,
                url,
                detail,
            )
            time.sleep(wait_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempt,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
