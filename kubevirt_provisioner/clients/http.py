import logging
import time
from typing import Any

import httpx


logger = logging.getLogger(__name__)


class RetryPolicy:
    """Transport-level retries; client errors (4xx) are never retried."""

    def __init__(self, attempts: int = 1, sleep_sec: float = 0):
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
        response_json: Any = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_json = response_json
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )

    @property
    def reason(self) -> str | None:
        """The ``reason`` of a Kubernetes ``Status`` body, when present."""
        if isinstance(self.response_json, dict):
            reason = self.response_json.get("reason")
            if isinstance(reason, str):
                return reason
        return None


def _status_detail(response: httpx.Response) -> tuple[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return f"HTTP {response.status_code}: {body['message'][:240]}", body
    text = (response.text or "").strip()
    detail = f"HTTP {response.status_code}: {text[:240]}" if text else f"HTTP {response.status_code}"
    return detail, body


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    error: Exception | None = None
    status_code: int | None = None
    response_json: Any = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempts = 0
    for attempt in range(1, retry.attempts + 1):
        attempts = attempt
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            detail, response_json = _status_detail(exc.response)
            error_type = exc.__class__.__name__
            if status_code < 500:
                break
        except httpx.RequestError as exc:
            error = exc
            status_code = None
            response_json = None
            detail = str(exc) or exc.__class__.__name__
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            logger.debug(
                "retrying request method=%s url=%s attempt=%s detail=%s",
                method,
                url,
                attempt,
                detail,
            )
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_json=response_json,
    ) from error
