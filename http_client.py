from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import requests

from settings import DEFAULT_REQUEST_TIMEOUT_MS, __version__


logger = logging.getLogger(__name__)

USER_AGENT = f"snapbundle/{__version__}"
DEFAULT_MIN_BACKOFF_MS = 1000
TERMINAL_REQUEST_EXCEPTIONS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
)


class RequestError(RuntimeError):
    def __init__(self, message: str, url: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RequestTimeout(RequestError, TimeoutError):
    pass


class RequestConnectionError(RequestError):
    pass


class HTTPStatusError(RequestError):
    def __init__(self, message: str, url: str, status_code: int, body: str = "") -> None:
        super().__init__(message, url, status_code)
        self.body = body

    @property
    def retryable(self) -> bool:
        return int(self.status_code or 0) >= 500


class RetryExhaustedError(RequestError):
    def __init__(self, url: str, attempts: int, last_error: RequestError) -> None:
        super().__init__(
            f"Giving up on {url} after {attempts} attempts: {last_error}",
            url,
            last_error.status_code,
        )
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class FilePart:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class RequestSpec:
    """One logical HTTP call. Bodies are rebuilt from it on every attempt."""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    json_body: Optional[object] = None
    form_fields: Optional[Dict[str, Optional[str]]] = None
    file_parts: Optional[Dict[str, FilePart]] = None
    auth: Optional[Tuple[str, str]] = None

    def __post_init__(self) -> None:
        if self.json_body is not None and (self.form_fields is not None or self.file_parts):
            raise ValueError("json_body cannot be combined with form_fields or file_parts")

    def request_kwargs(self) -> Dict[str, object]:
        kwargs: Dict[str, object] = {"headers": {"User-Agent": USER_AGENT, **self.headers}}
        if self.auth:
            kwargs["auth"] = self.auth
        fields = {key: value for key, value in (self.form_fields or {}).items() if value is not None}
        if self.file_parts:
            kwargs["files"] = {
                key: (part.filename, part.content, part.content_type) for key, part in self.file_parts.items()
            }
            if fields:
                kwargs["data"] = fields
        elif self.form_fields is not None:
            kwargs["data"] = fields
        elif self.json_body is not None:
            kwargs["json"] = self.json_body
        return kwargs


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: Optional[int] = None
    min_backoff_ms: Optional[int] = None
    max_backoff_ms: Optional[int] = None
    timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS

    @property
    def attempts(self) -> int:
        # 0 or unset still means one attempt
        return max(1, int(self.max_attempts or 0))

    def backoff_seconds(self, failed_attempts: int) -> float:
        minimum = DEFAULT_MIN_BACKOFF_MS if self.min_backoff_ms is None else max(0, self.min_backoff_ms)
        delay = minimum * (2 ** max(0, failed_attempts - 1))
        if self.max_backoff_ms is not None:
            delay = max(minimum, min(delay, self.max_backoff_ms))
        return delay / 1000.0


class RequestExecutor:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self._sleep = sleep

    def execute(self, spec: RequestSpec, policy: Optional[RetryPolicy] = None) -> requests.Response:
        policy = policy or RetryPolicy()
        attempts = policy.attempts
        last_exc: Optional[RequestError] = None

        for attempt in range(1, attempts + 1):
            try:
                return self._attempt(spec, policy)
            except HTTPStatusError as exc:
                if not exc.retryable:
                    raise
                last_exc = exc
            except (RequestTimeout, RequestConnectionError) as exc:
                last_exc = exc

            if attempt < attempts:
                delay = policy.backoff_seconds(attempt)
                logger.warning(
                    "Failed %s %s (attempt %d/%d), retrying in %.2fs: %s",
                    spec.method,
                    spec.url,
                    attempt,
                    attempts,
                    delay,
                    last_exc,
                )
                self._sleep(delay)

        if last_exc is None:
            raise RequestError(f"Request to {spec.method} {spec.url} failed", spec.url)
        if attempts == 1:
            raise last_exc
        raise RetryExhaustedError(spec.url, attempts, last_exc) from last_exc

    def _attempt(self, spec: RequestSpec, policy: RetryPolicy) -> requests.Response:
        started = time.monotonic()
        try:
            response = self.session.request(
                spec.method,
                spec.url,
                timeout=policy.timeout_ms / 1000.0,
                **spec.request_kwargs(),
            )
        except requests.Timeout as exc:
            raise RequestTimeout(
                f"Timeout when fetching {spec.url} using method {spec.method} (took {self._took_ms(started)} ms)",
                spec.url,
            ) from exc
        except TERMINAL_REQUEST_EXCEPTIONS as exc:
            raise RequestError(f"Invalid request to {spec.url}: {exc}", spec.url) from exc
        except requests.RequestException as exc:
            raise RequestConnectionError(f"{exc} (took {self._took_ms(started)} ms)", spec.url) from exc

        status = int(response.status_code)
        if status >= 400:
            body = response.text
            raise HTTPStatusError(
                f"Request to {spec.method} {spec.url} failed: {status} - {body}",
                spec.url,
                status,
                body=body,
            )
        return response

    def _took_ms(self, started: float) -> int:
        return int((time.monotonic() - started) * 1000)
