from __future__ import annotations

import logging
from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from deterministic_archive import Bundle
from http_client import (
    FilePart,
    HTTPStatusError,
    RequestError,
    RequestExecutor,
    RequestSpec,
    RetryPolicy,
)
from settings import Settings


logger = logging.getLogger(__name__)

UPLOAD_URL_PATH = "/api/images/{hash}/upload-url"
UPLOAD_PATH = "/api/images/{hash}"
CANCEL_JOB_PATH = "/api/jobs/{before_sha}/{after_sha}/cancel"
EXPECTED_CANCEL_ERRORS = ((409, "already completed"), (404, "no job found"))


class ServiceResponseError(RuntimeError):
    pass


def signed_upload_session(retries: int = 3) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        backoff_factor=0.8,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("PUT",),
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class ServiceClient:
    def __init__(
        self,
        settings: Settings,
        executor: Optional[RequestExecutor] = None,
        upload_session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings
        self.executor = executor or RequestExecutor()
        self.upload_session = upload_session or signed_upload_session()

    def api_request(
        self,
        path: str,
        method: str = "GET",
        json_body: Optional[object] = None,
        form_fields: Optional[Dict[str, Optional[str]]] = None,
        file_parts: Optional[Dict[str, FilePart]] = None,
        max_attempts: int = 0,
    ) -> Optional[Dict[str, object]]:
        auth = (self.settings.api_key, self.settings.api_secret) if self.settings.api_key else None
        spec = RequestSpec(
            url=f"{self.settings.endpoint}{path}",
            method=method,
            json_body=json_body,
            form_fields=form_fields,
            file_parts=file_parts,
            auth=auth,
        )
        policy = RetryPolicy(max_attempts=max_attempts, timeout_ms=self.settings.request_timeout_ms)
        response = self.executor.execute(spec, policy)
        if response.status_code == 204:
            return None
        try:
            result = response.json()
        except ValueError as exc:
            raise ServiceResponseError(f"Response from {spec.url} is not JSON: {exc}") from exc
        if not isinstance(result, dict):
            raise ServiceResponseError(f"Response from {spec.url} is not an object: {result!r}")
        return result

    def upload_bundle(self, bundle: Bundle) -> str:
        """Make sure the service has the bundle and return its remote path.

        Nothing is transferred when the service already knows the hash.
        """
        tag = self.settings.log_tag
        upload_info: Dict[str, object] = {}
        try:
            upload_info = self.api_request(UPLOAD_URL_PATH.format(hash=bundle.hash), max_attempts=3) or {}
        except RequestError as exc:
            if exc.status_code != 404:
                logger.warning(
                    "%sAssuming assets don't exist since we got error response: %s - %s",
                    tag,
                    exc.status_code,
                    exc,
                )

        existing = upload_info.get("path")
        if existing:
            logger.info(
                "%sReusing existing assets at %s (previously uploaded on %s)",
                tag,
                existing,
                upload_info.get("uploadedAt", "unknown date"),
            )
            return str(existing)

        signed_url = upload_info.get("signedUrl")
        if self.settings.signed_url_uploads and signed_url:
            return self._upload_signed(bundle, str(signed_url))
        return self._upload_direct(bundle)

    def cancel_job(
        self,
        before_sha: str,
        after_sha: str,
        status: str = "failure",
        link: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        try:
            self.api_request(
                CANCEL_JOB_PATH.format(before_sha=before_sha, after_sha=after_sha),
                method="POST",
                json_body={
                    "link": link,
                    "message": message,
                    "project": self.settings.project or None,
                    "status": status,
                },
                max_attempts=5,
            )
        except HTTPStatusError as exc:
            if not self._expected_cancel_error(exc):
                raise
            logger.error("%sSkipping cancellation of job %s..%s: %s", self.settings.log_tag, before_sha, after_sha, exc)
            return False
        return True

    def _expected_cancel_error(self, exc: HTTPStatusError) -> bool:
        body = (exc.body or str(exc)).lower()
        return any(exc.status_code == code and text in body for code, text in EXPECTED_CANCEL_ERRORS)

    def _upload_direct(self, bundle: Bundle) -> str:
        result = self.api_request(
            UPLOAD_PATH.format(hash=bundle.hash),
            method="POST",
            form_fields={"hash": bundle.hash},
            file_parts={"payload": FilePart("payload.zip", bundle.buffer, "application/zip")},
            max_attempts=3,
        )
        return self._require_path(result, "upload")

    def _upload_signed(self, bundle: Bundle, signed_url: str) -> str:
        try:
            response = self.upload_session.put(
                signed_url,
                data=bundle.buffer,
                headers={"Content-Type": "application/zip"},
                timeout=self.settings.request_timeout_ms / 1000.0,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            raise RequestError(f"Failed to upload assets to signed URL: {exc}", signed_url, status) from exc

        result = self.api_request(
            UPLOAD_URL_PATH.format(hash=bundle.hash) + "/finalize",
            method="POST",
            max_attempts=4,
        )
        return self._require_path(result, "finalize")

    def _require_path(self, result: Optional[Dict[str, object]], step: str) -> str:
        if not result or not result.get("path"):
            raise ServiceResponseError(f"The {step} response is missing path")
        return str(result["path"])
