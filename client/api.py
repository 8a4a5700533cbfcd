"""
HTTP client for the sheet endpoints in flask_app.py.
"""

import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Request Timeout and Too Many Requests
RETRYABLE_STATUS_CODES = (408, 429)


class ApiError(Exception):
    """The API answered with an error, or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transport(self) -> bool:
        """Network failure, timeout, throttling or server-side 5xx; worth retrying."""
        return self.status_code is None or self.status_code in RETRYABLE_STATUS_CODES or self.status_code >= 500


class SheetsApiClient:
    """
    ``session`` carries the login cookie; pass one that is already signed in.
    """

    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ApiError(f"Could not reach {url}: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = body.get("error") if isinstance(body, dict) else None
            raise ApiError(message or f"HTTP {response.status_code}", status_code=response.status_code)
        return body

    def upload(self, file_bytes: bytes, filename: str, tests_to_generate: int = 3,
               test_type: str = "VOCABULARY", grade_level: Optional[int] = None,
               name: Optional[str] = None) -> Dict[str, Any]:
        form = {"tests_to_generate": str(tests_to_generate), "test_type": test_type}
        if grade_level is not None:
            form["grade_level"] = str(grade_level)
        if name:
            form["name"] = name
        return self._request("POST", "/api/sheets", files={"file": (filename, file_bytes)}, data=form)

    def get_sheet(self, sheet_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/sheets/{sheet_id}")["sheet"]

    def regenerate(self, sheet_id: str, force: bool = False) -> Dict[str, Any]:
        return self._request("POST", f"/api/sheets/{sheet_id}/regenerate", json={"force": force})

    def get_job(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/jobs/{job_id}")
