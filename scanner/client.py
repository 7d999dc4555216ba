import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class AttendanceClient:
    """
    Member-side HTTP client for the attendance API.

    Attendance decisions come back as JSON bodies carrying a "code" field,
    even when the HTTP status is 4xx; those are returned as-is. Anything
    else that is not a 2xx (expired token, 5xx) raises httpx.HTTPStatusError.
    """

    def __init__(
        self,
        base_url: str = "",
        token: str | None = None,
        *,
        timeout: float = 5.0,
        http_client: httpx.Client | None = None,
    ):
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self._http.request(method, path, headers=self._headers, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and "code" in body:
            body["http_status"] = response.status_code
            return body

        response.raise_for_status()
        return body

    def submit_check_in(self, qr_data: str) -> dict:
        logger.debug("Submitting check-in payload (%d chars)", len(qr_data))
        return self._request("POST", "/member/attendance/scan", json={"qr_data": qr_data})

    def submit_check_out(self) -> dict:
        return self._request("POST", "/member/attendance/checkout")

    def today_status(self) -> dict:
        return self._request("GET", "/member/attendance/today")

    def history(self, days: int = 30) -> list[dict]:
        return self._request("GET", "/member/attendance/history", params={"days": days})
