"""
HTTP client for the GeoPulse marker API
"""
import logging
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """A marker API call failed (HTTP error or transport failure)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MarkerApiClient:
    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _error_message(self, response: requests.Response, fallback: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return fallback
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return fallback

    def _call(self, method: str, path: str, fallback: str, **kwargs) -> Dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Error calling {method} {url}: {e}")
            raise ApiError(fallback) from e

        if not response.ok:
            message = self._error_message(response, fallback)
            logger.warning(f"{method} {path} failed: {response.status_code} - {message}")
            raise ApiError(message, response.status_code)

        # A proxy or captive portal can answer 200 with HTML
        try:
            body = response.json()
        except ValueError as e:
            logger.warning(f"{method} {path} returned a non-JSON body")
            raise ApiError(fallback, response.status_code) from e
        if not isinstance(body, dict):
            logger.warning(f"{method} {path} returned an unexpected body: {type(body).__name__}")
            raise ApiError(fallback, response.status_code)
        return body

    def get_markers(self, version: Optional[int] = None) -> List[Dict]:
        """All live markers, newest first, optionally for one campaign version."""
        params = {}
        if version is not None and version != "":
            params["version"] = version
        # The list endpoint's error text is not shown to users
        try:
            body = self._call("GET", "/api/markers", "Failed to fetch markers", params=params)
        except ApiError as e:
            raise ApiError("Failed to fetch markers", e.status_code) from e
        return body.get("data") or []

    def save_marker(
        self,
        marker_id: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        sentiment: Optional[str] = None,
        comment: Optional[str] = None,
        version: Optional[int] = None,
    ) -> Dict:
        """Create a marker, or update sentiment/comment when marker_id is given."""
        payload = {
            "id": marker_id,
            "latitude": latitude,
            "longitude": longitude,
            "sentiment": sentiment,
            "comment": comment,
            "version": version,
        }
        payload = {k: v for k, v in payload.items() if v is not None}
        body = self._call("POST", "/api/save-marker", "Failed to save marker", json=payload)
        return body.get("data") or {}

    def delete_marker(self, marker_id: str) -> Dict:
        return self._call("POST", "/api/delete-marker", "Failed to delete marker", json={"id": marker_id})

    def health(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/api/health", timeout=self.timeout)
        except requests.exceptions.RequestException:
            return False
        return response.status_code == 200
