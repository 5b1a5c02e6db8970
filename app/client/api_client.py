"""
HTTP transport for the sync server.

Any object with a requests-style ``request(method, url, ...)`` works as the
underlying HTTP client; by default a ``requests.Session`` is used.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .config import DEFAULT_SERVER_URL, REQUEST_TIMEOUT_SECONDS
from .errors import TransientNetworkError, error_from_response

logger = logging.getLogger(__name__)


class SyncApiClient:
    def __init__(self, base_url: str = DEFAULT_SERVER_URL, http=None, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.http = http if http is not None else requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/api{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransientNetworkError(str(e)) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not 200 <= response.status_code < 300:
            if not isinstance(payload, dict):
                payload = {}
            raise error_from_response(response.status_code, payload)
        return payload

    def create_profile(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/profile/create", json=body)

    def get_profile(self, profile_id: str, password_hash: str) -> Dict[str, Any]:
        return self._request("GET", f"/profile/{profile_id}", params={"password_hash": password_hash})

    def delete_profile(self, profile_id: str, password_hash: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/profile/{profile_id}", params={"password_hash": password_hash})

    def get_share(self, profile_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/share/{profile_id}")

    def get_status(
        self,
        profile_id: str,
        diffs_hash: Optional[str] = None,
        stars_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {k: v for k, v in (("diffs_hash", diffs_hash), ("stars_hash", stars_hash)) if v}
        return self._request("GET", f"/profile/{profile_id}/status", params=params)

    def get_content(
        self,
        profile_id: str,
        password_hash: str,
        diffs_hash: Optional[str] = None,
        stars_hash: Optional[str] = None,
        keys_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._request("POST", f"/profile/{profile_id}/content", json={
            "password_hash": password_hash,
            "diffs_hash": diffs_hash,
            "stars_hash": stars_hash,
            "keys_hash": keys_hash,
        })

    def sync(self, profile_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/profile/{profile_id}/sync", json=body)

    def change_password(self, profile_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/profile/{profile_id}/password", json=body)

    def get_public_diff(self, diff_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/diff/{diff_id}/public")

