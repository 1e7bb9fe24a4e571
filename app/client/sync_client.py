"""
HTTP client for the sync job API.

Wraps a requests.Session with the caller's user id. The stored-emails list
is cached until `invalidate_emails()` is called, so consumers refetch only
after a sync actually changed something.
"""

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class SyncClientError(Exception):
    """Transport failure or non-2xx response from the API."""

    def __init__(self, message: str, status_code: int = None, payload: dict = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


class SyncApiClient:
    def __init__(self, base_url: str, user_id: str, session: requests.Session = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session = session or requests.Session()
        self.timeout = timeout
        self._emails_cache = {}

    def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = kwargs.pop("headers", {})
        headers.setdefault("Accept", "application/json")
        headers["X-User-Id"] = self.user_id

        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise SyncClientError(f"{method} {path} failed: {e}")

        if not response.ok:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            detail = payload.get("detail") if isinstance(payload, dict) else None
            raise SyncClientError(
                f"{method} {path} returned {response.status_code}: {detail or response.reason}",
                status_code=response.status_code,
                payload=payload if isinstance(payload, dict) else {}
            )

        return response.json()

    # ============ JOBS ============

    def start_sync(self, query: str = None, cursor: str = None, max_results: int = None) -> str:
        """Start a sync job; returns its id."""
        body = {k: v for k, v in {"query": query, "cursor": cursor, "max_results": max_results}.items() if v is not None}
        return self._request("POST", "/api/v1/sync", json=body)["job_id"]

    def start_reprocess(self) -> str:
        return self._request("POST", "/api/v1/reprocess")["job_id"]

    def get_job(self, job_id: str) -> dict:
        return self._request("GET", f"/api/v1/sync/{job_id}")

    # ============ EMAILS ============

    def list_emails(self, limit: int = 50, offset: int = 0, category: Optional[str] = None) -> dict:
        key = (limit, offset, category)
        if key not in self._emails_cache:
            params = {"limit": limit, "offset": offset}
            if category:
                params["category"] = category
            self._emails_cache[key] = self._request("GET", "/api/v1/emails", params=params)
        return self._emails_cache[key]

    def invalidate_emails(self) -> None:
        self._emails_cache.clear()
