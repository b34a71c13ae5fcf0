"""
CouchDB / Cloudant HTTP client for the changes follower.

Only the two calls the follower needs: one page of the changes feed and
database information. No retries here; the follower owns retry policy.
"""
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth

from ..config.settings import CouchSettings

logger = logging.getLogger(__name__)

# _changes parameters that go in the JSON body rather than the query string
BODY_PARAMS = ("doc_ids", "fields", "selector")


class CouchApiError(Exception):
    """HTTP error response from the server."""

    def __init__(self, status_code: int, error: Optional[str] = None, reason: Optional[str] = None):
        message = f"{status_code} {error or 'error'}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.reason = reason


class CouchClient:
    """Client for a CouchDB-compatible server."""

    def __init__(
        self,
        url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        verify_ssl: Optional[bool] = None,
        session: Optional[requests.Session] = None,
        settings: Optional[CouchSettings] = None
    ):
        """Initialize client.

        Explicit arguments win over settings; settings default to CouchSettings().

        Args:
            url: Server base URL
            username: Basic auth username
            password: Basic auth password
            timeout: Read timeout in seconds
            verify_ssl: Verify TLS certificates
            session: requests session to use (one is created if omitted)
            settings: Connection settings
        """
        settings = settings or CouchSettings()
        self.url = (url or settings.url).rstrip('/')
        self.timeout = timeout if timeout is not None else settings.timeout_seconds
        self.session = session or requests.Session()
        self.session.verify = settings.verify_ssl if verify_ssl is None else verify_ssl

        username = username or settings.username
        password = password or settings.password
        if username and password:
            self.session.auth = HTTPBasicAuth(username, password)

        self.session.headers.update({"Accept": "application/json"})

    def post_changes(self, db: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Request one page of the changes feed.

        Args:
            db: Database name
            params: Changes parameters (feed, since, limit, selector, ...)

        Returns:
            Decoded response body

        Raises:
            CouchApiError: On HTTP status >= 400
            requests.RequestException: On network failures
        """
        query: Dict[str, Any] = {}
        body: Dict[str, Any] = {}
        for key, value in params.items():
            if value is None:
                continue
            if key in BODY_PARAMS:
                body[key] = value
            else:
                query[key] = _query_value(value)

        if "filter" not in query:
            if "selector" in body:
                query["filter"] = "_selector"
            elif "doc_ids" in body:
                query["filter"] = "_doc_ids"

        return self._request("POST", f"/{quote(db, safe='')}/_changes", params=query, json=body)

    def get_database_information(self, db: str) -> Dict[str, Any]:
        """Fetch database information (doc_count, sizes, ...)."""
        return self._request("GET", f"/{quote(db, safe='')}")

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "CouchClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        url = f"{self.url}{path}"
        response = self.session.request(method, url, params=params, json=json, timeout=self.timeout)

        if response.status_code >= 400:
            error, reason = _error_details(response)
            logger.debug(
                f"{method} {path} failed with HTTP {response.status_code}",
                extra={"status_code": response.status_code, "error": error, "reason": reason}
            )
            raise CouchApiError(response.status_code, error, reason)

        return response.json()


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return value


def _error_details(response: requests.Response):
    try:
        payload = response.json()
    except ValueError:
        return None, response.text or None
    if not isinstance(payload, dict):
        return None, None
    return payload.get("error"), payload.get("reason")
