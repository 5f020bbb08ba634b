"""Extractor for the Bubble Data API."""

import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from .base import BaseExtractor, Page
from ..errors import LegacyApiError, PaginationError, TransientIOError
from ..models.migration import MigrationConfig
from ..models.record import LegacyRecord
from ..services.retry import RetryPolicy
from ..services.validator import parse_datetime

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


class BubbleExtractor(BaseExtractor):
    """
    Extractor for Bubble's Data API (``/api/1.1/obj/<type>``).

    Supports:
    - Cursor pagination (``cursor`` + ``limit``, ``remaining`` in the response)
    - Bearer token authentication
    - Bounded retry of timeouts, 429 and 5xx at the same cursor
    - Record counts and single-record lookups
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        page_delay: float = 0.05,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
        retry_statuses: Optional[List[int]] = None,
    ):
        """
        Initialize the Bubble extractor.

        Args:
            base_url: Application URL, e.g. https://myapp.bubbleapps.io
                (a ``/version-test`` suffix selects the test database)
            api_token: Data API token
            retry: Retry policy for transient failures
            timeout: Per-request timeout in seconds
            page_delay: Pause between pages, in seconds
            session: Custom requests session
            sleep: Sleep function (injectable for tests)
            retry_statuses: HTTP statuses treated as transient
        """
        super().__init__(page_delay=page_delay, sleep=sleep)
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.retry = retry or RetryPolicy(sleep=sleep)
        self.timeout = timeout
        self.retry_statuses = tuple(retry_statuses or RETRY_STATUSES)
        self._session = session or self._create_session()

    @classmethod
    def from_config(
        cls,
        config: MigrationConfig,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> "BubbleExtractor":
        return cls(
            base_url=config.bubble_api_url,
            api_token=config.bubble_api_token,
            retry=RetryPolicy.from_config(config.retry, sleep=sleep),
            timeout=config.request_timeout,
            page_delay=config.page_delay,
            session=session,
            sleep=sleep,
            retry_statuses=config.retry.retry_statuses,
        )

    def _create_session(self) -> requests.Session:
        """Create a requests session with authentication."""
        session = requests.Session()
        if self.api_token:
            session.headers["Authorization"] = f"Bearer {self.api_token}"
        session.headers["Content-Type"] = "application/json"
        return session

    def _url(self, entity_type: str, source_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/api/1.1/obj/{entity_type}"
        if source_id:
            url = f"{url}/{source_id}"
        return url

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Single GET; transient failures raise TransientIOError."""
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientIOError(f"GET {url}: {e}")

        if response.status_code in self.retry_statuses:
            raise TransientIOError(f"GET {url}: HTTP {response.status_code}", response.status_code)
        return response

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            raise LegacyApiError(
                f"Bubble API error {response.status_code}: {response.text[:200]}",
                response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise LegacyApiError(f"Bubble API returned invalid JSON: {e}", response.status_code)

    def fetch_page(self, entity_type: str, cursor: int, limit: int) -> Page:
        """Fetch one page, retrying transient failures at the same cursor."""
        url = self._url(entity_type)
        params = {"cursor": cursor, "limit": limit}

        try:
            body = self.retry.call(
                lambda: self._json(self._get(url, params)),
                description=f"GET {entity_type} cursor={cursor}",
            )
        except TransientIOError as e:
            raise PaginationError(entity_type, cursor, f"retries exhausted: {e}") from e

        data = body.get("response", {})
        results = data.get("results", [])
        return Page(
            records=[self.create_record(entity_type, item) for item in results],
            cursor=data.get("cursor", cursor),
            count=data.get("count", len(results)),
            remaining=data.get("remaining", 0),
        )

    def count(self, entity_type: str) -> int:
        """Total records: the ``count`` of a one-record page plus ``remaining``."""
        page = self.fetch_page(entity_type, 0, 1)
        return page.count + page.remaining

    def get(self, entity_type: str, source_id: str) -> Optional[LegacyRecord]:
        """Fetch one record by its Bubble ``_id``."""
        url = self._url(entity_type, source_id)

        def fetch():
            response = self._get(url)
            if response.status_code == 404:
                return None
            return self._json(response)

        try:
            body = self.retry.call(fetch, description=f"GET {entity_type}/{source_id}")
        except TransientIOError as e:
            raise LegacyApiError(f"Could not fetch {entity_type}/{source_id}: {e}") from e

        if body is None:
            logger.debug(f"{entity_type}/{source_id} not found in Bubble")
            return None
        return self.create_record(entity_type, body.get("response", {}))

    def create_record(self, entity_type: str, data: Dict[str, Any]) -> LegacyRecord:
        """Wrap a raw Bubble object as a LegacyRecord."""
        return LegacyRecord(
            entity_type=entity_type,
            source_id=str(data.get("_id") or ""),
            data=dict(data),
            created_at=self._timestamp(data.get("Created Date")),
            modified_at=self._timestamp(data.get("Modified Date")),
        )

    def _timestamp(self, value: Any):
        try:
            return parse_datetime(value)
        except (ValueError, TypeError, OverflowError):
            return None
