"""
Base HTTP client for the external collaborators (identity store, search provider).

Synchronous: the daemons are single-threaded periodic tasks and block on
network calls. Errors are classified into the identity quality taxonomy so
callers can tell transient outages from definitive answers.
"""
import logging
import random
import time
from typing import Any, Dict, Optional

import httpx

from identity_quality.core.errors import (
    IdentityQualityError,
    ProviderUnavailableError,
    classify_http_error,
)

logger = logging.getLogger(__name__)


class BaseAPIClient:
    """
    Base class for the external API clients.

    Provides unified:
    - HTTP request handling with optional retry on transient errors
    - Exponential backoff with jitter
    - Standardized error classification

    Subclasses should:
    - Set SOURCE_NAME
    - Implement API-specific methods that call _request()
    """

    # Override in subclass
    SOURCE_NAME: str = "unknown"

    DEFAULT_TIMEOUT: float = 30.0
    DEFAULT_CONNECT_TIMEOUT: float = 10.0
    DEFAULT_MAX_RETRIES: int = 1
    DEFAULT_BACKOFF_FACTOR: float = 2.0
    DEFAULT_MAX_BACKOFF: float = 60.0
    DEFAULT_JITTER_FACTOR: float = 0.25

    def __init__(
        self,
        base_url: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the API client.

        Args:
            base_url: Root URL of the collaborator API
            max_retries: Attempts per request (1 = no retry)
            backoff_factor: Exponential backoff multiplier
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = transport

        # HTTP client (lazy initialization)
        self._client: Optional[httpx.Client] = None

        logger.info(
            f"Initialized {self.SOURCE_NAME} client: "
            f"base_url={self.base_url}, max_retries={self.max_retries}"
        )

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client:
            self._client.close()
            self._client = None
            logger.debug(f"{self.SOURCE_NAME} client closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _backoff(self, attempt: int, base_delay: float = 1.0) -> None:
        """
        Exponential backoff with jitter.

        Args:
            attempt: Current attempt number (0-indexed)
            base_delay: Base delay in seconds
        """
        delay = min(base_delay * (self.backoff_factor ** attempt), self.DEFAULT_MAX_BACKOFF)
        jitter = delay * self.DEFAULT_JITTER_FACTOR * (2 * random.random() - 1)
        delay_with_jitter = max(0.1, delay + jitter)
        logger.debug(f"Backing off for {delay_with_jitter:.2f}s (attempt {attempt + 1})")
        time.sleep(delay_with_jitter)

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": f"identity-quality/{self.SOURCE_NAME}-client",
        }

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        resource_id: str = "unknown",
    ) -> Any:
        """
        Make HTTP request, retrying transient failures up to max_retries.

        Returns:
            Parsed JSON response (None for an empty body)

        Raises:
            ProviderUnavailableError: 5xx, 429, or network failure on the last attempt
            NotFoundError / ConflictError / ValidationError: Definitive HTTP answers
        """
        url = path if path.startswith("http") else f"{self.base_url}/{path.lstrip('/')}"
        client = self._get_client()

        for attempt in range(self.max_retries):
            last_attempt = attempt >= self.max_retries - 1
            try:
                logger.debug(
                    f"[{self.SOURCE_NAME}] {method} {resource_id} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                response = client.request(
                    method, url, params=params, json=json_body, headers=self._build_headers()
                )
                response.raise_for_status()
                if not response.content:
                    return None
                return response.json()

            except httpx.HTTPStatusError as e:
                error = classify_http_error(
                    e.response.status_code, e.response.text[:500], self.SOURCE_NAME
                )
                if error.retryable and not last_attempt:
                    logger.warning(f"[{self.SOURCE_NAME}] Retryable HTTP error: {error}")
                    self._backoff(attempt)
                    continue
                raise error

            except httpx.RequestError as e:
                # Network errors are retryable
                if not last_attempt:
                    logger.warning(
                        f"[{self.SOURCE_NAME}] Request error (attempt {attempt + 1}): {e}"
                    )
                    self._backoff(attempt)
                    continue
                raise ProviderUnavailableError(
                    message=f"Request failed: {str(e)}", source=self.SOURCE_NAME
                )

            except ValueError as e:
                raise IdentityQualityError(
                    message=f"Invalid JSON response: {str(e)}", source=self.SOURCE_NAME
                )

        raise ProviderUnavailableError(
            message=f"Failed to fetch {resource_id} after {self.max_retries} attempts",
            source=self.SOURCE_NAME,
        )

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, resource_id: str = "unknown") -> Any:
        return self._request("GET", path, params=params, resource_id=resource_id)

    def post(self, path: str, json_body: Any = None, resource_id: str = "unknown") -> Any:
        return self._request("POST", path, json_body=json_body, resource_id=resource_id)
