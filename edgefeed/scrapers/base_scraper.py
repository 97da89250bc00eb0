from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from edgefeed.config.settings import settings
from edgefeed.utils.cancellation import CancellationToken, run_cancellable

# Define common HTTP status codes that warrant a retry
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class NetworkError(Exception):
    """Transient transport or HTTP failure talking to the odds provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AuthenticationError(NetworkError):
    """Exception raised for authentication failures (401, 403)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, retryable=False)


class RateLimitError(NetworkError):
    """Exception raised for rate limit errors (429)."""

    def __init__(self, message: str, retry_after: Optional[str] = None):
        super().__init__(message, status_code=429, retryable=True)
        self.retry_after = retry_after


class BaseScraper(ABC):
    """Abstract base class for odds provider clients.

    Requests are single attempts. Retrying is left to the fetch cache so that
    coalesced callers share one retry schedule.
    """

    provider: str = "unknown"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout),
            follow_redirects=True,
            headers={"Accept": "application/json"},
        )

    @abstractmethod
    async def fetch_odds(
        self,
        sports: List[str],
        markets: List[str],
        token: Optional[CancellationToken] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch raw odds payloads for the specified sports and markets.

        Args:
            sports: Provider sport keys to fetch.
            markets: Provider market keys to request.
            token: Cancellation token checked around every request.

        Returns:
            A list of raw event dictionaries in the provider's shape.
        """
        pass

    async def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> httpx.Response:
        """Makes one HTTP request and maps failures onto NetworkError."""
        if token is not None:
            token.raise_if_cancelled()
        logger.debug(f"Making {method} request to {url}")
        try:
            response = await run_cancellable(
                self.client.request(method, url, params=params, headers=headers),
                token,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout talking to {self.provider} at {url}: {e}")
            raise NetworkError(f"Timeout: {e}") from e
        except httpx.RequestError as e:
            logger.warning(f"Request error for {self.provider}: {e}")
            raise NetworkError(f"Request error: {e}") from e

        if token is not None:
            token.raise_if_cancelled()

        if response.status_code in {401, 403}:
            logger.warning(
                f"Authentication error ({response.status_code}) for {self.provider}. Check the API key."
            )
            raise AuthenticationError(
                f"Authentication failed ({response.status_code}) for {self.provider}",
                status_code=response.status_code,
            )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning(
                f"Rate limit hit (429) for {self.provider}. Retry-After: {retry_after}"
            )
            raise RateLimitError(f"Rate limited by {self.provider}", retry_after)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            retryable = status in RETRYABLE_STATUS_CODES
            log = logger.warning if retryable else logger.error
            log(f"HTTP error from {self.provider}: {status}")
            raise NetworkError(
                f"HTTP error: {status}", status_code=status, retryable=retryable
            ) from e

        logger.debug(f"Request successful: {response.status_code} for {url}")
        return response

    async def close(self):
        """Closes the underlying HTTP client if this scraper created it."""
        if self._owns_client:
            await self.client.aclose()
            logger.info(f"Closed HTTP client for {self.provider}")
