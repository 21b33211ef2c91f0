"""Shared HTTP plumbing for upstream source clients.

Key Design:
- Async HTTP with connection pooling (httpx.AsyncClient), created lazily
- Every request goes through the shared RateLimitedCache under the client's source key
- Retry with exponential backoff (tenacity), bounded by max_retries
- httpx errors map to SourceUnavailable, unparseable bodies to MalformedResponse
"""

import logging
from typing import Any, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from trialmatch.cache import CallResult, RateLimitedCache, get_default_cache
from trialmatch.config.settings import get_settings
from trialmatch.errors import MalformedResponse, SourceUnavailable

logger = logging.getLogger(__name__)


class SourceClient:
    """Base class for rate-limited, cached JSON API clients.

    Subclasses set SOURCE_KEY to the key used in ``sources.yaml``.
    """

    SOURCE_KEY = ""

    def __init__(
        self,
        cache: RateLimitedCache | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            cache: Shared cache/limiter; defaults to the process-wide instance
            timeout: Request timeout in seconds; defaults to the source config
            max_retries: Maximum attempts per request; defaults to settings
            retry_wait: tenacity wait strategy between attempts
        """
        self.cache = cache or get_default_cache()
        config = self.cache.source_config(self.SOURCE_KEY)
        self.base_url = config.base_url
        self.timeout = timeout if timeout is not None else config.timeout
        self.max_retries = max_retries or get_settings().max_retries
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._get_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _fetch_json(
        self,
        url: str,
        params: dict[str, Any],
        not_found: Any = None,
        validate: Callable[[Any], bool] | None = None,
    ) -> Any:
        """Single GET request returning the decoded JSON body.

        Args:
            url: Endpoint URL
            params: Query parameters
            not_found: Value returned on HTTP 404 instead of raising
            validate: Structural check on the decoded body

        Raises:
            SourceUnavailable: On timeout, transport error or non-2xx status
            MalformedResponse: If the body is not JSON or fails ``validate``
        """
        client = self._get_client()
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404 and not_found is not None:
                return not_found
            raise SourceUnavailable(
                f"{self.SOURCE_KEY} returned HTTP {e.response.status_code}",
                source=self.SOURCE_KEY,
            ) from e
        except httpx.TimeoutException as e:
            raise SourceUnavailable(
                f"{self.SOURCE_KEY} timed out after {self.timeout}s", source=self.SOURCE_KEY
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"{self.SOURCE_KEY} request failed: {e}", source=self.SOURCE_KEY) from e

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponse(
                f"{self.SOURCE_KEY} returned a non-JSON body", source=self.SOURCE_KEY
            ) from e

        if validate is not None and not validate(data):
            raise MalformedResponse(
                f"{self.SOURCE_KEY} response is missing expected fields", source=self.SOURCE_KEY
            )
        return data

    async def _get_json(
        self,
        url: str,
        params: dict[str, Any],
        not_found: Any = None,
        validate: Callable[[Any], bool] | None = None,
    ) -> CallResult[Any]:
        """Cached, rate-limited GET with bounded retries."""
        cache_params = {"url": url, **params}
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(SourceUnavailable),
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying {self.SOURCE_KEY} request (attempt {attempt.retry_state.attempt_number})"
                    )
                result = await self.cache.call(
                    self.SOURCE_KEY,
                    cache_params,
                    lambda: self._fetch_json(url, params, not_found=not_found, validate=validate),
                )
        return result

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
