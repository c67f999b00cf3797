import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from catalog_sync.config.settings import Settings, get_settings
from catalog_sync.core.exceptions import APIError, AuthError, TransientNetworkError
from catalog_sync.utils.helpers import utcnow
from catalog_sync.utils.rate_limiter import RateLimiter

logger = structlog.get_logger()

@dataclass
class AuthSession:
    """Token state owned by exactly one adapter instance"""
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def is_valid(self) -> bool:
        return bool(self.access_token and self.expires_at and utcnow() < self.expires_at)

    def clear(self) -> None:
        self.access_token = None
        self.expires_at = None

class BaseAPIClient:
    """Shared request discipline for the source and sink adapters.

    * one token per adapter, refreshed lazily under a lock
    * a 401 triggers exactly one refresh-and-retry of the same request
    * a 429 waits for Retry-After (or the configured default) and does not
      count against the retry budget
    * 5xx and network errors are retried with incremental backoff
    * any other 4xx is raised immediately as the adapter's error class
    """

    error_class = APIError
    # Treat the token as expired this long before the real expiry
    token_leeway = timedelta(seconds=60)

    def __init__(
        self,
        base_url: str,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = base_url.rstrip("/")
        self.session = AuthSession()
        self.rate_limiter = rate_limiter
        self.log = logger.bind(client=type(self).__name__)
        self._client = httpx.AsyncClient(
            timeout=float(self.settings.API_TIMEOUT),
            follow_redirects=True,
            headers={"User-Agent": "Catalog-Sync/1.0", "Accept": "application/json"},
            transport=transport,
        )

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _fetch_token(self) -> Tuple[str, int]:
        """Return (access token, lifetime in seconds)"""
        raise NotImplementedError

    async def authenticate(self) -> str:
        """Force a fresh token"""
        async with self.session.lock:
            self.session.clear()
            return await self._refresh_locked()

    async def ensure_authenticated(self) -> str:
        async with self.session.lock:
            if self.session.is_valid():
                return self.session.access_token
            return await self._refresh_locked()

    async def _refresh_locked(self) -> str:
        token, expires_in = await self._fetch_token()
        self.session.access_token = token
        self.session.expires_at = utcnow() + timedelta(seconds=expires_in) - self.token_leeway
        self.log.info("✅ Authenticated", expires_in=expires_in)
        return token

    async def _post_for_token(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            response = await self._client.post(url, json=body)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Authentication request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientNetworkError(f"Authentication failed with {response.status_code}")
        if response.status_code >= 400:
            self.log.error("❌ Authentication failed", status_code=response.status_code, response=response.text[:500])
            raise AuthError(f"Authentication failed with {response.status_code}: {response.text[:200]}")
        return response.json()

    def _retry_after_seconds(self, response: httpx.Response) -> float:
        header = response.headers.get("retry-after")
        if header:
            try:
                return max(float(header), 0.0)
            except ValueError:
                pass
        return self.settings.RATE_LIMIT_DEFAULT_WAIT_SECONDS

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """One logical request: handles 401 refresh and 429 waits, raises on the rest"""
        refreshed = False
        rate_limit_waits = 0

        while True:
            if self.rate_limiter:
                await self.rate_limiter.acquire()

            token = await self.ensure_authenticated()
            request_headers = {"Authorization": f"Bearer {token}"}
            if json_data is not None:
                request_headers["Content-Type"] = "application/json"
            if headers:
                request_headers.update(headers)

            try:
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_data,
                    content=content,
                    headers=request_headers,
                )
            except httpx.TransportError as e:
                self.log.warning("Request failed, network error", url=url, error=str(e))
                raise TransientNetworkError(f"{method} {url} failed: {e}") from e

            if response.status_code == 401:
                if refreshed:
                    raise AuthError(f"{method} {url} still unauthorized after token refresh")
                self.log.info("Token rejected, re-authenticating", url=url)
                async with self.session.lock:
                    if self.session.access_token == token:
                        self.session.clear()
                refreshed = True
                continue

            if response.status_code == 429:
                rate_limit_waits += 1
                if rate_limit_waits > self.settings.MAX_RATE_LIMIT_WAITS:
                    raise TransientNetworkError(f"{method} {url} still rate limited after {rate_limit_waits - 1} waits")
                wait_seconds = self._retry_after_seconds(response)
                self.log.warning("Rate limited, waiting", url=url, retry_after=wait_seconds, attempt=rate_limit_waits)
                await asyncio.sleep(wait_seconds)
                continue

            if response.status_code >= 500:
                self.log.warning("Server error", url=url, status_code=response.status_code)
                raise TransientNetworkError(f"{method} {url} failed with {response.status_code}")

            if response.status_code >= 400:
                self.log.error("API error", url=url, status_code=response.status_code, response=response.text[:500])
                raise self.error_class(
                    f"{method} {url} failed with {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                )

            return response

    async def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Make an authenticated request, retrying transient failures"""
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        delay = self.settings.RETRY_DELAY_SECONDS

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.RETRY_ATTEMPTS),
            wait=wait_incrementing(start=delay, increment=delay),
            retry=retry_if_exception_type(TransientNetworkError),
            reraise=True,
        )
        response = None
        async for attempt in retrying:
            with attempt:
                response = await self._send(method, url, params, json_data, content, headers)
        return response

    async def _request_json(self, endpoint: str, method: str = "GET", **kwargs: Any) -> Any:
        response = await self._make_request(endpoint, method=method, **kwargs)
        if not response.content or not response.content.strip():
            return {}
        return response.json()
