"""Base HTTP client for the sync backend.

Provides the shared httpx session, bearer-token injection from the
authentication collaborator, error classification and bounded retries.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from ..config import RemoteConfig, TimeoutSettings
from ..exceptions import AuthenticationError, TransportError
from .network_error_handler import NetworkErrorHandler, RetryConfig

logger = logging.getLogger(__name__)

TokenSupplier = Callable[[], Union[str, Awaitable[str]]]


class BaseSyncAPIClient:
    """Base API client with authentication and common HTTP functionality."""

    def __init__(
        self,
        backend_url: str,
        token_supplier: TokenSupplier,
        retry_config: Optional[RetryConfig] = None,
        timeouts: Optional[TimeoutSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize base API client.

        Args:
            backend_url: Base URL of the sync backend
            token_supplier: Returns the current session token (sync or async)
            retry_config: Backoff policy for retryable transport errors
            timeouts: HTTP timeouts
            transport: Custom httpx transport (used by tests)
        """
        self.backend_url = backend_url.rstrip("/")
        self.token_supplier = token_supplier
        self.retry_config = retry_config or RetryConfig()
        self.timeouts = timeouts or TimeoutSettings()
        self._transport = transport
        self._session: Optional[httpx.AsyncClient] = None

        # Request rate limiting
        self._request_semaphore = asyncio.Semaphore(4)

        self._network_error_handler = NetworkErrorHandler()

    @classmethod
    def from_config(
        cls,
        remote: RemoteConfig,
        token_supplier: TokenSupplier,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ):
        if not remote.backend_url:
            raise ValueError("Remote configuration has no backend_url")
        return cls(
            remote.backend_url,
            token_supplier,
            retry_config=RetryConfig.from_settings(remote.retry),
            timeouts=remote.timeouts,
            transport=transport,
            **kwargs,
        )

    @property
    def session(self) -> httpx.AsyncClient:
        """Get or create HTTP session."""
        if self._session is None or self._session.is_closed:
            timeouts = httpx.Timeout(
                connect=self.timeouts.connect,
                read=self.timeouts.read,
                write=self.timeouts.write,
                pool=self.timeouts.pool,
            )
            limits = httpx.Limits(
                max_connections=10,
                max_keepalive_connections=5,
                keepalive_expiry=30.0,
            )
            kwargs: dict = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._session = httpx.AsyncClient(
                timeout=timeouts,
                limits=limits,
                follow_redirects=True,
                verify=True,
                **kwargs,
            )
        return self._session

    async def _get_token(self) -> str:
        try:
            token = self.token_supplier()
            if inspect.isawaitable(token):
                token = await token
        except TransportError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Could not obtain session token: {e}")
        if not token or not isinstance(token, str):
            raise AuthenticationError("Not authenticated")
        return token

    async def _send_once(
        self, method: str, url: str, authenticated: bool, **kwargs: Any
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if authenticated:
            headers["Authorization"] = f"Bearer {await self._get_token()}"

        try:
            response = await self.session.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise self._network_error_handler.classify_network_error(e)

        if response.status_code >= 400:
            raise self._network_error_handler.classify_status(
                response, authenticated=authenticated
            )
        return response

    async def _request(
        self,
        method: str,
        url: str,
        authenticated: bool = True,
        progress_callback: Optional[Callable[[str, int, int], None]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an HTTP request with rate limiting, classification and retries.

        Args:
            method: HTTP method
            url: Absolute URL, or a path relative to the backend URL
            authenticated: Attach the bearer token (False for presigned URLs)
            progress_callback: Optional callback for progress indication during retries
            **kwargs: Additional arguments for httpx request

        Returns:
            HTTP response object (status < 400)

        Raises:
            TransportError: Classified failure after retries are exhausted
        """
        if not url.startswith(("http://", "https://")):
            url = f"{self.backend_url}{url}"

        async with self._request_semaphore:
            return await self._network_error_handler.retry_with_backoff(
                lambda: self._send_once(method, url, authenticated, **dict(kwargs)),
                self.retry_config,
                progress_callback,
            )

    async def get(self, endpoint: str, **kwargs: Any) -> httpx.Response:
        return await self._request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs: Any) -> httpx.Response:
        return await self._request("POST", endpoint, **kwargs)

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and not self._session.is_closed:
            await self._session.aclose()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
