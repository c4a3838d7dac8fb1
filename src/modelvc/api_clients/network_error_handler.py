"""Network error handling for the sync backend and transfer URLs.

Classifies httpx failures into the TransportError hierarchy, attaches user
guidance for the CLI, and provides bounded retry with exponential backoff.
"""

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, cast

import httpx

from ..config import RetrySettings
from ..exceptions import (
    AuthenticationError,
    DNSResolutionError,
    NetworkConnectionError,
    NetworkTimeoutError,
    RateLimitError,
    RemoteNotFoundError,
    ServerError,
    SSLCertificateError,
    TransferURLError,
    TransportError,
)

logger = logging.getLogger(__name__)


@dataclass
class UserGuidance:
    """User guidance information for network errors."""

    error_type: str
    troubleshooting_steps: List[str]
    contact_info: Optional[str] = None
    additional_notes: List[str] = field(default_factory=list)

    def format_for_console(self) -> str:
        """Format guidance for rich console output."""
        content = []
        content.append(f"[bold red]Error Type:[/bold red] {self.error_type}")
        content.append("")
        content.append("[bold yellow]Troubleshooting Steps:[/bold yellow]")

        for i, step in enumerate(self.troubleshooting_steps, 1):
            content.append(f"{i}. {step}")

        if self.additional_notes:
            content.append("")
            content.append("[bold blue]Additional Notes:[/bold blue]")
            for note in self.additional_notes:
                content.append(f"• {note}")

        if self.contact_info:
            content.append("")
            content.append(f"[bold green]Support:[/bold green] {self.contact_info}")

        return "\n".join(content)


@dataclass
class RetryConfig:
    """Configuration for retry logic with exponential backoff."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryConfig":
        return cls(**settings.model_dump())

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff delay after the given zero-based attempt."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        if self.jitter_enabled:
            delay = delay + delay * 0.1 * random.random()  # Up to 10% jitter
        return delay


class UserGuidanceProvider:
    """Provides user guidance for different network error scenarios."""

    def __init__(self):
        self._guidance_mapping = {
            NetworkConnectionError: self._get_connection_error_guidance,
            DNSResolutionError: self._get_dns_resolution_guidance,
            SSLCertificateError: self._get_ssl_certificate_guidance,
            NetworkTimeoutError: self._get_timeout_guidance,
            ServerError: self._get_server_error_guidance,
            RateLimitError: self._get_rate_limit_guidance,
            AuthenticationError: self._get_authentication_guidance,
            TransferURLError: self._get_transfer_url_guidance,
        }

    def get_guidance(self, error: Exception) -> UserGuidance:
        """Get user guidance for a specific error."""
        guidance_func = self._guidance_mapping.get(
            type(error), self._get_generic_guidance
        )
        return cast(UserGuidance, guidance_func(error))

    def _get_connection_error_guidance(
        self, error: NetworkConnectionError
    ) -> UserGuidance:
        return UserGuidance(
            error_type="Network Connection Error",
            troubleshooting_steps=[
                "Check your internet connection",
                "Verify the sync backend URL in ~/.modelvc/config.json",
                "Check your firewall or proxy settings",
                "Try the sync again; local history is unchanged",
            ],
            additional_notes=[
                "Commits are kept locally and will be pushed on the next sync",
            ],
        )

    def _get_dns_resolution_guidance(self, error: DNSResolutionError) -> UserGuidance:
        return UserGuidance(
            error_type="DNS Resolution Error",
            troubleshooting_steps=[
                "Check your internet connection",
                "Verify the backend hostname is correct",
                "Check your DNS server settings",
            ],
            additional_notes=[
                "DNS resolution issues are often temporary",
            ],
        )

    def _get_ssl_certificate_guidance(self, error: SSLCertificateError) -> UserGuidance:
        return UserGuidance(
            error_type="SSL Certificate Error",
            troubleshooting_steps=[
                "Check if the backend certificate is valid and not expired",
                "Verify the backend hostname matches the certificate",
                "Update your system certificate store",
            ],
            additional_notes=[
                "Do not disable certificate verification without proper security review",
            ],
        )

    def _get_timeout_guidance(self, error: NetworkTimeoutError) -> UserGuidance:
        return UserGuidance(
            error_type="Network Timeout Error",
            troubleshooting_steps=[
                "Check your network connection speed and stability",
                "Try again - this may be a temporary issue",
                "Large model snapshots may need a longer write timeout",
            ],
            additional_notes=[
                "Timeout errors are often temporary",
            ],
        )

    def _get_server_error_guidance(self, error: ServerError) -> UserGuidance:
        return UserGuidance(
            error_type="Server Error",
            troubleshooting_steps=[
                "The sync backend is experiencing internal issues",
                "Please wait a few minutes and try again",
            ],
            additional_notes=[
                "These errors are typically temporary",
            ],
        )

    def _get_rate_limit_guidance(self, error: RateLimitError) -> UserGuidance:
        retry_after = getattr(error, "retry_after", None) or 60
        return UserGuidance(
            error_type="Rate Limit Error",
            troubleshooting_steps=[
                "You are sending requests too quickly",
                f"Wait {retry_after} seconds before trying again",
            ],
        )

    def _get_authentication_guidance(self, error: AuthenticationError) -> UserGuidance:
        return UserGuidance(
            error_type="Authentication Error",
            troubleshooting_steps=[
                "Sign in again to refresh your session",
                "Check that your account is a member of the cloud project",
            ],
        )

    def _get_transfer_url_guidance(self, error: TransferURLError) -> UserGuidance:
        return UserGuidance(
            error_type="Transfer Link Error",
            troubleshooting_steps=[
                "The pre-authorized transfer link expired or was rejected by storage",
                "Run the sync again to request a fresh link",
                "If it keeps failing, check that your system clock is correct",
            ],
            additional_notes=[
                "Local history is unchanged; affected commits stay unsynced",
            ],
        )

    def _get_generic_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Unknown Network Error",
            troubleshooting_steps=[
                "Check your network connection",
                "Verify the sync backend is accessible",
                "Try again in a few minutes",
            ],
        )


class NetworkErrorHandler:
    """Handles network error classification and retry logic."""

    def __init__(self):
        self.guidance_provider = UserGuidanceProvider()
        self._dns_error_patterns = [
            r"name.*resolution.*failed",
            r"name.*or.*service.*not.*known",
            r"nodename.*nor.*servname.*provided",
            r"temporary.*failure.*in.*name.*resolution",
        ]
        self._connection_error_patterns = [
            r"connection.*refused",
            r"connection.*reset",
            r"network.*is.*unreachable",
            r"no.*route.*to.*host",
        ]
        self._ssl_error_patterns = [
            r"ssl.*certificate.*verification.*failed",
            r"certificate.*verify.*failed",
            r"ssl.*handshake.*failed",
            r"bad.*certificate",
        ]

    def _with_guidance(self, error: TransportError) -> TransportError:
        error.user_guidance = self.guidance_provider.get_guidance(
            error
        ).format_for_console()
        return error

    def classify_network_error(self, error: Exception) -> TransportError:
        """Map an httpx exception onto the TransportError hierarchy.

        Args:
            error: The original httpx exception

        Returns:
            The specific transport error (the caller raises it)
        """
        error_message = str(error).lower()

        if isinstance(error, httpx.ConnectError):
            return self._classify_connect_error(error, error_message)
        if isinstance(error, httpx.HTTPStatusError):
            return self.classify_status(error.response)
        if isinstance(error, httpx.TimeoutException):
            if "connect" in error_message or isinstance(error, httpx.ConnectTimeout):
                message = "Connection timed out. Check your network connection or try again later."
            else:
                message = "Request timed out. Check your network connection or try again later."
            return self._with_guidance(NetworkTimeoutError(message))
        if isinstance(error, httpx.NetworkError):
            return self._with_guidance(NetworkConnectionError(f"Network error: {error}"))
        if isinstance(error, httpx.HTTPError):
            return self._with_guidance(NetworkConnectionError(f"HTTP error: {error}"))

        return self._with_guidance(
            NetworkConnectionError(f"Unknown network error: {error}")
        )

    def _classify_connect_error(
        self, error: httpx.ConnectError, error_message: str
    ) -> TransportError:
        if any(re.search(p, error_message) for p in self._dns_error_patterns):
            return self._with_guidance(
                DNSResolutionError(
                    "Cannot resolve server address. Check your internet connection and backend URL."
                )
            )
        if any(re.search(p, error_message) for p in self._ssl_error_patterns):
            return self._with_guidance(
                SSLCertificateError(
                    "SSL certificate verification failed. Server may be using invalid certificate."
                )
            )
        if any(re.search(p, error_message) for p in self._connection_error_patterns):
            return self._with_guidance(
                NetworkConnectionError(
                    f"Cannot connect to server ({error}). Check if the sync backend is reachable."
                )
            )
        return self._with_guidance(NetworkConnectionError(f"Connection failed: {error}"))

    def classify_status(
        self, response: httpx.Response, authenticated: bool = True
    ) -> TransportError:
        """Map an error response (4xx/5xx) onto a transport error.

        Args:
            response: The error response
            authenticated: False for pre-authorized transfer URLs, where a
                401/403 means the link itself was rejected
        """
        status_code = response.status_code
        error_detail = _error_detail(response)

        if status_code == 429:
            retry_after = None
            if "Retry-After" in response.headers:
                try:
                    retry_after = int(response.headers["Retry-After"])
                except ValueError:
                    retry_after = 60
            return self._with_guidance(RateLimitError(error_detail, retry_after=retry_after))

        if status_code in (401, 403) and not authenticated:
            return self._with_guidance(
                TransferURLError(
                    f"Transfer link rejected: {error_detail}", status_code=status_code
                )
            )

        if status_code in (401, 403):
            return self._with_guidance(
                AuthenticationError(
                    f"Authentication failed: {error_detail}", status_code=status_code
                )
            )

        if status_code == 404:
            return RemoteNotFoundError(f"Not found: {error_detail}", status_code=404)

        if 500 <= status_code < 600:
            return self._with_guidance(
                ServerError(
                    f"Server is experiencing issues: {error_detail}",
                    status_code=status_code,
                )
            )

        return TransportError(error_detail, status_code=status_code)

    def is_error_retryable(self, error: Exception) -> bool:
        """Conservative retry policy: only transient failures are retried."""
        if isinstance(error, NetworkConnectionError):
            # "connection refused" means nothing is listening; retrying won't help
            return "connection refused" not in str(error).lower()
        if isinstance(error, DNSResolutionError):
            return True
        if isinstance(error, TransportError):
            return error.is_retryable
        return False

    async def retry_with_backoff(
        self,
        operation: Callable[[], Awaitable[Any]],
        config: RetryConfig,
        progress_callback: Optional[Callable[[str, int, int], None]] = None,
    ) -> Any:
        """Execute operation with bounded retries and exponential backoff.

        Args:
            operation: Async function to execute
            config: Retry configuration
            progress_callback: Optional callback for progress indication

        Returns:
            Result of successful operation

        Raises:
            The last exception if it is not retryable or retries are exhausted
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.is_error_retryable(e) or attempt >= config.max_retries:
                    raise

                delay = config.delay_for_attempt(attempt)
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = min(float(e.retry_after), config.max_delay)

                logger.debug(
                    f"Retrying after {type(e).__name__} "
                    f"(attempt {attempt + 1}/{config.max_retries}, delay {delay:.1f}s)"
                )
                if progress_callback:
                    progress_callback(
                        "Retrying after network error...",
                        attempt + 1,
                        config.max_retries,
                    )
                await asyncio.sleep(delay)
                attempt += 1


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("error") or data.get("detail") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"
