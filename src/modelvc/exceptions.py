"""Exception classes for modelvc.

Every error raised by the tree, the snapshot store, the change monitor and the
cloud reconciler derives from ModelVCError so callers can surface a specific,
actionable message instead of a generic failure.
"""

from typing import Iterable, Optional, Set


class ModelVCError(Exception):
    """Base exception for modelvc errors."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ValidationError(ModelVCError):
    """Exception raised for bad input to a tree or store mutation.

    Never retried; surfaced to the caller verbatim.
    """

    pass


class NotFoundError(ModelVCError):
    """Exception raised when a branch, commit, blob or tracked file is missing."""

    pass


class SnapshotIOError(ModelVCError):
    """Exception raised when a local filesystem operation fails."""

    pass


class IntegrityError(ModelVCError):
    """Exception raised when the tree references data that is not there.

    Distinct from NotFoundError: the commit exists in history, only its blob
    (or a structural link) is absent, so the caller may choose to re-sync.
    """

    def __init__(
        self,
        message: str,
        missing_ids: Optional[Iterable[str]] = None,
        details: Optional[str] = None,
    ):
        super().__init__(message, details)
        self.missing_ids: Set[str] = set(missing_ids or ())


class TransportError(ModelVCError):
    """Base exception for remote call failures.

    The specific commit or sync step is abandoned and local state is left
    unchanged, so the operation is safe to retry.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_guidance: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.user_guidance = user_guidance or ""
        self.is_retryable: bool = False


class NetworkConnectionError(TransportError):
    """Exception raised for connection-related network failures."""

    def __init__(self, message: str, user_guidance: Optional[str] = None):
        super().__init__(message, user_guidance=user_guidance)
        self.is_retryable = True


class NetworkTimeoutError(TransportError):
    """Exception raised for timeout-related network failures."""

    def __init__(self, message: str, user_guidance: Optional[str] = None):
        super().__init__(message, user_guidance=user_guidance)
        self.is_retryable = True


class DNSResolutionError(TransportError):
    """Exception raised for DNS resolution failures."""

    pass


class SSLCertificateError(TransportError):
    """Exception raised for SSL certificate verification failures."""

    pass


class ServerError(TransportError):
    """Exception raised for server-side errors (5xx responses)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_guidance: Optional[str] = None,
    ):
        super().__init__(message, status_code, user_guidance)
        self.is_retryable = True


class RateLimitError(TransportError):
    """Exception raised for rate limiting errors (429 responses)."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        user_guidance: Optional[str] = None,
    ):
        super().__init__(message, 429, user_guidance)
        self.retry_after = retry_after
        self.is_retryable = True


class AuthenticationError(TransportError):
    """Exception raised when the backend rejects the session token."""

    pass


class TransferURLError(TransportError):
    """Exception raised when storage rejects a pre-authorized transfer URL.

    The URL carries its own signature, so a 401/403 here means the link
    expired or was invalid; the session token is not involved.
    """

    pass


class RemoteNotFoundError(TransportError):
    """Exception raised when a remote object or project does not exist (404)."""

    pass


class RemoteNotConfiguredError(ModelVCError):
    """Exception raised when a sync is requested without a remote."""

    pass
