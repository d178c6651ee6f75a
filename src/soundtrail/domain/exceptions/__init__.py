"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing
    # str(exception). Don't raise this directly - use a subclass so callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    # entity_type/entity_id are kept separately so the HTTP handler can log them structured.
    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when input or an entity fails validation.

    HTTP Status: 422
    """

    pass


class InvalidStateException(DomainException):
    """Raised when an entity is in an invalid state for the requested operation.

    Example: archiving a user whose account has been deactivated.

    HTTP Status: 400
    """

    pass


class ConfigurationError(DomainException):
    """Application misconfiguration.

    HTTP Status: 503 (Service Unavailable)

    Example:
        raise ConfigurationError("Spotify credentials not configured")
    """

    pass


class UniqueViolationError(DomainException):
    """A unique constraint rejected an insert.

    Hey future me - this is the ONE storage error the reconciler expects. Two workers
    archiving different users routinely race to insert the same artist/album/track, and
    the loser gets this. Repositories translate SQLAlchemy's IntegrityError into it so
    nothing above the persistence layer has to know about driver-specific error codes.
    Any other IntegrityError (FK violation, NOT NULL) still propagates as-is.
    """

    def __init__(self, entity_type: str, key: Any) -> None:
        super().__init__(f"{entity_type} with key {key} already exists")
        self.entity_type = entity_type
        self.key = key


# =============================================================================
# Token state / refresh
# =============================================================================


class AuthenticationError(DomainException):
    """User is not authenticated or token is unusable.

    HTTP Status: 401
    """

    pass


class TokenStateError(AuthenticationError):
    """The stored token state for a user is incomplete.

    Not recoverable by retrying - the user has to sign in again. Callers classify
    this as an AUTH failure.
    """

    def __init__(self, message: str, user_id: str | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id


class NoRefreshTokenError(TokenStateError):
    """User has no refresh token stored."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} has no refresh token", user_id)


class NoExpiryRecordedError(TokenStateError):
    """User has no token expiry stored, so freshness can't be decided."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} has no token expiry recorded", user_id)


class TokenRefreshError(AuthenticationError):
    """Raised when the token endpoint rejects a refresh.

    Hey future me - this is thrown when Spotify's refresh token is no longer valid.
    Common causes:
    - User revoked app access in Spotify settings
    - App credentials changed
    - Refresh token was rotated earlier but the new one never got persisted

    Never retry with the same refresh token. The circuit breaker backs off AUTH failures
    the longest, which is exactly what we want here.
    """

    def __init__(
        self,
        message: str = "Token refresh failed. Please re-authenticate with Spotify.",
        error_code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code  # e.g., "invalid_grant"
        self.http_status = http_status  # e.g., 400, 401

    @property
    def requires_reauth(self) -> bool:
        """Check if error requires user re-authentication."""
        # 400 with invalid_grant means the refresh token is dead, 401/403 mean access denied
        return self.error_code == "invalid_grant" or self.http_status in (400, 401, 403)


# =============================================================================
# Upstream API
# =============================================================================


class ExternalServiceError(DomainException):
    """External service returned an error.

    HTTP Status: 502 (Bad Gateway)
    """

    pass


class SpotifyApiError(ExternalServiceError):
    """Non-success response from the Spotify Web API."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_server_error(self) -> bool:
        """True for 5xx responses."""
        return self.status_code >= 500


class SpotifyAuthError(SpotifyApiError):
    """Spotify answered 401 - the access token is stale or revoked.

    Never retried by the client: the token has to be refreshed before the call, not after.
    """

    def __init__(self, message: str = "Spotify rejected the access token") -> None:
        super().__init__(message, 401)


class SpotifyRateLimitError(SpotifyApiError):
    """Spotify answered 429 Too Many Requests."""

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(
            message or f"Spotify rate limit exceeded - retry after {retry_after}s", 429
        )
        self.retry_after = retry_after


class KeyValueStoreUnavailable(DomainException):
    """The idempotency / rate-limit store could not be reached."""

    pass


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DomainException",
    "EntityNotFoundException",
    "ExternalServiceError",
    "InvalidStateException",
    "KeyValueStoreUnavailable",
    "NoExpiryRecordedError",
    "NoRefreshTokenError",
    "SpotifyApiError",
    "SpotifyAuthError",
    "SpotifyRateLimitError",
    "TokenRefreshError",
    "TokenStateError",
    "UniqueViolationError",
    "ValidationException",
]
