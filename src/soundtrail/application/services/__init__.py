"""Application services - Token management and archival business logic."""

# Hey future me - ArchivalService is NOT re-exported here. It sits on top of the workers package,
# and the workers import the breaker from this package, so pulling it in would close an import cycle.
# Import it from soundtrail.application.services.archival_service directly.
#
# Everything else is re-exported so wiring code doesn't reach into module paths.
from soundtrail.application.services.circuit_breaker import (
    COOLDOWN_CONFIG,
    CircuitBreaker,
    classify_failure,
    cooldown_minutes,
)
from soundtrail.application.services.idempotency import IdempotencyGate, RateLimitTracker
from soundtrail.application.services.metadata_reconciler import MetadataReconciler
from soundtrail.application.services.spotify_auth_service import TokenRefreshManager
from soundtrail.application.services.token_freshness_service import TokenFreshnessService
from soundtrail.application.services.token_utils import (
    REFRESH_BUFFER_SECONDS,
    minutes_until_expiry,
    needs_refresh,
)

__all__ = [
    "COOLDOWN_CONFIG",
    "REFRESH_BUFFER_SECONDS",
    "CircuitBreaker",
    "IdempotencyGate",
    "MetadataReconciler",
    "RateLimitTracker",
    "TokenFreshnessService",
    "TokenRefreshManager",
    "classify_failure",
    "cooldown_minutes",
    "minutes_until_expiry",
    "needs_refresh",
]
