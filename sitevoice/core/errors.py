"""
SiteVoice Error Taxonomy

Provider errors are raised by the stage adapters and classified by the
orchestrator. `retryable` tells the retry loop whether the same stage may be
invoked again.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Error categories attached to a terminated CommandRun."""
    LOW_CONFIDENCE = "low_confidence"
    CLARIFICATION_NEEDED = "clarification_needed"
    RATE_LIMITED = "rate_limited"
    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_AUTH_FAILED = "provider_auth_failed"
    PROVIDER_ERROR = "provider_error"
    INVALID_RESPONSE = "invalid_response"
    NETWORK_UNAVAILABLE = "network_unavailable"
    STORAGE_EXECUTION_FAILED = "storage_execution_failed"
    IDENTITY_FAILED = "identity_failed"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class SiteVoiceError(Exception):
    """Base class for all pipeline errors."""
    kind: ErrorKind = ErrorKind.INTERNAL


# ============================================
# Provider errors
# ============================================

class ProviderError(SiteVoiceError):
    """Error raised by a remote or local provider."""
    kind = ErrorKind.PROVIDER_ERROR
    retryable: bool = False

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class ProviderTimeout(ProviderError):
    """The provider did not answer before the deadline."""
    kind = ErrorKind.PROVIDER_TIMEOUT
    retryable = True


class TransientNetworkError(ProviderError):
    """5xx-class answer or a dropped connection; safe to retry."""
    retryable = True


class ProviderUnreachable(TransientNetworkError):
    """The provider could not be reached at all (connection refused, DNS)."""


class ProviderQuotaExceeded(ProviderError):
    """Provider-side quota rejection (HTTP 429), distinct from the local limiter."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, provider: str = "", retry_after: float = 0.0) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderAuthFailed(ProviderError):
    """Credentials rejected. Never retried, escalated immediately."""
    kind = ErrorKind.PROVIDER_AUTH_FAILED


class InvalidProviderResponse(ProviderError):
    """The provider answered with something that cannot be decoded."""
    kind = ErrorKind.INVALID_RESPONSE


# ============================================
# Pipeline errors
# ============================================

class RateLimited(SiteVoiceError):
    """The local rate limiter denied the call and no fallback could absorb it."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: float, scope: str = "provider") -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.scope = scope


class NoProviderAvailable(ProviderError):
    """Neither the remote provider nor a local fallback can serve the stage."""


class NetworkUnavailable(SiteVoiceError):
    """
    Raised by the storage collaborator when there is no connectivity.

    Not a failure: the orchestrator queues the write for later.
    """
    kind = ErrorKind.NETWORK_UNAVAILABLE


class StorageExecutionFailed(SiteVoiceError):
    """Business-rule rejection from the storage collaborator, surfaced verbatim."""
    kind = ErrorKind.STORAGE_EXECUTION_FAILED

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class IdentityError(SiteVoiceError):
    """The identity collaborator could not resolve the principal."""
    kind = ErrorKind.IDENTITY_FAILED
