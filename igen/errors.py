"""Error taxonomy shared by stores, providers, reconciler and API."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error kinds returned to API consumers."""

    VALIDATION = "validation_error"
    PROVIDER_UNREACHABLE = "provider_unreachable"
    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_AUTH = "provider_auth_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STORAGE = "storage_error"
    INVALID_WEBHOOK = "invalid_webhook"
    INTERNAL = "internal_error"


class IgenError(Exception):
    """Base class. ``kind`` selects the API mapping; ``message`` is safe to show callers."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(IgenError):
    """Bad input shape, rejected before any external call."""

    kind = ErrorKind.VALIDATION


class NotFound(IgenError):
    kind = ErrorKind.NOT_FOUND


class DuplicateId(IgenError):
    kind = ErrorKind.CONFLICT


class Conflict(IgenError):
    """Conditional transition lost: the stored state no longer matches ``from``.

    Internal signal only; callers treat it as "someone else already finished this".
    """

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str = "", current: str | None = None):
        super().__init__(message)
        self.current = current


class StorageError(IgenError):
    """Persistence layer failure (database, filesystem, blob store)."""

    kind = ErrorKind.STORAGE


class InvalidWebhook(IgenError):
    """Webhook body or caller could not be accepted."""

    kind = ErrorKind.INVALID_WEBHOOK


class ProviderError(IgenError):
    """Failure talking to an inference provider."""

    retryable = False

    def __init__(self, message: str = "", provider: str = "", status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        # Raw provider body; logged, never returned to API callers
        self.body = body


class ProviderUnreachable(ProviderError):
    """Transport failure, timeout or provider-side 5xx. Retryable."""

    kind = ErrorKind.PROVIDER_UNREACHABLE
    retryable = True


class ProviderRejected(ProviderError):
    """Provider refused the request. Terminal."""

    kind = ErrorKind.PROVIDER_REJECTED


class ProviderAuthError(ProviderError):
    """Provider refused our credentials. Terminal; usually misconfiguration."""

    kind = ErrorKind.PROVIDER_AUTH


class CapabilityNotSupported(ProviderError):
    """Adapter does not implement the requested optional operation."""

    kind = ErrorKind.INTERNAL
