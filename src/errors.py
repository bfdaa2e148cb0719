"""
Error taxonomy for secret synchronization.

Every error raised while syncing a secret is classified as transient
(retried with backoff), permanent (parked until the spec definition changes)
or a write conflict (treated as transient).
"""

from typing import Optional


class SecretSyncError(Exception):
    """Base class for all secret synchronization errors."""

    error_class = "SecretSyncError"
    retryable = True

    def __init__(self, message: str, spec_id: Optional[str] = None):
        self.message = message
        self.spec_id = spec_id
        super().__init__(message)


class TransientError(SecretSyncError):
    """Failure expected to clear on its own; retried with backoff."""

    error_class = "Transient"
    retryable = True


class PermanentError(SecretSyncError):
    """Failure that will not clear until the spec definition changes."""

    error_class = "Permanent"
    retryable = False


class ProviderUnavailable(TransientError):
    """The secret provider could not be reached or returned an error."""

    error_class = "ProviderUnavailable"


class FetchTimeout(ProviderUnavailable):
    """A fetch exceeded the configured timeout."""

    error_class = "FetchTimeout"


class AuthorizationDenied(TransientError):
    """The provider rejected our credentials.

    Credentials may be rotated out-of-band, so this is retried, but it is
    reported under its own class.
    """

    error_class = "AuthorizationDenied"


class StoreUnavailable(TransientError):
    """The local secret store failed to read or write."""

    error_class = "StoreUnavailable"


class WriteConflict(TransientError):
    """Compare-and-swap mismatch on a local secret write."""

    error_class = "Conflict"


class MalformedSecretPayload(PermanentError):
    """The fetched payload cannot be mapped to local secret fields."""

    error_class = "MalformedSecretPayload"


class InvalidSpecError(PermanentError):
    """A secret spec definition is invalid."""

    error_class = "InvalidSpec"


class DuplicateSpecError(SecretSyncError):
    """A spec with the same (namespace, name) is already registered."""

    error_class = "DuplicateSpec"
    retryable = False
