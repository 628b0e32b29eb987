"""
Error classes for promorch.

These error types enable retry classification at call boundaries:
- TransientError: Safe to retry (rate limits, network resets, 5xx responses)
- PermanentError: Do not retry (auth failures, missing sources, locked files)

Clients raise these errors to signal retry behavior. Workers catch them
per item and convert them into status, ledger and audit writes; only
ConfigError is surfaced synchronously to the caller of the trigger.

Error handling contract:
- Collaborator results are success-only
- Errors are exceptions, not values
- A single item's failure never aborts the surrounding loop
"""


class PromorchError(Exception):
    """Base exception for promorch."""
    pass


class TransientError(PromorchError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded (429)
    - Network timeout or connection reset
    - Service temporarily unavailable (5xx)

    Callers retry operations that raise TransientError with a bounded
    number of attempts at the point of call.
    """
    pass


class PermanentError(PromorchError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid input/parameters
    - Resource not found (404)
    - Authorization failed (401/403)
    - Destination locked by another writer
    """
    pass


class AuthError(PermanentError):
    """Remote API rejected the credentials (401/403).

    Never retried: retrying will not change the outcome.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ResourceLockedError(PermanentError):
    """Destination resource is held by another writer.

    Recorded as a soft failure: the item is skipped and the batch continues.
    """
    pass


class ItemNotFoundError(PermanentError):
    """Source item does not exist."""
    pass


class ConfigError(PromorchError):
    """Configuration or trigger parameter validation error."""
    pass


class RecordNotFoundError(PromorchError):
    """A required record store document is absent."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Record not found: {path}")


class ClaimConflictError(PromorchError):
    """A conditional write lost against a concurrent writer."""

    def __init__(self, path: str, message: str = "concurrent update"):
        self.path = path
        super().__init__(f"Conflict on {path}: {message}")
