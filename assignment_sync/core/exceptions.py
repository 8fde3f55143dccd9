"""
Exception hierarchy for the external assignment sync subsystem.

Services and connectors raise these; the blueprint layer is the subsystem
boundary and turns each one into a JSON error value (see
assignment_sync.utils.errors). Nothing below escapes an HTTP handler as an
uncaught exception.

Usage:
    from assignment_sync.core.exceptions import SourceNotFoundError, NetworkError

    raise SourceNotFoundError(source_account_id)
    raise NetworkError("Timed out fetching courses")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Also used when the caller does not own the resource, so a lookup never
    confirms that someone else's record exists.

    Args:
        resource: Human-readable entity name (e.g. "SourceAccount").
        resource_id: The key that was looked up. Included in logs.
    """

    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed JSON but fails a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured responses.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


# ── Sync error vocabulary ────────────────────────────────────────────────────


class SyncError(Exception):
    """Base class for the fixed sync error vocabulary.

    Every subclass carries a machine-readable ``code`` that the blueprint
    forwards unchanged to the caller.
    """

    code = "ERR_SYNC"


class DuplicateSourceError(SyncError, ConflictError):
    """connect attempted with an (owner, source_name) pair already in use."""

    code = "ERR_DUPLICATE_SOURCE"

    def __init__(self, owner: str, source_name: str) -> None:
        ConflictError.__init__(self, "SourceAccount", "source_name", source_name)
        self.owner = owner
        self.args = (f"A source with name '{source_name}' already exists for this user.",)


class InvalidCredentialsError(SyncError):
    """The platform rejected the supplied credentials."""

    code = "ERR_INVALID_CREDENTIALS"


class SourceConnectionError(SyncError):
    """The account exists but its stored credentials no longer work."""

    code = "ERR_SOURCE_CONNECTION"


class NetworkError(SyncError):
    """Transient failure reaching the platform: timeout, 5xx, transport error."""

    code = "ERR_NETWORK"


class RateLimitError(SyncError):
    """The platform is throttling requests; the caller should back off."""

    code = "ERR_RATE_LIMIT"


class SourceNotFoundError(SyncError, NotFoundError):
    """An operation referenced a source account that does not exist."""

    code = "ERR_SOURCE_NOT_FOUND"

    def __init__(self, source_account_id: str) -> None:
        NotFoundError.__init__(self, "SourceAccount", source_account_id)
