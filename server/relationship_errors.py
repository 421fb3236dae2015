from typing import Any, Optional


class RelationshipStoreError(Exception):
    """Base class for every error raised by a relationship store."""
    pass


class InvalidInput(RelationshipStoreError, ValueError):
    """Malformed caller input, rejected before any backend call."""

    def __init__(self, field: str, value: Any, expected: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}: {value!r} (expected {expected})")


class InvalidIdentifier(InvalidInput):
    def __init__(self, field: str, value: Any):
        super().__init__(field, value, "a non-empty string")


class CapacityExceeded(RelationshipStoreError):
    """The add was rejected by its max_size guard. Nothing was written."""

    def __init__(self, owner_id: str, member_id: str, max_size: int):
        self.owner_id = owner_id
        self.member_id = member_id
        self.max_size = max_size
        super().__init__(
            f"Cannot add {member_id!r} to {owner_id!r}: set already holds {max_size} members"
        )


class NotFound(RelationshipStoreError):
    """A remove with require_existing found no such member (or no item at all)."""

    def __init__(self, owner_id: str, member_id: str):
        self.owner_id = owner_id
        self.member_id = member_id
        super().__init__(f"{member_id!r} is not a member of {owner_id!r}")


class BackendError(RelationshipStoreError):
    """
    The backend failed. Subclasses mark failures that are safe to retry
    with backoff; the store never retries them itself.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class BackendUnavailable(BackendError):
    pass


class Throttled(BackendError):
    pass


RETRYABLE_ERRORS = (BackendUnavailable, Throttled)
