class FeaturestoreError(Exception):
    """Base exception for featurestore errors."""


class QueryReturnedNoResults(FeaturestoreError):
    """A by-key read found zero rows."""


class InternalQueryFailure(FeaturestoreError):
    """
    Any unexpected engine failure (driver error, malformed row, connectivity).

    The underlying exception is chained as ``__cause__`` and kept on ``cause``.
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        message = f"internal query failure during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class InvalidCursorFormat(FeaturestoreError):
    """Pagination token is not a valid cursor for the expected shape."""


class AlreadyLocked(FeaturestoreError):
    """Resource is locked by another worker and the lock has not expired."""


class LockNotOwned(FeaturestoreError):
    """Cannot release a lock not owned by the releasing worker."""


class MissingRequiredRole(FeaturestoreError):
    """The user does not hold the role required for the operation."""


class OwnerSavedSearchLimitExceeded(FeaturestoreError):
    """The user already owns the maximum number of saved searches."""


class DuplicateBusinessKey(FeaturestoreError, ValueError):
    """The desired-state list passed to a sync contains the same key twice."""


class OperationCancelled(FeaturestoreError):
    """The caller cancelled the operation before it committed."""


class BadClientConfig(FeaturestoreError):
    """The client configuration is invalid."""


class UserSearchBookmarkLimitExceeded(FeaturestoreError):
    """The user already bookmarks the maximum number of saved searches they do not own."""


class OwnerCannotDeleteBookmark(FeaturestoreError):
    """Owners always bookmark their own saved searches."""
