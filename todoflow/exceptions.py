class TodoflowError(Exception):
    """Base class for domain errors raised by todoflow services."""


class InvalidInput(TodoflowError):
    """Malformed or missing input, rejected before any mutation."""


class InvalidMembership(TodoflowError):
    """One or more entity ids do not belong to the requested scope."""

    def __init__(self, ids: list[int], scope: str):
        self.ids = ids
        self.scope = scope
        super().__init__(f"Ids {ids} do not belong to {scope}")


class NotFound(TodoflowError):
    pass


class Conflict(TodoflowError):
    pass


class InvalidCredentials(TodoflowError):
    pass


class AccessTokenExpired(TodoflowError):
    pass


class AccessTokenInvalid(TodoflowError):
    pass


class InvalidOrExpiredToken(TodoflowError):
    """Refresh token is unknown, blacklisted or past its expiry."""


class TokenNotFound(TodoflowError):
    pass


class UserNotFound(TodoflowError):
    pass


class StorageError(TodoflowError):
    """A database operation failed; the transaction has been rolled back."""


class TokenRefreshError(TodoflowError):
    """Client side: the access token could not be renewed; credentials were cleared."""
