"""Exception types shared by services, repositories and the container.

Validation problems are plain `ValueError`s; the subclasses here let the
HTTP layer pick a more specific status code.
"""


class MissingDependencyError(RuntimeError):
    """Raised when the object graph is assembled without a required handle."""

    def __init__(self, name: str, owner: str):
        super().__init__(f"{owner} requires '{name}' to be set before build()")
        self.name = name
        self.owner = owner


class NotFoundError(ValueError):
    """A referenced record does not exist."""


class PermissionDeniedError(ValueError):
    """The acting user is not allowed to perform the operation."""


class InvalidCredentialsError(ValueError):
    """Sign-in failed. `remaining_attempts` is set for id-based sign-in."""

    def __init__(self, message: str = "invalid credentials", remaining_attempts=None):
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


class AccountLockedError(ValueError):
    """Too many failed sign-in attempts for an institutional id."""

    def __init__(self, locked_until):
        self.locked_until = locked_until
        super().__init__(f"account locked until {locked_until.isoformat()}")
