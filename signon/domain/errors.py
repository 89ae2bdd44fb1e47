"""Error types raised by the account domain."""

from __future__ import annotations

PERMISSION_DENIED_MESSAGE = "You do not have permission to perform this action."


class SignonError(Exception):
    """Base class for failures raised by the sign-on domain."""


class PersistenceError(SignonError):
    """The backing store could not be reached or rejected the write."""


class AuthorizationError(SignonError):
    """The requesting actor may not perform the requested action."""

    def __init__(self, message: str = PERMISSION_DENIED_MESSAGE) -> None:
        super().__init__(message)
        self.message = message


class MalformedInputError(SignonError, ValueError):
    """A request field had the wrong shape, e.g. a mapping where text was expected."""


class AccountNotFoundError(SignonError):
    """No account exists for the given identifier."""


class InvalidTransitionError(SignonError):
    """The requested action is not allowed from the account's current status."""


class InvalidResetTokenError(SignonError):
    """The passphrase reset token is unknown or has expired."""


class DuplicateAccountError(SignonError):
    """An account with the same email address already exists."""


class PassphraseRejectedError(SignonError, ValueError):
    """A new passphrase failed validation; ``errors`` holds the messages."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)
