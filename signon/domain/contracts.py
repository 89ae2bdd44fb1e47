"""Domain-level request contracts and results shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .account import Account, Role


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to register an account."""

    name: str
    email: str
    passphrase: str
    role: Role = Role.user
    organisation_id: str | None = None


class CredentialCheck(str, Enum):
    """Outcome reported by the credential verification collaborator."""

    match = "match"
    mismatch = "mismatch"
    not_found = "not_found"


class LoginOutcome(str, Enum):
    authenticated = "authenticated"
    invalid_credentials = "invalid_credentials"
    locked = "locked"
    suspended = "suspended"


@dataclass(slots=True)
class LoginResult:
    """Result of a sign-in attempt handed back to the session layer."""

    outcome: LoginOutcome
    account: Account | None = None
    passphrase_expired: bool = False

    @property
    def authenticated(self) -> bool:
        return self.outcome is LoginOutcome.authenticated


@dataclass(slots=True)
class PassphraseChangeResult:
    succeeded: bool
    errors: list[str] = field(default_factory=list)
