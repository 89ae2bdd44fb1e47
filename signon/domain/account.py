from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AccountStatus(str, Enum):
    active = "active"
    locked = "locked"
    suspended = "suspended"


class Role(str, Enum):
    user = "user"
    organisation_admin = "organisation_admin"
    admin = "admin"
    superadmin = "superadmin"


@dataclass(slots=True)
class Account:
    """Aggregate root for a principal capable of authenticating.

    ``status`` and ``failed_attempts`` are only changed by ``AccountService``.
    """

    account_id: str
    name: str
    email: str
    passphrase_hash: str
    created_at: datetime
    passphrase_changed_at: datetime
    role: Role = Role.user
    status: AccountStatus = AccountStatus.active
    failed_attempts: int = 0
    organisation_id: str | None = None
    reason_for_suspension: str | None = None
    locked_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_sent_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.active


@dataclass(frozen=True, slots=True)
class Actor:
    """Requesting principal supplied by the identity/role provider."""

    account_id: str
    name: str
    role: Role
    organisation_id: str | None = None

    @classmethod
    def from_account(cls, account: Account) -> "Actor":
        return cls(
            account_id=account.account_id,
            name=account.name,
            role=account.role,
            organisation_id=account.organisation_id,
        )
