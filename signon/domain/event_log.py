"""Append-only account event log and its role-scoped query surface."""

from __future__ import annotations

import json
import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from .account import Account, Actor
from .policy import authorize_event_log_read

if TYPE_CHECKING:
    from ..repository import AccountRepository, AccountTransaction

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Security-relevant occurrences recorded against an account.

    Each member carries a stable numeric code, used as the stored value, and
    the human-readable description shown to admins.
    """

    SUCCESSFUL_LOGIN = (1, "Successful login")
    UNSUCCESSFUL_LOGIN = (2, "Unsuccessful login")
    ACCOUNT_LOCKED = (3, "Passphrase verification failed too many times, account locked")
    MANUAL_ACCOUNT_UNLOCK = (4, "Manual account unlock")
    ACCOUNT_SUSPENDED = (5, "Account suspended")
    ACCOUNT_UNSUSPENDED = (6, "Account unsuspended")
    SUSPENDED_ACCOUNT_AUTHENTICATED_LOGIN = (7, "Suspended account authenticated login")
    PASSPHRASE_RESET_REQUEST = (8, "Passphrase reset request")
    PASSPHRASE_RESET_LOADED = (9, "Passphrase reset page loaded")
    PASSPHRASE_RESET_FAILURE = (10, "Passphrase reset failed")
    SUCCESSFUL_PASSPHRASE_CHANGE = (11, "Successful passphrase change")
    UNSUCCESSFUL_PASSPHRASE_CHANGE = (12, "Unsuccessful passphrase change")
    PASSPHRASE_EXPIRED = (13, "Passphrase expired")

    def __init__(self, code: int, description: str) -> None:
        self.code = code
        self.description = description

    @classmethod
    def from_code(cls, code: int) -> "EventKind":
        for kind in cls:
            if kind.code == code:
                return kind
        raise ValueError(f"unknown event kind code {code}")


@dataclass(frozen=True, slots=True)
class EventLogEntry:
    """Immutable record of a security-relevant occurrence tied to an account."""

    entry_id: int
    account_id: str
    kind: EventKind
    created_at: datetime
    initiator_id: str | None = None
    trailing_message: str | None = None


def describe(entry: EventLogEntry, initiator_name: str | None = None) -> str:
    """Return the viewer-facing description, naming the initiator when there is one."""
    if entry.initiator_id is not None and initiator_name:
        return f"{entry.kind.description} by {initiator_name}"
    return entry.kind.description


class EventLogStore:
    """Records and reads account event log entries through the repository."""

    def __init__(self, repository: AccountRepository, *, page_size: int = 100) -> None:
        self._repository = repository
        self._page_size = page_size

    def record(
        self,
        account: Account,
        kind: EventKind,
        *,
        initiator: Actor | None = None,
        trailing_message: str | None = None,
        tx: AccountTransaction | None = None,
    ) -> EventLogEntry:
        """Append an entry, joining ``tx`` when given so it commits with the account change.

        Raises
        ------
        PersistenceError
            Propagated from the repository when the store is unavailable.
        """
        initiator_id = initiator.account_id if initiator is not None else None
        if tx is not None:
            entry = tx.append_event(
                kind=kind, initiator_id=initiator_id, trailing_message=trailing_message
            )
        else:
            with self._repository.account_transaction(account.account_id) as own_tx:
                entry = own_tx.append_event(
                    kind=kind, initiator_id=initiator_id, trailing_message=trailing_message
                )
        logger.debug("event %s recorded for account %s", kind.name, account.account_id)
        return entry

    def query(
        self,
        account: Account,
        actor: Actor,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[list[EventLogEntry], str | None]:
        """Return a newest-first page of entries for ``account`` visible to ``actor``.

        Raises
        ------
        AuthorizationError
            When the actor's role does not permit reading this account's log.
        ValueError
            When ``cursor`` cannot be decoded.
        """
        authorize_event_log_read(actor, account)
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        page_size = max(1, min(limit or self._page_size, self._page_size))
        entries, next_cursor_tuple = self._repository.list_event_logs(
            account.account_id, limit=page_size, cursor=decoded_cursor
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return entries, next_cursor

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, entry_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "entry_id": entry_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            entry_id = int(data["entry_id"])
            return created_at, entry_id
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
