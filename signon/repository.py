"""Database repository for accounts and their event logs."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Tuple

import psycopg
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool, PoolTimeout

from .domain.account import Account, AccountStatus, Role
from .domain.contracts import CreateAccountInput
from .domain.errors import AccountNotFoundError, DuplicateAccountError, PersistenceError
from .domain.event_log import EventKind, EventLogEntry

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = """
    account_id, name, email, passphrase_hash, created_at, passphrase_changed_at,
    role, status, failed_attempts, organisation_id, reason_for_suspension,
    locked_at, reset_token_hash, reset_sent_at
"""


def _map_account(row: tuple) -> Account:
    """Convert a raw database tuple into the domain ``Account`` dataclass."""
    return Account(
        account_id=row[0],
        name=row[1],
        email=row[2],
        passphrase_hash=row[3],
        created_at=row[4],
        passphrase_changed_at=row[5],
        role=Role(row[6]),
        status=AccountStatus(row[7]),
        failed_attempts=row[8],
        organisation_id=row[9],
        reason_for_suspension=row[10],
        locked_at=row[11],
        reset_token_hash=row[12],
        reset_sent_at=row[13],
    )


def _map_event(row: tuple) -> EventLogEntry:
    return EventLogEntry(
        entry_id=row[0],
        account_id=row[1],
        kind=EventKind.from_code(row[2]),
        created_at=row[3],
        initiator_id=row[4],
        trailing_message=row[5],
    )


class AccountTransaction:
    """Unit of work over a single row-locked account.

    Changes made through :meth:`save` and :meth:`append_event` commit together
    when the surrounding ``account_transaction`` block exits cleanly.
    """

    def __init__(self, cursor: psycopg.Cursor, account: Account) -> None:
        self._cur = cursor
        self.account = account

    def save(self, account: Account | None = None) -> None:
        """Write the mutable account fields back to the locked row."""
        account = account or self.account
        self._cur.execute(
            """
            UPDATE accounts
            SET passphrase_hash = %s, passphrase_changed_at = %s, status = %s,
                failed_attempts = %s, reason_for_suspension = %s, locked_at = %s,
                reset_token_hash = %s, reset_sent_at = %s, updated_at = NOW()
            WHERE account_id = %s
            """,
            (
                account.passphrase_hash,
                account.passphrase_changed_at,
                account.status.value,
                account.failed_attempts,
                account.reason_for_suspension,
                account.locked_at,
                account.reset_token_hash,
                account.reset_sent_at,
                account.account_id,
            ),
        )

    def append_event(
        self,
        *,
        kind: EventKind,
        initiator_id: str | None = None,
        trailing_message: str | None = None,
    ) -> EventLogEntry:
        """Insert an event log row for the locked account and return it."""
        self._cur.execute(
            """
            INSERT INTO event_logs (account_id, event_id, initiator_id, trailing_message)
            VALUES (%s, %s, %s, %s)
            RETURNING id, account_id, event_id, created_at, initiator_id, trailing_message
            """,
            (self.account.account_id, kind.code, initiator_id, trailing_message),
        )
        return _map_event(self._cur.fetchone())


class AccountRepository:
    """Postgres-backed account and event log persistence."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    yield cur
        except (psycopg.Error, PoolTimeout) as exc:
            logger.warning("account store unavailable: %s", exc)
            raise PersistenceError(str(exc)) from exc

    def create_account(self, payload: CreateAccountInput, passphrase_hash: str) -> Account:
        """Persist a new active account and return it.

        Raises ``DuplicateAccountError`` when the email address is taken.
        """
        account_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        email = payload.email.strip().lower()
        with self._cursor() as cur:
            try:
                cur.execute(
                    f"""
                    INSERT INTO accounts (
                        account_id, name, email, passphrase_hash, created_at,
                        passphrase_changed_at, role, status, failed_attempts,
                        organisation_id, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 0, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account_id,
                        payload.name,
                        email,
                        passphrase_hash,
                        now,
                        now,
                        payload.role.value,
                        AccountStatus.active.value,
                        payload.organisation_id,
                        now,
                    ),
                )
            except psycopg.errors.UniqueViolation as exc:
                logger.info("registration rejected, email already in use")
                raise DuplicateAccountError(email) from exc
            row = cur.fetchone()
        return _map_account(row)

    def get_account(self, account_id: str) -> Account | None:
        """Fetch an account by identifier or return ``None``."""
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s",
                (account_id,),
            )
            row = cur.fetchone()
        return _map_account(row) if row else None

    def get_accounts(self, account_ids: list[str]) -> dict[str, Account]:
        """Fetch several accounts at once, keyed by identifier."""
        if not account_ids:
            return {}
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = ANY(%s)",
                (list(account_ids),),
            )
            rows = cur.fetchall()
        return {row[0]: _map_account(row) for row in rows}

    def find_account_by_email(self, email: str) -> Account | None:
        """Return the account registered under the normalised ``email``."""
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = %s",
                (email,),
            )
            row = cur.fetchone()
        return _map_account(row) if row else None

    def find_account_by_reset_token(self, token_hash: str) -> Account | None:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE reset_token_hash = %s",
                (token_hash,),
            )
            row = cur.fetchone()
        return _map_account(row) if row else None

    @contextmanager
    def account_transaction(self, account_id: str) -> Iterator[AccountTransaction]:
        """Lock the account row for the duration of the block.

        Concurrent transactions on the same account wait on ``FOR UPDATE`` so
        read-modify-write sequences such as the failed-login counter never lose
        increments. Any exception raised inside the block rolls back both the
        account update and the appended events.

        Raises
        ------
        AccountNotFoundError
            When no account row exists for ``account_id``.
        PersistenceError
            When the database is unavailable or rejects a statement.
        """
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor(row_factory=tuple_row) as cur:
                        cur.execute(
                            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s FOR UPDATE",
                            (account_id,),
                        )
                        row = cur.fetchone()
                        if row is None:
                            raise AccountNotFoundError(account_id)
                        yield AccountTransaction(cur, _map_account(row))
        except (psycopg.Error, PoolTimeout) as exc:
            logger.warning("account transaction for %s rolled back: %s", account_id, exc)
            raise PersistenceError(str(exc)) from exc

    def list_event_logs(
        self,
        account_id: str,
        *,
        limit: int = 100,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[EventLogEntry], Optional[Tuple[datetime, int]]]:
        """Return event log entries for an account, newest first, with cursor pagination."""
        clauses = ["account_id = %s"]
        params: list[Any] = [account_id]
        if cursor:
            clauses.append("(created_at, id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT id, account_id, event_id, created_at, initiator_id, trailing_message
            FROM event_logs
            WHERE {where_sql}
            ORDER BY created_at DESC, id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._cursor() as cur:
            cur.execute(query, params)
            entries = [_map_event(row) for row in cur.fetchall()]

        next_cursor: Tuple[datetime, int] | None = None
        if len(entries) == limit:
            last = entries[-1]
            next_cursor = (last.created_at, last.entry_id)
        return entries, next_cursor
