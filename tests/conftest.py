from __future__ import annotations

import dataclasses
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from signon.api import routes
from signon.config import get_settings
from signon.domain.account import Account, Actor, Role
from signon.domain.contracts import CreateAccountInput
from signon.domain.errors import AccountNotFoundError, DuplicateAccountError, PersistenceError
from signon.domain.event_log import EventKind, EventLogEntry
from signon.domain.service import AccountService
from signon.security.tokens import issue_access_token

PASSPHRASE = "correct horse battery staple"


class FakeTransaction:
    """Staged changes for one locked account, applied only on commit."""

    def __init__(self, repository: "FakeRepository", account: Account, started_at: datetime) -> None:
        self._repository = repository
        self._started_at = started_at
        self.account = account
        self.saved: Account | None = None
        self.events: list[EventLogEntry] = []

    def save(self, account: Account | None = None) -> None:
        self.saved = dataclasses.replace(account or self.account)

    def append_event(
        self,
        *,
        kind: EventKind,
        initiator_id: str | None = None,
        trailing_message: str | None = None,
    ) -> EventLogEntry:
        if not self._repository.available:
            raise PersistenceError("event log store unavailable")
        entry = EventLogEntry(
            entry_id=self._repository.next_entry_id(),
            account_id=self.account.account_id,
            kind=kind,
            created_at=self._started_at,
            initiator_id=initiator_id,
            trailing_message=trailing_message,
        )
        self.events.append(entry)
        return entry


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviours."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._row_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._entry_seq = 0
        self.event_logs: list[EventLogEntry] = []
        self.available = True

    def next_entry_id(self) -> int:
        with self._guard:
            self._entry_seq += 1
            return self._entry_seq

    def create_account(self, payload: CreateAccountInput, passphrase_hash: str) -> Account:
        now = datetime.now(timezone.utc)
        account = Account(
            account_id=str(uuid.uuid4()),
            name=payload.name,
            email=payload.email.strip().lower(),
            passphrase_hash=passphrase_hash,
            created_at=now,
            passphrase_changed_at=now,
            role=payload.role,
            organisation_id=payload.organisation_id,
        )
        with self._guard:
            if any(existing.email == account.email for existing in self._accounts.values()):
                raise DuplicateAccountError(account.email)
            self._accounts[account.account_id] = account
            self._row_locks[account.account_id] = threading.Lock()
        return dataclasses.replace(account)

    def get_account(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return dataclasses.replace(account) if account else None

    def get_accounts(self, account_ids: list[str]) -> dict[str, Account]:
        return {
            account_id: dataclasses.replace(self._accounts[account_id])
            for account_id in account_ids
            if account_id in self._accounts
        }

    def find_account_by_email(self, email: str) -> Account | None:
        for account in self._accounts.values():
            if account.email == email:
                return dataclasses.replace(account)
        return None

    def find_account_by_reset_token(self, token_hash: str) -> Account | None:
        for account in self._accounts.values():
            if account.reset_token_hash == token_hash:
                return dataclasses.replace(account)
        return None

    @contextmanager
    def account_transaction(self, account_id: str):
        row_lock = self._row_locks.get(account_id)
        if row_lock is None:
            raise AccountNotFoundError(account_id)
        with row_lock:
            tx = FakeTransaction(
                self,
                dataclasses.replace(self._accounts[account_id]),
                datetime.now(timezone.utc),
            )
            yield tx
            with self._guard:
                if tx.saved is not None:
                    self._accounts[account_id] = tx.saved
                self.event_logs.extend(tx.events)

    def list_event_logs(self, account_id: str, *, limit: int = 100, cursor=None):
        results = [entry for entry in self.event_logs if entry.account_id == account_id]
        results.sort(key=lambda e: (e.created_at, e.entry_id), reverse=True)
        if cursor:
            results = [entry for entry in results if (entry.created_at, entry.entry_id) < cursor]
        page = results[:limit]
        next_cursor = None
        if len(page) == limit:
            last = page[-1]
            next_cursor = (last.created_at, last.entry_id)
        return page, next_cursor

    # test helpers

    def update(self, account_id: str, **changes) -> None:
        self._accounts[account_id] = dataclasses.replace(self._accounts[account_id], **changes)

    def kinds_for(self, account: Account) -> list[EventKind]:
        """Entry kinds for ``account`` in insertion order."""
        return [entry.kind for entry in self.event_logs if entry.account_id == account.account_id]


@pytest.fixture
def settings():
    return dataclasses.replace(
        get_settings(),
        lockout_threshold=7,
        passphrase_max_age_days=90,
        passphrase_min_length=10,
        passphrase_hash_iterations=1000,
        event_log_page_size=100,
    )


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def service(repository, settings) -> AccountService:
    return AccountService(repository, settings)


@pytest.fixture
def make_account(service):
    def _make(
        name: str = "Normal User",
        *,
        email: str | None = None,
        role: Role = Role.user,
        organisation_id: str | None = None,
        passphrase: str = PASSPHRASE,
    ) -> Account:
        return service.register_account(
            CreateAccountInput(
                name=name,
                email=email or f"{uuid.uuid4().hex[:8]}@example.com",
                passphrase=passphrase,
                role=role,
                organisation_id=organisation_id,
            )
        )

    return _make


@pytest.fixture
def user(make_account) -> Account:
    return make_account("Normal User", email="user@example.com")


@pytest.fixture
def admin(make_account) -> Account:
    return make_account("Admin User", email="admin@example.com", role=Role.admin)


@pytest.fixture
def admin_actor(admin) -> Actor:
    return Actor.from_account(admin)


@pytest.fixture
def api_client(service):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.state.account_service = service

    original_limiter = routes.rate_limiter
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=100, window_seconds=60)

    with TestClient(app) as client:
        yield client

    routes.rate_limiter = original_limiter


def bearer(account: Account) -> dict[str, str]:
    token, _ = issue_access_token(account)
    return {"Authorization": f"Bearer {token}"}


