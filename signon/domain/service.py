"""Account service driving sign-in, passphrase and suspension workflows with auditing."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .account import Account, AccountStatus, Actor
from .contracts import (
    CreateAccountInput,
    CredentialCheck,
    LoginOutcome,
    LoginResult,
    PassphraseChangeResult,
)
from .errors import (
    AccountNotFoundError,
    InvalidResetTokenError,
    InvalidTransitionError,
    MalformedInputError,
    PassphraseRejectedError,
)
from .event_log import EventKind, EventLogEntry, EventLogStore
from .policy import authorize_account_admin
from ..config import Settings, get_settings
from ..repository import AccountRepository, AccountTransaction
from ..security import passphrases
from ..security.tokens import generate_reset_token, hash_reset_token

logger = logging.getLogger(__name__)


def normalise_identifier(identifier: Any) -> str:
    """Return the lookup form of a sign-in identifier.

    Raises
    ------
    MalformedInputError
        When the identifier is not scalar text, e.g. a tampered form field
        that arrived as a mapping or list.
    """
    if not isinstance(identifier, str):
        raise MalformedInputError("identifier must be a string")
    return identifier.strip().lower()


class AccountService:
    """Account state machine backed by Postgres storage.

    Every action that changes an account or appends to its event log runs in a
    single row-locked repository transaction, so either both land or neither.
    """

    def __init__(
        self,
        repository: AccountRepository,
        settings: Settings | None = None,
        event_log: EventLogStore | None = None,
    ) -> None:
        """Store dependencies used to orchestrate persistence and auditing."""
        self._repository = repository
        self._settings = settings or get_settings()
        self._event_log = event_log or EventLogStore(
            repository, page_size=self._settings.event_log_page_size
        )

    @property
    def event_log(self) -> EventLogStore:
        return self._event_log

    def register_account(self, payload: CreateAccountInput, actor: Actor | None = None) -> Account:
        """Create an account on behalf of the registration collaborator.

        When ``actor`` is given it must be allowed to administer the prospective
        account, so organisation admins can only register into their own
        organisation, and nobody can register a role above their own.

        Raises
        ------
        PassphraseRejectedError
            When the initial passphrase fails the same rules as a change.
        """
        if actor is not None:
            now = datetime.now(timezone.utc)
            prospective = Account(
                account_id="",
                name=payload.name,
                email=payload.email,
                passphrase_hash="",
                created_at=now,
                passphrase_changed_at=now,
                role=payload.role,
                organisation_id=payload.organisation_id,
            )
            authorize_account_admin(actor, prospective)
        errors = passphrases.validate_new_passphrase(
            payload.passphrase,
            payload.passphrase,
            min_length=self._settings.passphrase_min_length,
        )
        if errors:
            raise PassphraseRejectedError(errors)
        passphrase_hash = passphrases.hash_passphrase(
            payload.passphrase, iterations=self._settings.passphrase_hash_iterations
        )
        account = self._repository.create_account(payload, passphrase_hash)
        logger.info("account %s registered with role %s", account.account_id, account.role.value)
        return account

    def get_account(self, account_id: str) -> Account | None:
        return self._repository.get_account(account_id)

    def get_account_for(self, account_id: str, actor: Actor) -> Account:
        """Return ``account_id`` if ``actor`` may administer it."""
        account = self._require_account(account_id)
        authorize_account_admin(actor, account)
        return account

    # -- sign in -----------------------------------------------------------

    def authenticate(self, identifier: Any, secret: Any) -> LoginResult:
        """Process a sign-in attempt and record its outcome on the account.

        Unknown and malformed identifiers produce no event and change nothing,
        so the log never reveals which identifiers exist.
        """
        try:
            email = normalise_identifier(identifier)
        except MalformedInputError:
            logger.info("sign-in attempt with malformed identifier ignored")
            return LoginResult(outcome=LoginOutcome.invalid_credentials)

        candidate = self._repository.find_account_by_email(email)
        if candidate is None:
            return LoginResult(outcome=LoginOutcome.invalid_credentials)

        with self._repository.account_transaction(candidate.account_id) as tx:
            account = tx.account
            check = passphrases.check_credentials(account, secret)

            if account.status is AccountStatus.suspended:
                if check is CredentialCheck.match:
                    self._event_log.record(
                        account, EventKind.SUSPENDED_ACCOUNT_AUTHENTICATED_LOGIN, tx=tx
                    )
                    return LoginResult(outcome=LoginOutcome.suspended, account=account)
                self._event_log.record(account, EventKind.UNSUCCESSFUL_LOGIN, tx=tx)
                return LoginResult(outcome=LoginOutcome.invalid_credentials, account=account)

            if account.status is AccountStatus.locked:
                self._event_log.record(account, EventKind.UNSUCCESSFUL_LOGIN, tx=tx)
                return LoginResult(outcome=LoginOutcome.locked, account=account)

            if check is CredentialCheck.mismatch:
                return self._record_failed_login(tx)

            account.failed_attempts = 0
            tx.save(account)
            self._event_log.record(account, EventKind.SUCCESSFUL_LOGIN, tx=tx)
            expired = self._passphrase_expired(account)
            if expired:
                self._event_log.record(account, EventKind.PASSPHRASE_EXPIRED, tx=tx)
            return LoginResult(
                outcome=LoginOutcome.authenticated, account=account, passphrase_expired=expired
            )

    def _record_failed_login(self, tx: AccountTransaction) -> LoginResult:
        account = tx.account
        account.failed_attempts += 1
        locked = account.failed_attempts >= self._settings.lockout_threshold
        if locked:
            account.status = AccountStatus.locked
            account.locked_at = datetime.now(timezone.utc)
        tx.save(account)
        self._event_log.record(account, EventKind.UNSUCCESSFUL_LOGIN, tx=tx)
        if locked:
            self._event_log.record(account, EventKind.ACCOUNT_LOCKED, tx=tx)
            logger.warning(
                "account %s locked after %d failed sign-in attempts",
                account.account_id,
                account.failed_attempts,
            )
            return LoginResult(outcome=LoginOutcome.locked, account=account)
        return LoginResult(outcome=LoginOutcome.invalid_credentials, account=account)

    def _passphrase_expired(self, account: Account) -> bool:
        max_age = timedelta(days=self._settings.passphrase_max_age_days)
        return datetime.now(timezone.utc) - account.passphrase_changed_at > max_age

    # -- admin transitions -------------------------------------------------

    def lock(self, account_id: str, actor: Actor) -> Account:
        """Lock an active account on an admin's behalf."""
        with self._admin_transaction(account_id, actor) as tx:
            account = tx.account
            self._require_status(account, "lock", AccountStatus.active)
            account.status = AccountStatus.locked
            account.locked_at = datetime.now(timezone.utc)
            tx.save(account)
            self._event_log.record(account, EventKind.ACCOUNT_LOCKED, initiator=actor, tx=tx)
        logger.info("account %s locked by %s", account_id, actor.account_id)
        return account

    def unlock(self, account_id: str, actor: Actor) -> Account:
        with self._admin_transaction(account_id, actor) as tx:
            account = tx.account
            self._require_status(account, "unlock", AccountStatus.locked)
            account.status = AccountStatus.active
            account.failed_attempts = 0
            account.locked_at = None
            tx.save(account)
            self._event_log.record(
                account, EventKind.MANUAL_ACCOUNT_UNLOCK, initiator=actor, tx=tx
            )
        logger.info("account %s unlocked by %s", account_id, actor.account_id)
        return account

    def suspend(self, account_id: str, actor: Actor, reason: str) -> Account:
        """Suspend an active or locked account, keeping ``reason`` on the account and the log."""
        if not isinstance(reason, str) or not reason.strip():
            raise ValueError("reason for suspension can't be blank")
        reason = reason.strip()
        with self._admin_transaction(account_id, actor) as tx:
            account = tx.account
            self._require_status(account, "suspend", AccountStatus.active, AccountStatus.locked)
            account.status = AccountStatus.suspended
            account.reason_for_suspension = reason
            tx.save(account)
            self._event_log.record(
                account,
                EventKind.ACCOUNT_SUSPENDED,
                initiator=actor,
                trailing_message=reason,
                tx=tx,
            )
        logger.info("account %s suspended by %s", account_id, actor.account_id)
        return account

    def unsuspend(self, account_id: str, actor: Actor) -> Account:
        with self._admin_transaction(account_id, actor) as tx:
            account = tx.account
            self._require_status(account, "unsuspend", AccountStatus.suspended)
            account.status = AccountStatus.active
            account.reason_for_suspension = None
            account.failed_attempts = 0
            account.locked_at = None
            tx.save(account)
            self._event_log.record(
                account, EventKind.ACCOUNT_UNSUSPENDED, initiator=actor, tx=tx
            )
        logger.info("account %s unsuspended by %s", account_id, actor.account_id)
        return account

    def _admin_transaction(self, account_id: str, actor: Actor):
        authorize_account_admin(actor, self._require_account(account_id))
        return self._repository.account_transaction(account_id)

    def _require_status(self, account: Account, action: str, *allowed: AccountStatus) -> None:
        if account.status not in allowed:
            raise InvalidTransitionError(
                f"cannot {action} an account that is {account.status.value}"
            )

    def _require_account(self, account_id: str) -> Account:
        account = self._repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    # -- passphrases -------------------------------------------------------

    def request_passphrase_reset(self, email: Any) -> str | None:
        """Issue a reset token for a known email and return it for delivery.

        Unknown or malformed emails return ``None`` without recording anything.
        """
        try:
            normalised = normalise_identifier(email)
        except MalformedInputError:
            return None
        candidate = self._repository.find_account_by_email(normalised)
        if candidate is None:
            return None

        token, token_hash = generate_reset_token()
        with self._repository.account_transaction(candidate.account_id) as tx:
            account = tx.account
            account.reset_token_hash = token_hash
            account.reset_sent_at = datetime.now(timezone.utc)
            tx.save(account)
            self._event_log.record(account, EventKind.PASSPHRASE_RESET_REQUEST, tx=tx)
        return token

    def load_passphrase_reset(self, token: str) -> Account:
        """Record that a reset link was opened and return the account it belongs to."""
        candidate = self._find_by_reset_token(token)
        with self._repository.account_transaction(candidate.account_id) as tx:
            self._ensure_reset_token(tx.account, token)
            self._event_log.record(tx.account, EventKind.PASSPHRASE_RESET_LOADED, tx=tx)
            return tx.account

    def reset_passphrase(
        self, token: str, passphrase: str | None, confirmation: str | None
    ) -> PassphraseChangeResult:
        """Set a new passphrase through a reset token.

        Validation failures are recorded with the joined messages as the
        trailing message and leave the token usable.
        """
        candidate = self._find_by_reset_token(token)
        with self._repository.account_transaction(candidate.account_id) as tx:
            account = tx.account
            self._ensure_reset_token(account, token)
            errors = passphrases.validate_new_passphrase(
                passphrase,
                confirmation,
                min_length=self._settings.passphrase_min_length,
                current_hash=account.passphrase_hash,
            )
            if errors:
                self._event_log.record(
                    account,
                    EventKind.PASSPHRASE_RESET_FAILURE,
                    trailing_message="; ".join(errors),
                    tx=tx,
                )
                return PassphraseChangeResult(succeeded=False, errors=errors)

            self._apply_new_passphrase(account, passphrase)
            account.reset_token_hash = None
            account.reset_sent_at = None
            tx.save(account)
            self._event_log.record(account, EventKind.SUCCESSFUL_PASSPHRASE_CHANGE, tx=tx)
        return PassphraseChangeResult(succeeded=True)

    def change_passphrase(
        self,
        account_id: str,
        current: str | None,
        passphrase: str | None,
        confirmation: str | None,
    ) -> PassphraseChangeResult:
        """Change a signed-in account's passphrase, recording success or rejection."""
        with self._repository.account_transaction(account_id) as tx:
            account = tx.account
            if not passphrases.verify_passphrase(current, account.passphrase_hash):
                errors = [passphrases.CURRENT_INVALID]
            else:
                errors = passphrases.validate_new_passphrase(
                    passphrase,
                    confirmation,
                    min_length=self._settings.passphrase_min_length,
                    current_hash=account.passphrase_hash,
                )
            if errors:
                self._event_log.record(
                    account,
                    EventKind.UNSUCCESSFUL_PASSPHRASE_CHANGE,
                    trailing_message="; ".join(errors),
                    tx=tx,
                )
                return PassphraseChangeResult(succeeded=False, errors=errors)

            self._apply_new_passphrase(account, passphrase)
            tx.save(account)
            self._event_log.record(account, EventKind.SUCCESSFUL_PASSPHRASE_CHANGE, tx=tx)
        return PassphraseChangeResult(succeeded=True)

    def _apply_new_passphrase(self, account: Account, passphrase: str) -> None:
        account.passphrase_hash = passphrases.hash_passphrase(
            passphrase, iterations=self._settings.passphrase_hash_iterations
        )
        account.passphrase_changed_at = datetime.now(timezone.utc)

    def _find_by_reset_token(self, token: Any) -> Account:
        if not isinstance(token, str) or not token:
            raise InvalidResetTokenError("reset token is invalid")
        account = self._repository.find_account_by_reset_token(hash_reset_token(token))
        if account is None:
            raise InvalidResetTokenError("reset token is invalid")
        return account

    def _ensure_reset_token(self, account: Account, token: str) -> None:
        # re-checked under the row lock; a concurrent reset may have consumed it
        if account.reset_token_hash != hash_reset_token(token) or account.reset_sent_at is None:
            raise InvalidResetTokenError("reset token is invalid")
        ttl = timedelta(seconds=self._settings.reset_token_ttl_seconds)
        if datetime.now(timezone.utc) - account.reset_sent_at > ttl:
            raise InvalidResetTokenError("reset token has expired")

    # -- event log ---------------------------------------------------------

    def list_event_logs(
        self,
        account_id: str,
        actor: Actor,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[Account, list[EventLogEntry], str | None]:
        """Return the account and a page of its event log if ``actor`` may view it."""
        account = self._require_account(account_id)
        entries, next_cursor = self._event_log.query(account, actor, limit=limit, cursor=cursor)
        return account, entries, next_cursor

    def initiator_names(self, entries: list[EventLogEntry]) -> dict[str, str]:
        """Resolve display names for the initiators referenced by ``entries``."""
        ids = sorted({entry.initiator_id for entry in entries if entry.initiator_id})
        return {
            account_id: account.name
            for account_id, account in self._repository.get_accounts(ids).items()
        }
