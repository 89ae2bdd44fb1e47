"""HTTP route definitions for the sign-on service."""

from __future__ import annotations

import hashlib
import logging

from datetime import datetime
from typing import Any

import jwt
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from prometheus_client import Counter
from pydantic import BaseModel, EmailStr, Field

from ..config import get_settings
from ..domain.account import Account, Actor, Role
from ..domain.contracts import CreateAccountInput, LoginOutcome, PassphraseChangeResult
from ..domain.errors import (
    AccountNotFoundError,
    AuthorizationError,
    DuplicateAccountError,
    InvalidResetTokenError,
    InvalidTransitionError,
    PassphraseRejectedError,
    PersistenceError,
    SignonError,
)
from ..domain.event_log import EventLogEntry, describe
from ..domain.service import AccountService
from ..security.rate_limiter import SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter
from ..security.tokens import decode_access_token, issue_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

SIGN_IN_ATTEMPTS = Counter(
    "signon_sign_in_attempts_total",
    "Sign-in attempts by outcome",
    ["outcome"],
)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or passphrase."
LOGIN_DENIED_MESSAGES = {
    LoginOutcome.invalid_credentials: INVALID_CREDENTIALS_MESSAGE,
    LoginOutcome.locked: "Your account is locked.",
    LoginOutcome.suspended: "Your account has been suspended.",
}


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate."""

    account_id: str
    name: str
    email: str
    role: Role
    status: str
    failed_attempts: int
    organisation_id: str | None
    reason_for_suspension: str | None
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            name=account.name,
            email=account.email,
            role=account.role,
            status=account.status.value,
            failed_attempts=account.failed_attempts,
            organisation_id=account.organisation_id,
            reason_for_suspension=account.reason_for_suspension,
            created_at=account.created_at,
        )


class CreateAccountRequest(BaseModel):
    """Payload accepted when registering an account."""

    name: str = Field(..., min_length=1)
    email: EmailStr
    passphrase: str
    role: Role = Role.user
    organisation_id: str | None = None


class SignInRequest(BaseModel):
    """Sign-in form body.

    ``email`` is deliberately untyped so tampered values reach the service,
    which treats them as an unknown account.
    """

    email: Any = None
    passphrase: Any = None


class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    passphrase_expired: bool = False


class ResetRequest(BaseModel):
    email: Any = None


class ResetSubmission(BaseModel):
    passphrase: str | None = None
    passphrase_confirmation: str | None = None


class PassphraseChangeRequest(BaseModel):
    current_passphrase: str | None = None
    passphrase: str | None = None
    passphrase_confirmation: str | None = None


class SuspendRequest(BaseModel):
    reason: str


class EventLogItem(BaseModel):
    """Event log response entry."""

    entry_id: int
    event: str
    description: str
    initiator_id: str | None
    initiator_name: str | None
    trailing_message: str | None
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: EventLogEntry, names: dict[str, str]) -> "EventLogItem":
        initiator_name = names.get(entry.initiator_id) if entry.initiator_id else None
        return cls(
            entry_id=entry.entry_id,
            event=entry.kind.name,
            description=describe(entry, initiator_name),
            initiator_id=entry.initiator_id,
            initiator_name=initiator_name,
            trailing_message=entry.trailing_message,
            created_at=entry.created_at,
        )


class EventLogResponse(BaseModel):
    """Envelope for paginated event log data."""

    account_id: str
    account_name: str
    items: list[EventLogItem]
    next_cursor: str | None = None


settings = get_settings()


def _build_rate_limiter() -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_actor(
    authorization: str | None = Header(default=None),
    service: AccountService = Depends(get_service),
) -> Actor:
    """Identify the requesting account from its bearer token.

    The account is re-read so role and organisation changes apply immediately.
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    try:
        claims = decode_access_token(authorization.split(" ", 1)[1].strip())
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token") from exc
    account = service.get_account(str(claims.get("sub", "")))
    if account is None or not account.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    return Actor.from_account(account)


def _throttle(key: str) -> None:
    if not rate_limiter.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


def _client_key(request: Request, value: Any) -> str:
    host = request.client.host if request.client else "unknown"
    digest = hashlib.sha256(repr(value).encode("utf-8")).hexdigest()[:12]
    return f"{host}:{digest}"


@router.post("/sessions", response_model=SessionResponse)
def sign_in(
    request: Request,
    payload: SignInRequest,
    service: AccountService = Depends(get_service),
) -> SessionResponse:
    """Authenticate with email and passphrase, returning a bearer token."""
    throttle_key = f"signin:{_client_key(request, payload.email)}"
    _throttle(throttle_key)
    try:
        result = service.authenticate(payload.email, payload.passphrase)
    except PersistenceError as exc:
        raise _unavailable(exc) from exc
    SIGN_IN_ATTEMPTS.labels(outcome=result.outcome.value).inc()
    if not result.authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=LOGIN_DENIED_MESSAGES[result.outcome],
        )
    rate_limiter.reset(throttle_key)
    access_token, expires_in = issue_access_token(result.account)
    return SessionResponse(
        access_token=access_token,
        expires_in=expires_in,
        passphrase_expired=result.passphrase_expired,
    )


@router.post("/passphrase-resets", status_code=status.HTTP_202_ACCEPTED)
def request_passphrase_reset(
    request: Request,
    payload: ResetRequest,
    service: AccountService = Depends(get_service),
) -> dict[str, str]:
    """Start a passphrase reset; the response never reveals whether the email exists."""
    _throttle(f"reset:{_client_key(request, payload.email)}")
    try:
        token = service.request_passphrase_reset(payload.email)
    except PersistenceError as exc:
        raise _unavailable(exc) from exc
    if token is not None:
        # delivery is owned by the mailer collaborator
        logger.info("passphrase reset token issued")
    return {
        "detail": "If your email address exists in our database, you will receive "
        "a passphrase reset link shortly."
    }


@router.get("/passphrase-resets/{token}")
def load_passphrase_reset(
    token: str,
    service: AccountService = Depends(get_service),
) -> dict[str, str]:
    """Validate a reset link and record that it was opened."""
    try:
        account = service.load_passphrase_reset(token)
    except InvalidResetTokenError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _unavailable(exc) from exc
    return {"email": account.email}


@router.put("/passphrase-resets/{token}")
def submit_passphrase_reset(
    token: str,
    payload: ResetSubmission,
    service: AccountService = Depends(get_service),
) -> dict[str, Any]:
    try:
        result = service.reset_passphrase(
            token, payload.passphrase, payload.passphrase_confirmation
        )
    except InvalidResetTokenError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _unavailable(exc) from exc
    return _change_response(result)


@router.put("/me/passphrase")
def change_passphrase(
    payload: PassphraseChangeRequest,
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> dict[str, Any]:
    """Change the signed-in account's passphrase."""
    try:
        result = service.change_passphrase(
            actor.account_id,
            payload.current_passphrase,
            payload.passphrase,
            payload.passphrase_confirmation,
        )
    except PersistenceError as exc:
        raise _unavailable(exc) from exc
    return _change_response(result)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: CreateAccountRequest,
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Register an account on behalf of an admin."""
    try:
        account = service.register_account(
            CreateAccountInput(
                name=payload.name,
                email=payload.email,
                passphrase=payload.passphrase,
                role=payload.role,
                organisation_id=payload.organisation_id,
            ),
            actor,
        )
    except (SignonError, ValueError) as exc:
        raise _http_error_from_domain_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.get_account_for(account_id, actor)
    except (SignonError, ValueError) as exc:
        raise _http_error_from_domain_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/lock", response_model=AccountResponse)
def lock_account(
    account_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.lock(account_id, actor)
    except (SignonError, ValueError) as exc:
        raise _http_error_from_domain_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/unlock", response_model=AccountResponse)
def unlock_account(
    account_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.unlock(account_id, actor)
    except (SignonError, ValueError) as exc:
        raise _http_error_from_domain_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/suspend", response_model=AccountResponse)
def suspend_account(
    account_id: str,
    payload: SuspendRequest,
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.suspend(account_id, actor, payload.reason)
    except (SignonError, ValueError) as exc:
        raise _http_error_from_domain_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/unsuspend", response_model=AccountResponse)
def unsuspend_account(
    account_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.unsuspend(account_id, actor)
    except (SignonError, ValueError) as exc:
        raise _http_error_from_domain_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts/{account_id}/event-logs", response_model=EventLogResponse)
def list_event_logs(
    account_id: str,
    limit: int | None = Query(default=None, ge=1, le=100),
    cursor: str | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    service: AccountService = Depends(get_service),
) -> EventLogResponse:
    """Return the account access log, newest first, for permitted viewers."""
    try:
        account, entries, next_cursor = service.list_event_logs(
            account_id, actor, limit=limit, cursor=cursor
        )
        names = service.initiator_names(entries)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SignonError as exc:
        raise _http_error_from_domain_error(exc) from exc

    return EventLogResponse(
        account_id=account.account_id,
        account_name=account.name,
        items=[EventLogItem.from_domain(entry, names) for entry in entries],
        next_cursor=next_cursor,
    )


def _change_response(result: PassphraseChangeResult) -> dict[str, Any]:
    if not result.succeeded:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"errors": result.errors},
        )
    return {"detail": "Your passphrase was changed successfully."}


def _forbidden(exc: AuthorizationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)


def _unavailable(exc: PersistenceError) -> HTTPException:
    logger.error("request failed, account store unavailable: %s", exc)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="service unavailable")


def _http_error_from_domain_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthorizationError):
        return _forbidden(exc)
    if isinstance(exc, AccountNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, DuplicateAccountError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="an account with this email already exists"
        )
    if isinstance(exc, PassphraseRejectedError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"errors": exc.errors}
        )
    if isinstance(exc, PersistenceError):
        return _unavailable(exc)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
