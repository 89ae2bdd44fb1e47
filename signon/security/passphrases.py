"""Passphrase hashing, verification and strength validation."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Any

from ..domain.account import Account
from ..domain.contracts import CredentialCheck

_ALGORITHM = "pbkdf2_sha256"
_ITERATIONS = 260_000

BLANK = "Passphrase can't be blank"
NOT_STRONG_ENOUGH = "Passphrase not strong enough"
CONFIRMATION_MISMATCH = "Passphrase confirmation doesn't match Passphrase"
SAME_AS_CURRENT = "Passphrase must be different from the current passphrase"
CURRENT_INVALID = "Current passphrase is invalid"


def hash_passphrase(passphrase: str, *, iterations: int = _ITERATIONS) -> str:
    """Return an encoded ``algorithm$iterations$salt$digest`` string for ``passphrase``."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", passphrase.encode("utf-8"), salt.encode("utf-8"), iterations
    )
    return f"{_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_passphrase(passphrase: Any, encoded: str) -> bool:
    """Return ``True`` when ``passphrase`` matches the encoded hash.

    Non-string input never matches.
    """
    if not isinstance(passphrase, str):
        return False
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
    except ValueError:
        return False
    if algorithm != _ALGORITHM:
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256", passphrase.encode("utf-8"), salt.encode("utf-8"), int(iterations)
    )
    return hmac.compare_digest(digest.hex(), expected)


def check_credentials(account: Account | None, passphrase: Any) -> CredentialCheck:
    """Credential verification outcome consumed by the account state machine."""
    if account is None:
        return CredentialCheck.not_found
    if verify_passphrase(passphrase, account.passphrase_hash):
        return CredentialCheck.match
    return CredentialCheck.mismatch


def validate_new_passphrase(
    passphrase: str | None,
    confirmation: str | None,
    *,
    min_length: int,
    current_hash: str | None = None,
) -> list[str]:
    """Return the list of validation messages for a proposed passphrase (empty when valid)."""
    errors: list[str] = []
    value = passphrase or ""
    if not value.strip():
        errors.append(BLANK)
    if not _strong_enough(value, min_length):
        errors.append(NOT_STRONG_ENOUGH)
    if value and confirmation != value:
        errors.append(CONFIRMATION_MISMATCH)
    if value and current_hash and verify_passphrase(value, current_hash):
        errors.append(SAME_AS_CURRENT)
    return errors


def _strong_enough(value: str, min_length: int) -> bool:
    # length plus a floor on character variety rules out "aaaaaaaaaaaa"
    return len(value) >= min_length and len(set(value.lower())) >= 6
