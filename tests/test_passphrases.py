from __future__ import annotations

from signon.security import passphrases


def test_hash_round_trip():
    encoded = passphrases.hash_passphrase("correct horse battery staple", iterations=1000)

    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert passphrases.verify_passphrase("correct horse battery staple", encoded)
    assert not passphrases.verify_passphrase("incorrect", encoded)


def test_verify_rejects_non_strings_and_garbage_hashes():
    encoded = passphrases.hash_passphrase("correct horse battery staple", iterations=1000)

    assert not passphrases.verify_passphrase({"foo": "bar"}, encoded)
    assert not passphrases.verify_passphrase(None, encoded)
    assert not passphrases.verify_passphrase("anything", "not-a-hash")


def test_check_credentials_outcomes(make_account):
    account = make_account()

    assert passphrases.check_credentials(None, "x") is passphrases.CredentialCheck.not_found
    assert passphrases.check_credentials(account, "x") is passphrases.CredentialCheck.mismatch
    assert (
        passphrases.check_credentials(account, "correct horse battery staple")
        is passphrases.CredentialCheck.match
    )


def test_blank_passphrase_reports_blank_and_weak():
    errors = passphrases.validate_new_passphrase("", "", min_length=10)

    assert errors == [passphrases.BLANK, passphrases.NOT_STRONG_ENOUGH]


def test_weak_and_mismatched_passphrases():
    assert passphrases.validate_new_passphrase("aaaaaaaaaaaa", "aaaaaaaaaaaa", min_length=10) == [
        passphrases.NOT_STRONG_ENOUGH
    ]
    assert passphrases.validate_new_passphrase(
        "correct horse battery daffodil", "something else", min_length=10
    ) == [passphrases.CONFIRMATION_MISMATCH]


def test_reusing_current_passphrase_is_rejected():
    current = passphrases.hash_passphrase("correct horse battery staple", iterations=1000)

    errors = passphrases.validate_new_passphrase(
        "correct horse battery staple",
        "correct horse battery staple",
        min_length=10,
        current_hash=current,
    )

    assert errors == [passphrases.SAME_AS_CURRENT]
