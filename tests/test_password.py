"""Tests for password hashing."""

from credvault_server.core.password import (
    DUMMY_PASSWORD_HASH,
    burn_password_check,
    hash_password,
    verify_password,
)


def test_hash_and_verify():
    hashed = hash_password("s3cret-password")

    assert hashed.startswith("$argon2")
    assert verify_password("s3cret-password", hashed)
    assert not verify_password("wrong-password", hashed)


def test_same_password_hashes_differently():
    assert hash_password("s3cret-password") != hash_password("s3cret-password")


def test_garbage_hash_does_not_raise():
    assert not verify_password("anything", "not-an-argon2-hash")


def test_dummy_check_accepts_missing_password():
    burn_password_check(None)
    burn_password_check("guess")
    assert not verify_password("guess", DUMMY_PASSWORD_HASH)
