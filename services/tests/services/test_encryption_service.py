"""Tests for credential encryption."""

import pytest
from cryptography.fernet import Fernet

from vregistry.services.encryption_service import (
    decrypt_credential,
    encrypt_credential,
    init_encryption,
    is_encryption_available,
)


def test_round_trip(encryption):
    token = encrypt_credential("s3cret")
    assert token != "s3cret"
    assert decrypt_credential(token) == "s3cret"


def test_wrong_key_fails(encryption):
    token = encrypt_credential("s3cret")
    init_encryption(Fernet.generate_key().decode())
    with pytest.raises(ValueError, match="key mismatch"):
        decrypt_credential(token)


def test_unconfigured():
    init_encryption("")
    assert not is_encryption_available()
    with pytest.raises(RuntimeError, match="Encryption not configured"):
        encrypt_credential("s3cret")


def test_invalid_key_disables_encryption():
    init_encryption("not-a-fernet-key")
    assert not is_encryption_available()


def test_rotated_keys_still_decrypt():
    old_key, new_key = Fernet.generate_key().decode(), Fernet.generate_key().decode()
    init_encryption(old_key)
    token = encrypt_credential("s3cret")

    init_encryption(f"{new_key}, {old_key}")
    try:
        assert decrypt_credential(token) == "s3cret"
        fresh = encrypt_credential("other")
        # Tokens written after rotation only need the new key
        init_encryption(new_key)
        assert decrypt_credential(fresh) == "other"
    finally:
        init_encryption("")
