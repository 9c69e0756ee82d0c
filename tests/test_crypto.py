"""Tests for credential encryption."""

from __future__ import annotations

import pytest

from mailhub.email.crypto import CredentialCipher, KEY_ENV_VAR


def test_token_hides_credentials() -> None:
    """Encrypted blobs reveal neither field names nor values."""
    cipher = CredentialCipher(CredentialCipher.generate_key())
    token = cipher.encrypt({"username": "bob", "password": "hunter2"})

    assert "hunter2" not in token
    assert "password" not in token
    assert cipher.decrypt(token) == {"username": "bob", "password": "hunter2"}


def test_wrong_key_is_rejected() -> None:
    token = CredentialCipher(CredentialCipher.generate_key()).encrypt({"password": "x"})
    other = CredentialCipher(CredentialCipher.generate_key())
    with pytest.raises(ValueError):
        other.decrypt(token)


def test_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(KEY_ENV_VAR, raising=False)
    with pytest.raises(RuntimeError):
        CredentialCipher.from_env()

    monkeypatch.setenv(KEY_ENV_VAR, CredentialCipher.generate_key())
    cipher = CredentialCipher.from_env()
    assert cipher.decrypt(cipher.encrypt({"a": 1})) == {"a": 1}
