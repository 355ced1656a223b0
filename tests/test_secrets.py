import base64

import pytest

from edenflow.security.secrets import SecretError, decrypt_secret, encrypt_secret
from edenflow.services.ai_service import (
    load_provider_secret,
    provider_secret_status,
    set_provider_secret,
)


def _set_master_env(monkeypatch):
    key = base64.urlsafe_b64encode(b"a" * 32).decode("utf-8").rstrip("=")
    monkeypatch.setenv("EDENFLOW_MASTER_KEY", key)
    monkeypatch.setenv("EDENFLOW_KEY_ID", "v1")


def test_encrypt_decrypt_roundtrip(monkeypatch):
    _set_master_env(monkeypatch)
    key_id, blob = encrypt_secret("supersecret", b"account:test")
    assert key_id == "v1"
    assert decrypt_secret(blob, b"account:test") == "supersecret"


def test_aad_mismatch_is_rejected(monkeypatch):
    _set_master_env(monkeypatch)
    _, blob = encrypt_secret("supersecret", b"account:test")
    with pytest.raises(SecretError):
        decrypt_secret(blob, b"account:other")


def test_master_key_validation(monkeypatch):
    monkeypatch.delenv("EDENFLOW_MASTER_KEY", raising=False)
    with pytest.raises(SecretError, match="not set"):
        encrypt_secret("x", b"aad")
    monkeypatch.setenv("EDENFLOW_MASTER_KEY", base64.urlsafe_b64encode(b"short").decode("utf-8"))
    with pytest.raises(SecretError, match="32 bytes"):
        encrypt_secret("x", b"aad")


def test_provider_secret_is_bound_to_account(conn, tenants, monkeypatch):
    _set_master_env(monkeypatch)

    status = set_provider_secret(conn, tenants.a, "  sk-live-9876  ")

    assert status["configured"] is True
    assert status["last4"] == "9876"
    assert load_provider_secret(conn, tenants.a) == "sk-live-9876"
    assert provider_secret_status(conn, tenants.b)["configured"] is False
    assert load_provider_secret(conn, tenants.b) is None
    # A ciphertext copied to another account does not decrypt there.
    conn.execute(
        "INSERT INTO provider_secrets (account_id, key_id, ciphertext, last4, updated_at) "
        "SELECT ?, key_id, ciphertext, last4, updated_at FROM provider_secrets WHERE account_id = ?",
        (tenants.b, tenants.a),
    )
    with pytest.raises(SecretError):
        load_provider_secret(conn, tenants.b)
