"""Tests for credential encryption."""

import base64

import pytest

from tech_roadmap.config import SECRET_ENV_KEY, Config
from tech_roadmap.exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    InvalidSecretPayload,
)
from tech_roadmap.secret_store import decrypt_secret, encrypt_secret


def _flip_first_byte(segment: str) -> str:
    data = bytearray(base64.b64decode(segment))
    data[0] ^= 0x01
    return base64.b64encode(bytes(data)).decode("ascii")


class TestRoundTrip:
    """Tests for encrypt/decrypt round trips."""

    def test_round_trip(self):
        assert decrypt_secret(encrypt_secret("my-pat-123")) == "my-pat-123"

    def test_round_trip_unicode(self):
        assert decrypt_secret(encrypt_secret("pässwörd ✓")) == "pässwörd ✓"

    def test_round_trip_empty(self):
        assert decrypt_secret(encrypt_secret("")) == ""

    def test_non_deterministic(self):
        assert encrypt_secret("same") != encrypt_secret("same")

    def test_payload_shape(self):
        nonce, tag, data = encrypt_secret("abc").split(".")
        assert len(base64.b64decode(nonce)) == 12
        assert len(base64.b64decode(tag)) == 16
        assert len(base64.b64decode(data)) == 3

    def test_uses_config_secret_when_env_missing(self, monkeypatch):
        monkeypatch.delenv(SECRET_ENV_KEY)
        config = Config(secret_key="from-config")
        assert decrypt_secret(encrypt_secret("pat", config), config) == "pat"


class TestTamperDetection:
    """Tests for integrity failures."""

    def test_tampered_ciphertext(self):
        nonce, tag, data = encrypt_secret("my-pat-123").split(".")
        with pytest.raises(AuthenticationFailure):
            decrypt_secret(".".join([nonce, tag, _flip_first_byte(data)]))

    def test_tampered_tag(self):
        nonce, tag, data = encrypt_secret("my-pat-123").split(".")
        with pytest.raises(AuthenticationFailure):
            decrypt_secret(".".join([nonce, _flip_first_byte(tag), data]))

    def test_tampered_nonce(self):
        nonce, tag, data = encrypt_secret("my-pat-123").split(".")
        with pytest.raises(AuthenticationFailure):
            decrypt_secret(".".join([_flip_first_byte(nonce), tag, data]))

    def test_wrong_key(self, monkeypatch):
        payload = encrypt_secret("my-pat-123")
        monkeypatch.setenv(SECRET_ENV_KEY, "a-different-secret")
        with pytest.raises(AuthenticationFailure):
            decrypt_secret(payload)

    def test_truncated_nonce(self):
        _, tag, data = encrypt_secret("my-pat-123").split(".")
        short_nonce = base64.b64encode(b"\x00" * 8).decode("ascii")
        with pytest.raises(AuthenticationFailure):
            decrypt_secret(".".join([short_nonce, tag, data]))


class TestInvalidPayload:
    """Tests for malformed payloads."""

    @pytest.mark.parametrize("payload", ["", "abc", "a.b", "a.b.c.d", ".tag.data", "nonce..data"])
    def test_wrong_shape(self, payload):
        with pytest.raises(InvalidSecretPayload):
            decrypt_secret(payload)

    def test_not_base64(self):
        with pytest.raises(InvalidSecretPayload):
            decrypt_secret("!!!.???.***")


class TestMissingMasterSecret:
    """Tests for an unset master secret."""

    def test_encrypt_requires_secret(self, monkeypatch):
        monkeypatch.delenv(SECRET_ENV_KEY)
        with pytest.raises(ConfigurationError):
            encrypt_secret("pat")

    def test_decrypt_requires_secret(self, monkeypatch):
        payload = encrypt_secret("pat")
        monkeypatch.delenv(SECRET_ENV_KEY)
        with pytest.raises(ConfigurationError):
            decrypt_secret(payload)
