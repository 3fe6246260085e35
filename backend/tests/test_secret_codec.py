"""
Secret codec tests.

Verifies:
- Round trip under the configured key, with no plaintext in the token
- Tokens from an unknown key or garbage raise DecryptionError
- Previous keys decrypt and rotate() moves tokens to the primary key
- Missing / malformed keys fail at startup
- mask() shape
"""

import pytest
from cryptography.fernet import Fernet
from flask import Flask

from topup import crypto
from topup.crypto import SecretCodec, mask
from topup.exceptions import ConfigurationError, DecryptionError


def _codec(primary, previous=""):
    app = Flask(__name__)
    app.config.update(STOCK_ENCRYPTION_KEY=primary, STOCK_ENCRYPTION_PREVIOUS_KEYS=previous)
    return SecretCodec(app)


# =============================================================================
# MASK
# =============================================================================


class TestMask:

    @pytest.mark.parametrize(
        "plaintext,expected",
        [
            ("123456789012", "****9012"),
            ("12345", "****2345"),
            ("1234", "****"),
            ("12", "****"),
            ("", "****"),
            (None, "****"),
        ],
    )
    def test_mask_shape(self, plaintext, expected):
        assert mask(plaintext) == expected

    def test_mask_never_echoes_short_secret(self):
        assert "1234" not in mask("1234")


# =============================================================================
# ENCRYPT / DECRYPT
# =============================================================================


class TestCodec:

    def test_round_trip(self, app):
        token = crypto.encrypt("1234-5678-9012")
        assert "1234-5678-9012" not in token
        assert crypto.decrypt(token) == "1234-5678-9012"

    def test_two_encryptions_differ(self, app):
        assert crypto.encrypt("same") != crypto.encrypt("same")

    def test_unknown_key_raises(self, app):
        foreign = Fernet(Fernet.generate_key()).encrypt(b"secret").decode()
        with pytest.raises(DecryptionError):
            crypto.decrypt(foreign)

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "gAAAAA"])
    def test_malformed_raises(self, app, garbage):
        with pytest.raises(DecryptionError):
            crypto.decrypt(garbage)

    def test_previous_key_still_decrypts_and_rotates(self):
        old_key = Fernet.generate_key().decode()
        new_key = Fernet.generate_key().decode()
        old_token = _codec(old_key).encrypt("PIN-9999")

        codec = _codec(new_key, previous=old_key)
        assert codec.decrypt(old_token) == "PIN-9999"
        assert not codec.is_current(old_token)

        rotated = codec.rotate(old_token)
        assert codec.is_current(rotated)
        assert _codec(new_key).decrypt(rotated) == "PIN-9999"

    def test_rotate_unreadable_raises(self):
        codec = _codec(Fernet.generate_key().decode())
        foreign = Fernet(Fernet.generate_key()).encrypt(b"x").decode()
        with pytest.raises(DecryptionError):
            codec.rotate(foreign)


# =============================================================================
# CONFIGURATION
# =============================================================================


class TestConfiguration:

    def test_missing_key_fails_at_startup(self):
        with pytest.raises(ConfigurationError):
            _codec(None)

    def test_malformed_key_fails_at_startup(self):
        with pytest.raises(ConfigurationError):
            _codec("definitely-not-a-fernet-key")

    def test_malformed_previous_key_fails_at_startup(self):
        with pytest.raises(ConfigurationError):
            _codec(Fernet.generate_key().decode(), previous="bogus")

    def test_unconfigured_codec_raises(self):
        with pytest.raises(ConfigurationError):
            SecretCodec().encrypt("x")

    def test_create_app_requires_key(self):
        from topup import create_app
        from conftest import make_config

        with pytest.raises(ConfigurationError):
            create_app(make_config(STOCK_ENCRYPTION_KEY=None))
