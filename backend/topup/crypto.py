# Overview: Symmetric encryption and display masking for PIN / eSIM payloads.

"""
Secret codec.

- Payloads are encrypted at rest with Fernet (AES-128-CBC + HMAC-SHA256).
- The primary key comes from STOCK_ENCRYPTION_KEY; older keys listed in
  STOCK_ENCRYPTION_PREVIOUS_KEYS are still accepted for decryption so that a
  rotation can be migrated with `flask stock rotate-keys`.
- A missing or malformed key is a ConfigurationError at init_app time.
- mask() never raises and never returns more than the last 4 characters.
"""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from flask import current_app

from .exceptions import ConfigurationError, DecryptionError

MASK = "****"
VISIBLE_TAIL = 4


def mask(plaintext: str | None) -> str:
    """Fixed-shape redaction: '****' + last 4 characters, or '****' alone for short values."""
    if plaintext is None:
        return MASK
    text = str(plaintext)
    if len(text) <= VISIBLE_TAIL:
        return MASK
    return MASK + text[-VISIBLE_TAIL:]


def generate_key() -> str:
    return Fernet.generate_key().decode("ascii")


def _load_fernet(key: str, setting: str) -> Fernet:
    try:
        return Fernet(key.strip().encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError) as exc:
        raise ConfigurationError(f"{setting} is not a valid Fernet key") from exc


class SecretCodec:
    """Flask extension holding the configured cipher."""

    def __init__(self, app=None):
        self._cipher: MultiFernet | None = None
        self._primary: Fernet | None = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        primary = app.config.get("STOCK_ENCRYPTION_KEY")
        if not primary:
            raise ConfigurationError("STOCK_ENCRYPTION_KEY must be set before the app starts")

        keys = [_load_fernet(primary, "STOCK_ENCRYPTION_KEY")]
        previous = app.config.get("STOCK_ENCRYPTION_PREVIOUS_KEYS") or ""
        if isinstance(previous, str):
            previous = [k for k in previous.split(",") if k.strip()]
        for key in previous:
            keys.append(_load_fernet(key, "STOCK_ENCRYPTION_PREVIOUS_KEYS"))

        self._primary = keys[0]
        self._cipher = MultiFernet(keys)
        app.extensions["secret_codec"] = self

    @property
    def cipher(self) -> MultiFernet:
        if self._cipher is None:
            raise ConfigurationError("Secret codec used before init_app()")
        return self._cipher

    def encrypt(self, plaintext: str) -> str:
        return self.cipher.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise DecryptionError("Empty ciphertext")
        try:
            return self.cipher.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise DecryptionError("Ciphertext is malformed or was encrypted under an unknown key") from exc

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt under the primary key (no-op in meaning if already current)."""
        try:
            return self.cipher.rotate(ciphertext.encode("ascii")).decode("ascii")
        except (InvalidToken, UnicodeError) as exc:
            raise DecryptionError("Cannot rotate a token that no configured key can read") from exc

    def is_current(self, ciphertext: str) -> bool:
        """True when the primary key alone can read the token."""
        if self._primary is None:
            raise ConfigurationError("Secret codec used before init_app()")
        try:
            self._primary.decrypt(ciphertext.encode("ascii"))
        except (InvalidToken, UnicodeError):
            return False
        return True


def _codec() -> SecretCodec:
    codec = current_app.extensions.get("secret_codec")
    if codec is None:
        raise ConfigurationError("Secret codec is not configured on this app")
    return codec


def encrypt(plaintext: str) -> str:
    return _codec().encrypt(plaintext)


def decrypt(ciphertext: str) -> str:
    return _codec().decrypt(ciphertext)


def rotate(ciphertext: str) -> str:
    return _codec().rotate(ciphertext)


def is_current(ciphertext: str) -> bool:
    return _codec().is_current(ciphertext)
