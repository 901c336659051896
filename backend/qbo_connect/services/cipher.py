"""
Envelope encryption for stored QuickBooks tokens.

Each call derives a one-off AES-256-GCM key from the master secret with
PBKDF2-HMAC-SHA512 over a fresh random salt, encrypts under a fresh random
nonce and packs everything needed to decrypt into a single base64 blob:

    salt (64) | nonce (12) | tag (16) | ciphertext

The context string is bound as associated data, so an access-token blob
will not decrypt as a refresh token.

SECURITY:
- The master secret is process configuration, never stored next to blobs
- Rotating the master secret makes every existing blob undecryptable
- decrypt() raises DecryptError and never returns partial plaintext
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import ConfigurationError, DecryptError

logger = logging.getLogger(__name__)

SALT_SIZE = 64
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
DEFAULT_ITERATIONS = 100_000

ACCESS_TOKEN_CONTEXT = "qbo:access_token"
REFRESH_TOKEN_CONTEXT = "qbo:refresh_token"


def _derive_key(master_secret: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_secret.encode("utf-8"))


def encrypt(
    plaintext: str,
    master_secret: str,
    context: str = ACCESS_TOKEN_CONTEXT,
    iterations: int = DEFAULT_ITERATIONS,
) -> str:
    """Encrypt ``plaintext`` into a self-contained base64 blob."""
    if not master_secret:
        raise ConfigurationError("master secret is not configured")
    salt = secrets.token_bytes(SALT_SIZE)
    nonce = secrets.token_bytes(NONCE_SIZE)
    key = _derive_key(master_secret, salt, iterations)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), context.encode("utf-8"))
    # AESGCM appends the tag; the stored layout keeps it ahead of the body.
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")


def decrypt(
    blob: str,
    master_secret: str,
    context: str = ACCESS_TOKEN_CONTEXT,
    iterations: int = DEFAULT_ITERATIONS,
) -> str:
    """Decrypt a blob produced by :func:`encrypt` or raise ``DecryptError``."""
    if not master_secret:
        raise ConfigurationError("master secret is not configured")
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError) as exc:
        raise DecryptError("credential blob is not valid base64") from exc

    header = SALT_SIZE + NONCE_SIZE + TAG_SIZE
    if len(raw) < header:
        raise DecryptError("credential blob is truncated")

    salt = raw[:SALT_SIZE]
    nonce = raw[SALT_SIZE : SALT_SIZE + NONCE_SIZE]
    tag = raw[SALT_SIZE + NONCE_SIZE : header]
    ciphertext = raw[header:]

    key = _derive_key(master_secret, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(
            nonce, ciphertext + tag, context.encode("utf-8")
        )
    except InvalidTag as exc:
        raise DecryptError("credential blob failed authentication") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptError("credential plaintext is not valid UTF-8") from exc


def generate_master_secret() -> str:
    """Return a fresh random master secret suitable for QUICKBOOKS_ENCRYPTION_KEY."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")


def is_well_formed(blob: str) -> bool:
    """Cheap structural check; does not authenticate the blob."""
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError):
        return False
    return len(raw) > SALT_SIZE + NONCE_SIZE + TAG_SIZE


class TokenCipher:
    """Binds the master secret and KDF cost so callers only pass plaintext."""

    def __init__(self, master_secret: str | None, iterations: int = DEFAULT_ITERATIONS) -> None:
        if not master_secret:
            raise ConfigurationError(
                "QUICKBOOKS_ENCRYPTION_KEY environment variable is required for token encryption"
            )
        self._master_secret = master_secret
        self._iterations = iterations

    def __repr__(self) -> str:
        return f"TokenCipher(iterations={self._iterations})"

    def encrypt_access(self, token: str) -> str:
        return encrypt(token, self._master_secret, ACCESS_TOKEN_CONTEXT, self._iterations)

    def encrypt_refresh(self, token: str) -> str:
        return encrypt(token, self._master_secret, REFRESH_TOKEN_CONTEXT, self._iterations)

    def decrypt_access(self, blob: str) -> str:
        return decrypt(blob, self._master_secret, ACCESS_TOKEN_CONTEXT, self._iterations)

    def decrypt_refresh(self, blob: str) -> str:
        return decrypt(blob, self._master_secret, REFRESH_TOKEN_CONTEXT, self._iterations)
