from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from forumai.core.config import get_settings
from forumai.core.errors import AuthError


_AAD = b"forumai:api_key:v1"


def _key(secret: str | None = None) -> bytes:
    # Derive a fixed-size AES key from the configured secret.
    return hashlib.sha256((secret or get_settings().secret_key).encode("utf-8")).digest()


def encrypt_secret(plaintext: str, *, secret: str | None = None) -> str:
    # Prefix a random nonce to the AES-GCM ciphertext.
    nonce = os.urandom(12)
    cipher = AESGCM(_key(secret)).encrypt(nonce, plaintext.encode("utf-8"), _AAD)
    return base64.b64encode(nonce + cipher).decode("ascii")


def decrypt_secret(token: str, *, secret: str | None = None) -> str:
    raw = base64.b64decode(token.encode("ascii"))
    nonce, cipher = raw[:12], raw[12:]
    try:
        return AESGCM(_key(secret)).decrypt(nonce, cipher, _AAD).decode("utf-8")
    except InvalidTag as exc:
        # A rotated secret makes the stored key unusable; the operator must reconnect.
        raise AuthError("stored api key cannot be decrypted") from exc
