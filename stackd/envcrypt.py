"""At-rest encryption of Env Store text.

AES-256-GCM with a key derived from ``STACKD_ENV_PASSWORD`` (PBKDF2-SHA256).
Stored values are base64 of ``nonce || ciphertext+tag``; an empty env is
stored as an empty string.
"""
from __future__ import annotations

import base64
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import EnvStoreError

SALT = b"stackd-v1-salt"
ITERATIONS = 4096
NONCE_SIZE = 12


@lru_cache(maxsize=4)
def derive_key(password: str) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=SALT, iterations=ITERATIONS)
    return kdf.derive(password.encode())


def _cipher(password: str | None) -> AESGCM:
    if not password:
        raise EnvStoreError("STACKD_ENV_PASSWORD is not set; the env store is locked")
    return AESGCM(derive_key(password))


def encrypt(plaintext: str, password: str | None) -> str:
    if not plaintext:
        return ""
    nonce = os.urandom(NONCE_SIZE)
    sealed = _cipher(password).encrypt(nonce, plaintext.encode(), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(token: str, password: str | None) -> str:
    if not token:
        return ""
    cipher = _cipher(password)
    try:
        raw = base64.b64decode(token, validate=True)
    except ValueError as e:
        raise EnvStoreError("stored env is not valid ciphertext") from e
    if len(raw) <= NONCE_SIZE:
        raise EnvStoreError("stored env is too short")
    try:
        return cipher.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None).decode()
    except InvalidTag as e:
        raise EnvStoreError("could not decrypt stored env (wrong STACKD_ENV_PASSWORD?)") from e
