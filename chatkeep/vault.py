"""
Secret vault: AES-256-GCM encryption of small secrets at rest.

One 256-bit key per installation, stored base64-encoded in the ``local``
area. Every encryption draws a fresh random 12-byte IV; the stored blob is
``base64(IV || ciphertext+tag)``.

Crypto operations never raise. They return a VaultResult whose ``error``
names what went wrong, so callers can tell "no such secret" from "the key
is gone" from "the blob was tampered with". A failed result is never a
zero-length value.

Key creation is a single-writer step: ``initialize()`` runs once at startup
(``chatkeep init`` and the façade entry points call it) and an in-process
lock serializes ``get_or_create_key()``. Two *processes* racing on a fresh
installation can still each generate a key; the later write wins and the
earlier process's ciphertexts then decrypt as ``corrupted``.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import VaultError
from .kv_store import LOCAL
from .protocol import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_NAME = "encryption_key"
SECRET_PREFIX = "secret:"

KEY_BITS = 256
IV_LENGTH = 12

# VaultResult.error kinds
INVALID_INPUT = "invalid_input"
KEY_UNAVAILABLE = "key_unavailable"
CORRUPTED = "corrupted"
NOT_FOUND = "not_found"


@dataclass(frozen=True)
class VaultResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> "VaultResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "VaultResult":
        return cls(ok=False, error=error)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


class SecretVault:
    """Encrypts, decrypts and digests secrets with a per-installation key."""

    def __init__(self, kv: KeyValueStoreProtocol):
        self._kv = kv
        self._lock = threading.Lock()
        self._aead: Optional[AESGCM] = None

    # -- Key material ---------------------------------------------------------

    def initialize(self) -> bool:
        """
        Make sure key material exists. Call once at startup.

        Returns:
            True if usable key material is available
        """
        try:
            self.get_or_create_key()
        except Exception as e:
            logger.warning("Vault key unavailable: %s", e)
            return False
        return True

    def _load_key(self) -> Optional[AESGCM]:
        raw = self._kv.get(LOCAL, ENCRYPTION_KEY_NAME)
        if raw is None:
            return None
        try:
            key = _b64decode(raw) if isinstance(raw, str) else b""
        except (binascii.Error, ValueError):
            key = b""
        if len(key) != KEY_BITS // 8:
            raise VaultError("Stored encryption key is malformed")
        return AESGCM(key)

    def get_or_create_key(self) -> AESGCM:
        """
        The installation's key, generated and persisted on first use.

        Existing key material is never replaced.

        Raises:
            VaultError: stored key material is malformed
        """
        with self._lock:
            if self._aead is not None:
                return self._aead
            aead = self._load_key()
            if aead is None:
                key = AESGCM.generate_key(bit_length=KEY_BITS)
                self._kv.set(LOCAL, ENCRYPTION_KEY_NAME, _b64encode(key))
                logger.info("Generated new encryption key")
                aead = AESGCM(key)
            self._aead = aead
            return aead

    def _existing_key(self) -> Optional[AESGCM]:
        """Key for decryption; never generates one."""
        with self._lock:
            if self._aead is None:
                self._aead = self._load_key()
            return self._aead

    # -- Primitives -----------------------------------------------------------

    def encrypt(self, plaintext: Union[bytes, str]) -> VaultResult:
        """Encrypt ``plaintext`` under a fresh IV; value is the encoded blob."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        if not isinstance(plaintext, (bytes, bytearray)):
            return VaultResult.failure(INVALID_INPUT)
        try:
            aead = self.get_or_create_key()
        except Exception as e:
            logger.warning("Encryption failed, no key: %s", e)
            return VaultResult.failure(KEY_UNAVAILABLE)
        iv = os.urandom(IV_LENGTH)
        ciphertext = aead.encrypt(iv, bytes(plaintext), None)
        return VaultResult.success(_b64encode(iv + ciphertext))

    def decrypt(self, encoded: Any, *, as_text: bool = False) -> VaultResult:
        """Decrypt a blob from ``encrypt``; value is bytes, or str with ``as_text``."""
        if not isinstance(encoded, str) or not encoded:
            return VaultResult.failure(INVALID_INPUT)
        try:
            blob = _b64decode(encoded)
        except (binascii.Error, ValueError):
            return VaultResult.failure(CORRUPTED)
        if len(blob) <= IV_LENGTH:
            return VaultResult.failure(CORRUPTED)
        try:
            aead = self._existing_key()
        except Exception as e:
            logger.warning("Decryption failed, no key: %s", e)
            return VaultResult.failure(KEY_UNAVAILABLE)
        if aead is None:
            return VaultResult.failure(KEY_UNAVAILABLE)
        try:
            plaintext = aead.decrypt(blob[:IV_LENGTH], blob[IV_LENGTH:], None)
        except InvalidTag:
            return VaultResult.failure(CORRUPTED)
        if as_text:
            try:
                return VaultResult.success(plaintext.decode("utf-8"))
            except UnicodeDecodeError:
                return VaultResult.failure(CORRUPTED)
        return VaultResult.success(plaintext)

    @staticmethod
    def hash(value: Union[bytes, str]) -> VaultResult:
        """SHA-256 hex digest, for secrets that are only ever compared."""
        if isinstance(value, str):
            value = value.encode("utf-8")
        if not isinstance(value, (bytes, bytearray)):
            return VaultResult.failure(INVALID_INPUT)
        return VaultResult.success(hashlib.sha256(value).hexdigest())

    # -- Named secrets --------------------------------------------------------

    def set_secure(self, name: str, value: Any) -> None:
        """
        Encrypt and store a named secret. Dicts and lists are JSON-encoded.

        Raises:
            VaultError: the value couldn't be encrypted
        """
        if isinstance(value, (dict, list)):
            plaintext = json.dumps(value)
        else:
            plaintext = str(value)
        result = self.encrypt(plaintext)
        if not result.ok:
            raise VaultError(f"Failed to encrypt {name} ({result.error})")
        self._kv.set(LOCAL, SECRET_PREFIX + name, result.value)

    def get_secure(self, name: str, as_object: bool = False) -> VaultResult:
        """Decrypt a named secret; ``as_object`` parses it as JSON."""
        try:
            encoded = self._kv.get(LOCAL, SECRET_PREFIX + name)
        except Exception as e:
            logger.warning("Failed to read secret %s: %s", name, e)
            return VaultResult.failure(KEY_UNAVAILABLE)
        if encoded is None:
            return VaultResult.failure(NOT_FOUND)
        result = self.decrypt(encoded, as_text=True)
        if not result.ok or not as_object:
            return result
        try:
            return VaultResult.success(json.loads(result.value))
        except ValueError:
            return VaultResult.failure(CORRUPTED)

    def remove_secure(self, name: str) -> bool:
        return self._kv.delete(LOCAL, SECRET_PREFIX + name)
