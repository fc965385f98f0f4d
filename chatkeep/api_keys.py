"""
Capability keys for the HTTP control API.

Each issued key is one ``api_key:<id>`` document in the sync area holding
only a SHA-256 hash and a display preview; the plaintext is returned once,
at creation. A key proves the caller may use the API. It says nothing about
tier, which always comes from the entitlement cache.
"""

import hashlib
import hmac
import logging
import re
import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Optional

from .errors import LimitExceededError, NotFoundError, ValidationError
from .kv_store import SYNC
from .protocol import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

KEY_DOC_PREFIX = "api_key:"
KEY_PREFIX = "bz_live_"
KEY_LENGTH = len(KEY_PREFIX) + 48
MAX_KEYS = 5
MAX_NAME_LENGTH = 50

MAX_VALIDATION_ATTEMPTS = 10
VALIDATION_WINDOW_SECONDS = 60.0

_UNSAFE_NAME_CHARS = re.compile(r"[<>\"'&\\]")


def _now_ms() -> int:
    return int(time.time() * 1000)


def hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_key() -> str:
    return KEY_PREFIX + secrets.token_hex(24)


def generate_key_id() -> str:
    return "key_" + secrets.token_hex(4)


def mask_key(key: str) -> str:
    """First 11 and last 4 characters, e.g. ``bz_live_3fa...9c1d``."""
    if not key or len(key) < 16:
        return "****"
    return f"{key[:11]}...{key[-4:]}"


def sanitize_key_name(name: Any) -> str:
    if not name or not isinstance(name, str):
        raise ValidationError("API key name is required")
    sanitized = _UNSAFE_NAME_CHARS.sub("", name.strip())[:MAX_NAME_LENGTH]
    if not sanitized:
        raise ValidationError("API key name cannot be empty")
    return sanitized


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    name: str
    key_hash: str
    key_preview: str
    created_at: int
    last_used: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "keyHash": self.key_hash,
            "keyPreview": self.key_preview,
            "createdAt": self.created_at,
            "lastUsed": self.last_used,
        }

    def to_public_dict(self) -> dict[str, Any]:
        """Display form; never includes the hash."""
        data = self.to_dict()
        del data["keyHash"]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApiKeyRecord":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            key_hash=str(data.get("keyHash") or ""),
            key_preview=str(data.get("keyPreview") or "bz_live_***...****"),
            created_at=int(data.get("createdAt") or 0),
            last_used=data.get("lastUsed"),
        )


@dataclass(frozen=True)
class CreatedKey:
    record: ApiKeyRecord
    key: str


@dataclass(frozen=True)
class KeyValidation:
    valid: bool
    key_id: Optional[str] = None
    name: Optional[str] = None
    reason: Optional[str] = None


class ApiKeyManager:
    """Issues, lists, revokes and validates API keys."""

    def __init__(
        self,
        kv: KeyValueStoreProtocol,
        *,
        clock: Callable[[], int] = _now_ms,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._kv = kv
        self._clock = clock
        self._monotonic = monotonic
        self._attempts: dict[str, tuple[int, float]] = {}
        self._attempts_lock = threading.Lock()

    def _doc(self, key_id: str) -> str:
        return KEY_DOC_PREFIX + key_id

    def _read_all(self) -> dict[str, ApiKeyRecord]:
        try:
            names = self._kv.keys(SYNC, KEY_DOC_PREFIX)
            raw = self._kv.get_many(SYNC, names)
        except Exception as e:
            logger.warning("Failed to read API keys: %s", e)
            return {}
        records = {}
        for data in raw.values():
            if isinstance(data, Mapping):
                record = ApiKeyRecord.from_dict(data)
                records[record.id] = record
        return records

    def _get(self, key_id: str) -> ApiKeyRecord:
        data = self._kv.get(SYNC, self._doc(key_id))
        if not isinstance(data, Mapping):
            raise NotFoundError(f"API key {key_id} does not exist")
        return ApiKeyRecord.from_dict(data)

    # -- Management -----------------------------------------------------------

    def create_key(self, name: str) -> CreatedKey:
        """
        Issue a new key. The plaintext is only available on the result.

        Raises:
            LimitExceededError: MAX_KEYS keys already exist
            ValidationError: empty name
        """
        if len(self._read_all()) >= MAX_KEYS:
            raise LimitExceededError(f"Maximum of {MAX_KEYS} API keys reached")
        sanitized = sanitize_key_name(name)
        key = generate_key()
        record = ApiKeyRecord(
            id=generate_key_id(),
            name=sanitized,
            key_hash=hash_key(key),
            key_preview=mask_key(key),
            created_at=self._clock(),
        )
        self._kv.set(SYNC, self._doc(record.id), record.to_dict())
        logger.info("Created API key %s (%s)", record.id, record.name)
        return CreatedKey(record=record, key=key)

    def list_keys(self) -> list[ApiKeyRecord]:
        """All keys, newest first."""
        return sorted(self._read_all().values(), key=lambda r: r.created_at, reverse=True)

    def revoke_key(self, key_id: str) -> None:
        if not self._kv.delete(SYNC, self._doc(key_id)):
            raise NotFoundError(f"API key {key_id} does not exist")
        logger.info("Revoked API key %s", key_id)

    def rename_key(self, key_id: str, name: str) -> ApiKeyRecord:
        record = self._get(key_id)
        renamed = replace(record, name=sanitize_key_name(name))
        self._kv.set(SYNC, self._doc(key_id), renamed.to_dict())
        return renamed

    # -- Validation -----------------------------------------------------------

    def _is_blocked(self, context: str) -> bool:
        """True while ``context`` has used up its failure budget for the window."""
        now = self._monotonic()
        with self._attempts_lock:
            count, started = self._attempts.get(context, (0, now))
            if now - started > VALIDATION_WINDOW_SECONDS:
                self._attempts.pop(context, None)
                return False
            return count >= MAX_VALIDATION_ATTEMPTS

    def _record_failure(self, context: str) -> None:
        now = self._monotonic()
        with self._attempts_lock:
            count, started = self._attempts.get(context, (0, now))
            if now - started > VALIDATION_WINDOW_SECONDS:
                count, started = 0, now
            self._attempts[context] = (count + 1, started)

    def _reject(self, context: str, reason: str) -> KeyValidation:
        self._record_failure(context)
        return KeyValidation(False, reason=reason)

    def validate_key(self, key: Any, context: str = "default") -> KeyValidation:
        """
        Check a presented key and stamp ``lastUsed`` on success.

        Only failures count towards the per-context budget; a success
        clears it.
        """
        if self._is_blocked(context):
            return KeyValidation(False, reason="Too many attempts. Please wait.")
        if not key or not isinstance(key, str):
            return self._reject(context, "Invalid key format")
        if not key.startswith(KEY_PREFIX):
            return self._reject(context, "Invalid key prefix")
        if len(key) != KEY_LENGTH:
            return self._reject(context, "Invalid key length")

        presented = hash_key(key)
        for record in self._read_all().values():
            if not record.key_hash:
                logger.warning("Skipping API key %s without hash", record.id)
                continue
            if hmac.compare_digest(record.key_hash, presented):
                used = replace(record, last_used=self._clock())
                try:
                    self._kv.set(SYNC, self._doc(record.id), used.to_dict())
                except Exception as e:
                    logger.warning("Failed to record API key use: %s", e)
                with self._attempts_lock:
                    self._attempts.pop(context, None)
                return KeyValidation(True, key_id=record.id, name=record.name)
        return self._reject(context, "Key not found")
