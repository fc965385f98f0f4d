"""
Tests for HTTP API key issuance and validation.
"""

import pytest

from chatkeep.api_keys import (
    KEY_DOC_PREFIX,
    KEY_LENGTH,
    KEY_PREFIX,
    MAX_KEYS,
    MAX_VALIDATION_ATTEMPTS,
    ApiKeyManager,
    hash_key,
    mask_key,
    sanitize_key_name,
)
from chatkeep.errors import LimitExceededError, NotFoundError, ValidationError
from chatkeep.kv_store import SYNC


class FakeMonotonic:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def manager(kv, monotonic):
    ticks = iter(range(1, 10_000))
    return ApiKeyManager(kv, clock=lambda: 1_700_000_000_000 + next(ticks), monotonic=monotonic)


class TestCreate:

    def test_plaintext_returned_once(self, manager, kv):
        created = manager.create_key("Stream deck")
        assert created.key.startswith(KEY_PREFIX)
        assert len(created.key) == KEY_LENGTH

        stored = kv.get(SYNC, KEY_DOC_PREFIX + created.record.id)
        assert stored["keyHash"] == hash_key(created.key)
        assert created.key not in kv.raw(SYNC, KEY_DOC_PREFIX + created.record.id)
        assert stored["keyPreview"] == mask_key(created.key)

    def test_limit(self, manager):
        for i in range(MAX_KEYS):
            manager.create_key(f"key {i}")
        with pytest.raises(LimitExceededError, match="Maximum of 5 API keys reached"):
            manager.create_key("one more")

    def test_name_sanitized(self, manager):
        assert manager.create_key(' <b>"OBS"</b> ').record.name == "bOBS/b"

    @pytest.mark.parametrize("name", ["", "   ", "<>", None])
    def test_bad_names(self, name):
        with pytest.raises(ValidationError):
            sanitize_key_name(name)

    def test_mask(self):
        assert mask_key("bz_live_0123456789abcdef") == "bz_live_012...cdef"
        assert mask_key("short") == "****"


class TestManage:

    def test_list_newest_first_without_hash(self, manager):
        first = manager.create_key("first")
        second = manager.create_key("second")
        records = manager.list_keys()
        assert [r.id for r in records] == [second.record.id, first.record.id]
        assert "keyHash" not in records[0].to_public_dict()

    def test_revoke(self, manager):
        created = manager.create_key("temp")
        manager.revoke_key(created.record.id)
        assert manager.list_keys() == []
        assert manager.validate_key(created.key).valid is False

    def test_revoke_unknown(self, manager):
        with pytest.raises(NotFoundError):
            manager.revoke_key("key_missing")

    def test_rename(self, manager):
        created = manager.create_key("old")
        assert manager.rename_key(created.record.id, "new").name == "new"
        assert manager.list_keys()[0].name == "new"

    def test_rename_unknown(self, manager):
        with pytest.raises(NotFoundError):
            manager.rename_key("key_missing", "x")


class TestValidate:

    def test_valid_key_stamps_last_used(self, manager):
        created = manager.create_key("bot")
        result = manager.validate_key(created.key)
        assert result.valid is True
        assert result.key_id == created.record.id
        assert result.name == "bot"
        assert manager.list_keys()[0].last_used is not None

    @pytest.mark.parametrize("key,reason", [
        (None, "Invalid key format"),
        ("", "Invalid key format"),
        ("sk_live_" + "0" * 48, "Invalid key prefix"),
        (KEY_PREFIX + "abc", "Invalid key length"),
        (KEY_PREFIX + "0" * 48, "Key not found"),
    ])
    def test_rejections(self, manager, key, reason):
        result = manager.validate_key(key)
        assert result.valid is False
        assert result.reason == reason

    def test_rate_limited_per_context(self, manager, monotonic):
        created = manager.create_key("bot")
        for _ in range(MAX_VALIDATION_ATTEMPTS):
            manager.validate_key(KEY_PREFIX + "0" * 48, context="10.0.0.1")

        blocked = manager.validate_key(created.key, context="10.0.0.1")
        assert blocked.valid is False
        assert blocked.reason == "Too many attempts. Please wait."

        assert manager.validate_key(created.key, context="10.0.0.2").valid is True

        monotonic.now += 61
        assert manager.validate_key(created.key, context="10.0.0.1").valid is True

    def test_successes_are_not_throttled(self, manager):
        created = manager.create_key("bot")
        for _ in range(MAX_VALIDATION_ATTEMPTS * 3):
            assert manager.validate_key(created.key, context="127.0.0.1").valid is True

    def test_success_clears_failures(self, manager):
        created = manager.create_key("bot")
        for _ in range(MAX_VALIDATION_ATTEMPTS - 1):
            manager.validate_key("nope", context="c")
        assert manager.validate_key(created.key, context="c").valid is True
        for _ in range(MAX_VALIDATION_ATTEMPTS - 1):
            manager.validate_key("nope", context="c")
        assert manager.validate_key(created.key, context="c").valid is True

    def test_unwritable_last_used_still_validates(self, failing_kv, monotonic):
        manager = ApiKeyManager(failing_kv, monotonic=monotonic)
        created = manager.create_key("bot")
        failing_kv.fail_writes = True
        assert manager.validate_key(created.key).valid is True
