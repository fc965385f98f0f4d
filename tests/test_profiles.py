"""
Tests for the profile store: invariants, active-profile context, migration.
"""

import pytest

from chatkeep.errors import (
    LimitExceededError,
    NotFoundError,
    ProtectedResourceError,
    ValidationError,
)
from chatkeep.kv_store import SYNC
from chatkeep.profiles import (
    ACTIVE_PROFILE_KEY,
    DEFAULT_PROFILE_ID,
    LEGACY_SETTINGS_KEY,
    MAX_PROFILES,
    NEEDS_MIGRATION,
    PROFILES_KEY,
    ActiveProfile,
    ProfileStore,
    generate_profile_id,
    new_profile,
    plan_create,
    plan_delete,
    sanitize_name,
)
from chatkeep.settings import Settings


@pytest.fixture
def store(kv):
    counter = iter(range(1, 1000))
    s = ProfileStore(kv, clock=lambda: 1_700_000_000_000 + next(counter))
    s.migrate_legacy()
    return s


class TestNames:

    @pytest.mark.parametrize("name", ["", "   ", None, 42])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            sanitize_name(name)

    def test_trims_and_truncates(self):
        assert sanitize_name("  Friday show  ") == "Friday show"
        assert len(sanitize_name("x" * 80)) == 50

    def test_generated_ids(self):
        pid = generate_profile_id(1_700_000_000_000)
        assert pid.startswith("profile_")
        assert pid != generate_profile_id(1_700_000_000_000)


class TestInvariants:

    def test_default_cannot_be_deleted(self, store):
        with pytest.raises(ProtectedResourceError):
            store.delete_profile(DEFAULT_PROFILE_ID)
        assert store.get_profile(DEFAULT_PROFILE_ID)

    def test_plan_delete_default_always_fails(self):
        with pytest.raises(ProtectedResourceError):
            plan_delete({}, DEFAULT_PROFILE_ID)

    def test_eleventh_profile_fails(self, store):
        for i in range(MAX_PROFILES - 1):
            store.create_profile(f"Show {i}")
        assert len(store.list_profiles()) == MAX_PROFILES
        with pytest.raises(LimitExceededError):
            store.create_profile("One too many")
        assert len(store.list_profiles()) == MAX_PROFILES

    @pytest.mark.parametrize("name", ["", "   "])
    def test_blank_names_rejected_without_write(self, store, kv, name):
        before = kv.raw(SYNC, PROFILES_KEY)
        with pytest.raises(ValidationError):
            store.create_profile(name)
        assert kv.raw(SYNC, PROFILES_KEY) == before

    def test_duplicate_over_capacity_fails(self, store):
        for i in range(MAX_PROFILES - 1):
            store.create_profile(f"Show {i}")
        with pytest.raises(LimitExceededError):
            store.duplicate_profile(DEFAULT_PROFILE_ID)

    def test_create_on_empty_store_migrates_first(self, kv):
        store = ProfileStore(kv)
        profile = store.create_profile("Show")
        assert [s.id for s in store.list_profiles()] == [DEFAULT_PROFILE_ID, profile.id]
        assert store.migrate_legacy() is False
        assert store.get_active_settings(ActiveProfile()) == Settings()

    def test_plan_create_requires_default(self):
        with pytest.raises(NotFoundError, match="Default profile missing"):
            plan_create({}, new_profile("profile_x", "Show"))


class TestProfileOperations:

    def test_create_has_default_settings(self, store):
        profile = store.create_profile("Weekend")
        assert profile.name == "Weekend"
        assert profile.settings == Settings()
        assert store.get_profile(profile.id).name == "Weekend"

    def test_duplicate_copies_settings_and_resets_usage(self, store):
        active = ActiveProfile()
        store.update_active_settings(active, {"welcome": {"message": "yo"}})
        # usage is written by the entitlement layer, not façades
        store.update_active_settings(active, {"messagesUsed": 17})

        copy = store.duplicate_profile(DEFAULT_PROFILE_ID)
        assert copy.name == "Default (Copy)"
        assert copy.settings.welcome.message == "yo"
        assert copy.settings.messages_used == 0
        assert store.get_profile(DEFAULT_PROFILE_ID).settings.messages_used == 17

    def test_duplicate_copy_is_independent(self, store):
        copy = store.duplicate_profile(DEFAULT_PROFILE_ID, "Copy")
        store.update_active_settings(ActiveProfile(copy.id), {"moderation": {"blockedWords": ["spam"]}})
        assert store.get_profile(DEFAULT_PROFILE_ID).settings.moderation.blocked_words == []

    def test_duplicate_unknown_source(self, store):
        with pytest.raises(NotFoundError):
            store.duplicate_profile("profile_missing")

    def test_rename(self, store):
        profile = store.create_profile("Old")
        assert store.rename_profile(profile.id, "  New  ").name == "New"

    def test_rename_default_allowed(self, store):
        assert store.rename_profile(DEFAULT_PROFILE_ID, "Main").name == "Main"

    def test_rename_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.rename_profile("profile_missing", "x")

    def test_list_default_first_then_creation_order(self, store):
        b = store.create_profile("B")
        a = store.create_profile("A")
        ids = [s.id for s in store.list_profiles()]
        assert ids == [DEFAULT_PROFILE_ID, b.id, a.id]

    def test_list_marks_active(self, store):
        p = store.create_profile("Other")
        summaries = store.list_profiles(ActiveProfile(p.id))
        assert [s.id for s in summaries if s.is_active] == [p.id]


class TestActiveProfile:

    def test_set_active_persists(self, store, kv):
        p = store.create_profile("Live")
        active = store.set_active_profile(p.id)
        assert active == ActiveProfile(p.id)
        assert kv.get(SYNC, ACTIVE_PROFILE_KEY) == p.id
        assert store.load_active() == active

    def test_set_active_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.set_active_profile("profile_missing")

    def test_deleting_active_resets_pointer(self, store, kv):
        p = store.create_profile("Temp")
        store.set_active_profile(p.id)
        store.delete_profile(p.id)
        assert kv.get(SYNC, ACTIVE_PROFILE_KEY) == DEFAULT_PROFILE_ID

    def test_deleting_inactive_keeps_pointer(self, store, kv):
        keep = store.create_profile("Keep")
        gone = store.create_profile("Gone")
        store.set_active_profile(keep.id)
        store.delete_profile(gone.id)
        assert kv.get(SYNC, ACTIVE_PROFILE_KEY) == keep.id

    def test_missing_active_reads_default(self, store):
        store.update_active_settings(ActiveProfile(), {"masterEnabled": True})
        settings = store.get_active_settings(ActiveProfile("profile_gone"))
        assert settings.master_enabled is True

    def test_missing_active_write_fails(self, store):
        with pytest.raises(NotFoundError, match="No active profile found"):
            store.update_active_settings(ActiveProfile("profile_gone"), {"masterEnabled": True})

    def test_active_pointer_read_failure_falls_back(self, failing_kv):
        store = ProfileStore(failing_kv)
        failing_kv.fail_reads = True
        assert store.load_active() == ActiveProfile(DEFAULT_PROFILE_ID)

    def test_contexts_are_independent(self, store):
        p = store.create_profile("Second")
        store.update_active_settings(ActiveProfile(p.id), {"masterEnabled": True})
        assert store.get_active_settings(ActiveProfile()).master_enabled is False
        assert store.get_active_settings(ActiveProfile(p.id)).master_enabled is True


class TestSettingsUpdates:

    def test_update_merges(self, store):
        active = ActiveProfile()
        store.update_active_settings(active, {"welcome": {"enabled": True}})
        settings = store.update_active_settings(active, {"welcome": {"delay": 9}})
        assert settings.welcome.enabled is True
        assert settings.welcome.delay == 9

    def test_invalid_update_not_persisted(self, store, kv):
        before = kv.raw(SYNC, PROFILES_KEY)
        with pytest.raises(ValidationError):
            store.update_active_settings(ActiveProfile(), {"welcome": {"enabled": "on"}})
        assert kv.raw(SYNC, PROFILES_KEY) == before

    def test_write_failure_propagates(self, failing_kv):
        store = ProfileStore(failing_kv)
        store.migrate_legacy()
        failing_kv.fail_writes = True
        with pytest.raises(OSError):
            store.update_active_settings(ActiveProfile(), {"masterEnabled": True})

    def test_read_failure_means_needs_migration(self, failing_kv):
        store = ProfileStore(failing_kv)
        store.migrate_legacy()
        failing_kv.fail_reads = True
        assert store.get_active_settings(ActiveProfile()) is NEEDS_MIGRATION


class TestMigration:

    def test_no_profiles_needs_migration(self, kv):
        store = ProfileStore(kv)
        assert store.get_active_settings(ActiveProfile()) is NEEDS_MIGRATION
        assert not NEEDS_MIGRATION

    def test_fresh_install_gets_defaults(self, kv):
        store = ProfileStore(kv)
        assert store.migrate_legacy() is True
        assert store.get_active_settings(ActiveProfile()) == Settings()
        assert kv.get(SYNC, ACTIVE_PROFILE_KEY) == DEFAULT_PROFILE_ID

    def test_legacy_settings_merged(self, kv):
        kv.set(SYNC, LEGACY_SETTINGS_KEY, {
            "tier": "pro",
            "welcome": {"enabled": True, "message": "Welcome back {username}"},
            "obsoleteFlag": True,
        })
        store = ProfileStore(kv)
        store.migrate_legacy()
        settings = store.get_active_settings(ActiveProfile())
        assert settings.tier == "pro"
        assert settings.welcome.enabled is True
        assert settings.welcome.message == "Welcome back {username}"
        assert settings.welcome.delay == 5

    def test_migration_runs_once(self, kv):
        store = ProfileStore(kv)
        assert store.migrate_legacy() is True
        store.update_active_settings(ActiveProfile(), {"masterEnabled": True})
        kv.set(SYNC, LEGACY_SETTINGS_KEY, {"masterEnabled": False})
        assert store.migrate_legacy() is False
        assert store.get_active_settings(ActiveProfile()).master_enabled is True

    def test_migration_skips_if_profiles_appear(self, kv):
        """A profile map written between the first check and the write wins."""
        store = ProfileStore(kv)
        other = ProfileStore(kv)
        original_get = kv.get
        calls = {"legacy": 0}

        def racing_get(area, key):
            if key == LEGACY_SETTINGS_KEY and calls["legacy"] == 0:
                calls["legacy"] += 1
                other.migrate_legacy()
                other.update_active_settings(ActiveProfile(), {"referralBonus": 5})
            return original_get(area, key)

        kv.get = racing_get
        assert store.migrate_legacy() is False
        kv.get = original_get
        assert store.get_active_settings(ActiveProfile()).referral_bonus == 5


class TestReadFailures:
    """A failed read must never be written back as if the store were empty."""

    @pytest.fixture
    def populated(self, failing_kv):
        store = ProfileStore(failing_kv)
        store.migrate_legacy()
        for name in ("A", "B", "C"):
            store.create_profile(name)
        return store

    def test_migration_skipped(self, populated, failing_kv):
        before = failing_kv.raw(SYNC, PROFILES_KEY)
        failing_kv.fail_reads = True
        assert populated.migrate_legacy() is False
        failing_kv.fail_reads = False
        assert failing_kv.raw(SYNC, PROFILES_KEY) == before
        assert len(populated.list_profiles()) == 4

    def test_migration_skipped_on_empty_unreadable_store(self, failing_kv):
        store = ProfileStore(failing_kv)
        failing_kv.fail_reads = True
        assert store.migrate_legacy() is False
        failing_kv.fail_reads = False
        assert failing_kv.raw(SYNC, PROFILES_KEY) is None

    def test_migration_skipped_when_legacy_unreadable(self, kv):
        kv.set(SYNC, LEGACY_SETTINGS_KEY, {"tier": "pro"})
        original_get = kv.get

        def failing_legacy_get(area, key):
            if key == LEGACY_SETTINGS_KEY:
                raise OSError("disk read failed")
            return original_get(area, key)

        kv.get = failing_legacy_get
        store = ProfileStore(kv)
        assert store.migrate_legacy() is False
        kv.get = original_get
        assert kv.raw(SYNC, PROFILES_KEY) is None
        assert store.migrate_legacy() is True
        assert store.get_active_settings(ActiveProfile()).tier == "pro"

    @pytest.mark.parametrize("mutate", [
        lambda s: s.create_profile("New"),
        lambda s: s.duplicate_profile(DEFAULT_PROFILE_ID),
        lambda s: s.rename_profile(DEFAULT_PROFILE_ID, "Main"),
        lambda s: s.delete_profile("profile_any"),
        lambda s: s.set_active_profile(DEFAULT_PROFILE_ID),
        lambda s: s.update_active_settings(ActiveProfile(), {"masterEnabled": True}),
    ])
    def test_mutations_propagate_without_writing(self, populated, failing_kv, mutate):
        before = failing_kv.raw(SYNC, PROFILES_KEY)
        failing_kv.fail_reads = True
        with pytest.raises(OSError):
            mutate(populated)
        failing_kv.fail_reads = False
        assert failing_kv.raw(SYNC, PROFILES_KEY) == before
