"""
Profile store: named configuration bundles within one installation.

Profiles live in a single ``profiles`` document (id → profile) in the sync
area, next to an ``active_profile`` pointer. Every mutation is a read of the
current map, a pure ``plan_*`` function computing the next map, and a write
of the whole map. Two processes mutating at the same time can lose one
update; that risk is accepted, not hidden.

The active profile is never ambient state here: callers obtain an
``ActiveProfile`` from ``load_active()`` or ``set_active_profile()`` and
pass it to every settings call.
"""

import logging
import random
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from .errors import (
    LimitExceededError,
    NotFoundError,
    ProtectedResourceError,
    ValidationError,
)
from .kv_store import SYNC
from .protocol import KeyValueStoreProtocol
from .settings import Settings, deep_merge, merge_settings

logger = logging.getLogger(__name__)

PROFILES_KEY = "profiles"
ACTIVE_PROFILE_KEY = "active_profile"
LEGACY_SETTINGS_KEY = "legacy_settings"

DEFAULT_PROFILE_ID = "default"
DEFAULT_PROFILE_NAME = "Default"
MAX_PROFILES = 10
MAX_NAME_LENGTH = 50

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _now_ms() -> int:
    return int(time.time() * 1000)


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _ID_ALPHABET[r] + out
    return out or "0"


def generate_profile_id(now_ms: Optional[int] = None) -> str:
    """``profile_<ms in base36><5 random chars>``."""
    stamp = _base36(now_ms if now_ms is not None else _now_ms())
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return f"profile_{stamp}{suffix}"


def sanitize_name(name: Any) -> str:
    """
    Trim and truncate a profile name.

    Raises:
        ValidationError: missing, not a string, or empty after trimming
    """
    if not name or not isinstance(name, str):
        raise ValidationError("Profile name is required")
    sanitized = name.strip()[:MAX_NAME_LENGTH]
    if not sanitized:
        raise ValidationError("Profile name cannot be empty")
    return sanitized


@dataclass
class Profile:
    id: str
    name: str
    created_at: int
    settings: Settings

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Profile":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            created_at=int(data.get("createdAt") or 0),
            settings=Settings.from_dict(data.get("settings")),
        )


@dataclass(frozen=True)
class ProfileSummary:
    id: str
    name: str
    created_at: int
    is_active: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "isActive": self.is_active,
        }


@dataclass(frozen=True)
class ActiveProfile:
    """Explicit active-profile context for one logical session."""
    profile_id: str = DEFAULT_PROFILE_ID


class _NeedsMigration:
    """Returned by get_active_settings when no profiles exist at all."""

    def __repr__(self) -> str:
        return "NEEDS_MIGRATION"

    def __bool__(self) -> bool:
        return False


NEEDS_MIGRATION = _NeedsMigration()

ProfileMap = dict[str, Profile]


def new_profile(profile_id: str, name: str, created_at: Optional[int] = None) -> Profile:
    """A profile carrying the full default Settings document."""
    return Profile(
        id=profile_id,
        name=name,
        created_at=created_at if created_at is not None else _now_ms(),
        settings=Settings(),
    )


# -----------------------------------------------------------------------------
# Pure transitions: snapshot in, next snapshot out. Inputs are never modified.
# -----------------------------------------------------------------------------

def _check_capacity(profiles: ProfileMap) -> None:
    if DEFAULT_PROFILE_ID not in profiles:
        raise NotFoundError("Default profile missing; run migration first")
    if len(profiles) >= MAX_PROFILES:
        raise LimitExceededError(f"Maximum of {MAX_PROFILES} profiles reached")


def plan_create(profiles: ProfileMap, profile: Profile) -> ProfileMap:
    _check_capacity(profiles)
    return {**profiles, profile.id: profile}


def plan_duplicate(
    profiles: ProfileMap,
    source_id: str,
    new_id: str,
    new_name: Optional[str],
    created_at: int,
) -> tuple[ProfileMap, Profile]:
    source = profiles.get(source_id)
    if source is None:
        raise NotFoundError(f"Source profile {source_id} does not exist")
    _check_capacity(profiles)
    name = sanitize_name(new_name if new_name is not None else f"{source.name} (Copy)")
    settings = Settings.from_dict(source.settings.to_dict())
    settings.messages_used = 0
    copy = Profile(id=new_id, name=name, created_at=created_at, settings=settings)
    return {**profiles, new_id: copy}, copy


def plan_rename(profiles: ProfileMap, profile_id: str, new_name: str) -> ProfileMap:
    profile = profiles.get(profile_id)
    if profile is None:
        raise NotFoundError(f"Profile {profile_id} does not exist")
    renamed = Profile(
        id=profile.id,
        name=sanitize_name(new_name),
        created_at=profile.created_at,
        settings=profile.settings,
    )
    return {**profiles, profile_id: renamed}


def plan_delete(profiles: ProfileMap, profile_id: str) -> ProfileMap:
    if profile_id == DEFAULT_PROFILE_ID:
        raise ProtectedResourceError("Cannot delete the default profile")
    if profile_id not in profiles:
        raise NotFoundError(f"Profile {profile_id} does not exist")
    return {pid: p for pid, p in profiles.items() if pid != profile_id}


def plan_update_settings(
    profiles: ProfileMap,
    profile_id: str,
    partial: Mapping[str, Any],
) -> ProfileMap:
    profile = profiles.get(profile_id)
    if profile is None:
        raise NotFoundError("No active profile found")
    updated = Profile(
        id=profile.id,
        name=profile.name,
        created_at=profile.created_at,
        settings=merge_settings(profile.settings, partial),
    )
    return {**profiles, profile_id: updated}


def plan_migration(legacy: Any, created_at: int) -> ProfileMap:
    """Fresh map holding only ``default``, with legacy settings merged in."""
    default = new_profile(DEFAULT_PROFILE_ID, DEFAULT_PROFILE_NAME, created_at)
    if isinstance(legacy, Mapping):
        default.settings = Settings.from_dict(deep_merge(default.settings.to_dict(), legacy))
    return {DEFAULT_PROFILE_ID: default}


def sort_summaries(profiles: ProfileMap, active_id: str) -> list[ProfileSummary]:
    """Default first, then by creation time."""
    summaries = [
        ProfileSummary(p.id, p.name, p.created_at, p.id == active_id)
        for p in profiles.values()
    ]
    return sorted(
        summaries,
        key=lambda s: (s.id != DEFAULT_PROFILE_ID, s.created_at),
    )


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------

class ProfileStore:
    """Owns the profile map, the active pointer and legacy migration."""

    def __init__(
        self,
        kv: KeyValueStoreProtocol,
        *,
        clock: Callable[[], int] = _now_ms,
        id_factory: Callable[[int], str] = generate_profile_id,
    ):
        self._kv = kv
        self._clock = clock
        self._id_factory = id_factory

    # -- Snapshot I/O ---------------------------------------------------------

    def _load_profiles(self) -> ProfileMap:
        """Current profile map for a mutation. Storage errors propagate."""
        raw = self._kv.get(SYNC, PROFILES_KEY)
        if not isinstance(raw, Mapping):
            return {}
        return {
            pid: Profile.from_dict(data)
            for pid, data in raw.items()
            if isinstance(data, Mapping)
        }

    def _read_profiles(self) -> ProfileMap:
        """Current profile map for display. Read failures degrade to an empty map."""
        try:
            return self._load_profiles()
        except Exception as e:
            logger.warning("Failed to read profiles: %s", e)
            return {}

    def _write_profiles(self, profiles: ProfileMap, **extra: Any) -> None:
        """Write the whole map (and any extra sync documents) in one commit."""
        payload = {PROFILES_KEY: {pid: p.to_dict() for pid, p in profiles.items()}}
        payload.update(extra)
        self._kv.set_many(SYNC, payload)

    def _read_active_id(self) -> str:
        try:
            active = self._kv.get(SYNC, ACTIVE_PROFILE_KEY)
        except Exception as e:
            logger.warning("Failed to read active profile: %s", e)
            return DEFAULT_PROFILE_ID
        return active if isinstance(active, str) and active else DEFAULT_PROFILE_ID

    # -- Active pointer -------------------------------------------------------

    def load_active(self) -> ActiveProfile:
        """Context for the persisted active pointer."""
        return ActiveProfile(self._read_active_id())

    def set_active_profile(self, profile_id: str) -> ActiveProfile:
        """
        Persist ``profile_id`` as active and return its context.

        Raises:
            NotFoundError: unknown profile
        """
        if profile_id not in self._load_profiles():
            raise NotFoundError(f"Profile {profile_id} does not exist")
        self._kv.set(SYNC, ACTIVE_PROFILE_KEY, profile_id)
        logger.info("Active profile set to %s", profile_id)
        return ActiveProfile(profile_id)

    # -- Profiles -------------------------------------------------------------

    def get_profile(self, profile_id: str) -> Profile:
        profile = self._read_profiles().get(profile_id)
        if profile is None:
            raise NotFoundError(f"Profile {profile_id} does not exist")
        return profile

    def list_profiles(self, active: Optional[ActiveProfile] = None) -> list[ProfileSummary]:
        active_id = (active or self.load_active()).profile_id
        return sort_summaries(self._read_profiles(), active_id)

    def create_profile(self, name: str) -> Profile:
        """
        Create a profile with default settings.

        Raises:
            ValidationError: empty name
            LimitExceededError: already MAX_PROFILES profiles
            NotFoundError: no default profile and migration did not create one
        """
        sanitized = sanitize_name(name)
        profiles = self._load_profiles()
        if not profiles and self.migrate_legacy():
            profiles = self._load_profiles()
        now = self._clock()
        profile = new_profile(self._id_factory(now), sanitized, now)
        self._write_profiles(plan_create(profiles, profile))
        logger.info("Created profile %s (%s)", profile.id, profile.name)
        return profile

    def duplicate_profile(self, source_id: str, new_name: Optional[str] = None) -> Profile:
        """Deep-copy a profile's settings with usage reset to zero."""
        profiles = self._load_profiles()
        now = self._clock()
        next_profiles, copy = plan_duplicate(
            profiles, source_id, self._id_factory(now), new_name, now,
        )
        self._write_profiles(next_profiles)
        logger.info("Duplicated profile %s as %s", source_id, copy.id)
        return copy

    def rename_profile(self, profile_id: str, new_name: str) -> Profile:
        next_profiles = plan_rename(self._load_profiles(), profile_id, new_name)
        self._write_profiles(next_profiles)
        return next_profiles[profile_id]

    def delete_profile(self, profile_id: str) -> None:
        """
        Delete a profile. Deleting the active one moves the pointer to default.

        Raises:
            ProtectedResourceError: profile_id is "default"
            NotFoundError: unknown profile
        """
        next_profiles = plan_delete(self._load_profiles(), profile_id)
        extra = {}
        if self._read_active_id() == profile_id:
            extra[ACTIVE_PROFILE_KEY] = DEFAULT_PROFILE_ID
        self._write_profiles(next_profiles, **extra)
        logger.info("Deleted profile %s", profile_id)

    # -- Settings -------------------------------------------------------------

    def get_active_settings(self, active: ActiveProfile) -> Union[Settings, _NeedsMigration]:
        """
        Settings of the context's profile.

        Falls back to ``default`` when the active profile has gone away.
        Returns NEEDS_MIGRATION when there are no profiles at all.
        """
        profiles = self._read_profiles()
        if not profiles:
            return NEEDS_MIGRATION
        profile = profiles.get(active.profile_id)
        if profile is None:
            logger.debug("Active profile %s missing, using default", active.profile_id)
            profile = profiles.get(DEFAULT_PROFILE_ID)
        if profile is None:
            return NEEDS_MIGRATION
        return profile.settings

    def update_active_settings(self, active: ActiveProfile, partial: Mapping[str, Any]) -> Settings:
        """
        Merge ``partial`` into the context's profile and persist the whole map.

        Raises:
            ValidationError: partial doesn't match the Settings shape
            NotFoundError: the context's profile doesn't exist
        """
        next_profiles = plan_update_settings(self._load_profiles(), active.profile_id, partial)
        self._write_profiles(next_profiles)
        return next_profiles[active.profile_id].settings

    # -- Migration ------------------------------------------------------------

    def migrate_legacy(self) -> bool:
        """
        Create ``default`` from pre-profile settings, once.

        No-op (False) when any profile exists or when any of the reads
        fails; nothing is written unless the store was readable and empty.
        The existence check is repeated right before the write to narrow the
        window in which two first-run processes could both migrate; it is
        not a guarantee.
        """
        try:
            if self._load_profiles():
                logger.debug("Profiles already exist, skipping migration")
                return False
            legacy = self._kv.get(SYNC, LEGACY_SETTINGS_KEY)
            if self._load_profiles():
                logger.debug("Profiles appeared during migration, skipping")
                return False
        except Exception as e:
            logger.warning("Migration read failed, skipping: %s", e)
            return False
        next_profiles = plan_migration(legacy, self._clock())
        self._write_profiles(next_profiles, **{ACTIVE_PROFILE_KEY: DEFAULT_PROFILE_ID})
        logger.info(
            "Migration complete (%s)",
            "legacy settings merged" if isinstance(legacy, Mapping) else "fresh defaults",
        )
        return True
