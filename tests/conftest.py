"""
Shared pytest fixtures for chatkeep tests.

Provides an in-memory key-value store, a store that fails on demand, a
scriptable billing collaborator and a settable clock, so no test touches
the network or the user's home directory.
"""

import copy
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import pytest

from chatkeep.errors import RemoteUnavailableError
from chatkeep.kv_store import AREAS


class MemoryKeyValueStore:
    """KeyValueStoreProtocol over plain dicts; values round-trip through JSON."""

    def __init__(self):
        self._data: dict[str, dict[str, str]] = {area: {} for area in AREAS}
        self.writes = 0

    def _area(self, area: str) -> dict[str, str]:
        if area not in AREAS:
            raise ValueError(f"Unknown storage area: {area!r}")
        return self._data[area]

    def get(self, area: str, key: str) -> Any:
        raw = self._area(area).get(key)
        return None if raw is None else json.loads(raw)

    def get_many(self, area: str, keys: list[str]) -> dict[str, Any]:
        return {k: self.get(area, k) for k in keys if k in self._area(area)}

    def set(self, area: str, key: str, value: Any) -> None:
        self._area(area)[key] = json.dumps(value)
        self.writes += 1

    def set_many(self, area: str, items: Mapping[str, Any]) -> None:
        for key, value in items.items():
            self._area(area)[key] = json.dumps(value)
        self.writes += 1

    def delete(self, area: str, key: str) -> bool:
        return self._area(area).pop(key, None) is not None

    def keys(self, area: str, prefix: str = "") -> list[str]:
        return sorted(k for k in self._area(area) if k.startswith(prefix))

    def close(self) -> None:
        pass

    def raw(self, area: str, key: str) -> Optional[str]:
        """Stored JSON text, for asserting a document was not rewritten."""
        return self._area(area).get(key)


class FailingKeyValueStore(MemoryKeyValueStore):
    """Memory store whose reads and/or writes can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False

    def get(self, area: str, key: str) -> Any:
        if self.fail_reads:
            raise OSError("disk read failed")
        return super().get(area, key)

    def get_many(self, area: str, keys: list[str]) -> dict[str, Any]:
        if self.fail_reads:
            raise OSError("disk read failed")
        return super().get_many(area, keys)

    def keys(self, area: str, prefix: str = "") -> list[str]:
        if self.fail_reads:
            raise OSError("disk read failed")
        return super().keys(area, prefix)

    def set(self, area: str, key: str, value: Any) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        super().set(area, key, value)

    def set_many(self, area: str, items: Mapping[str, Any]) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        super().set_many(area, items)


class FakeBilling:
    """BillingProtocol whose user record and reachability tests control."""

    def __init__(self, user: Optional[dict] = None):
        self.user = user
        self.unavailable = False
        self.get_calls = 0
        self.trial_starts: list[str] = []

    def get_user(self) -> Optional[dict]:
        self.get_calls += 1
        if self.unavailable:
            raise RemoteUnavailableError("billing timed out")
        return copy.deepcopy(self.user)

    def record_trial_start(self, started_at: str) -> None:
        if self.unavailable:
            raise RemoteUnavailableError("billing timed out")
        self.trial_starts.append(started_at)
        self.user = {**(self.user or {}), "trialStartedAt": started_at}


class Clock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    def ms(self) -> int:
        return int(self.now.timestamp() * 1000)


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def failing_kv():
    return FailingKeyValueStore()


@pytest.fixture
def billing():
    return FakeBilling()


@pytest.fixture
def clock():
    return Clock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    """Keep error logs, ops logs and default state out of the real home directory."""
    state = tmp_path / "state"
    monkeypatch.setenv("CHATKEEP_STATE_DIR", str(state))
    for name in ("CHATKEEP_API_KEY", "CHATKEEP_HTTP_HOST", "CHATKEEP_HTTP_PORT", "CHATKEEP_BILLING_URL"):
        monkeypatch.delenv(name, raising=False)
    return state


@pytest.fixture
def keeper(tmp_path, kv, billing):
    """ChatKeeper over the memory store and fake billing, already initialized."""
    from chatkeep.api import ChatKeeper
    from chatkeep.config import StoreConfig

    ck = ChatKeeper(config=StoreConfig(path=tmp_path / "keeper"), kv=kv, billing=billing)
    ck.initialize()
    yield ck
    ck.close()
