"""
Protocol definitions for chatkeep's collaborators.

Defines interface contracts for:
- KeyValueStoreProtocol: the storage substrate (SQLite locally; any
  eventually-consistent document store would do)
- BillingProtocol: the remote billing collaborator that knows the user's
  subscription and trial state
"""

from typing import Any, Mapping, Optional, Protocol, runtime_checkable


@runtime_checkable
class KeyValueStoreProtocol(Protocol):
    """
    Whole-document key-value storage in two areas, ``local`` and ``sync``.

    Implemented by:
    - SqliteKeyValueStore (file-backed, shared between processes)

    No read-modify-write isolation: callers read, compute, and write back.
    """

    def get(self, area: str, key: str) -> Any: ...

    def get_many(self, area: str, keys: list[str]) -> dict[str, Any]: ...

    def set(self, area: str, key: str, value: Any) -> None: ...

    def set_many(self, area: str, items: Mapping[str, Any]) -> None: ...

    def delete(self, area: str, key: str) -> bool: ...

    def keys(self, area: str, prefix: str = "") -> list[str]: ...

    def close(self) -> None: ...


@runtime_checkable
class BillingProtocol(Protocol):
    """
    The billing collaborator's view of one installation's user.

    Implemented by:
    - LocalBillingStore (user record kept in the sync area)
    - HttpBillingClient (hosted billing API over HTTPS)

    ``get_user`` returns None when no user record exists and raises
    RemoteUnavailableError when the collaborator can't be reached.
    """

    def get_user(self) -> Optional[dict[str, Any]]: ...

    def record_trial_start(self, started_at: str) -> None: ...
