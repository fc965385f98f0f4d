"""Local state and entitlement engine for a chat-automation client."""

from .api import ChatKeeper
from .errors import (
    ChatKeepError,
    LimitExceededError,
    NotFoundError,
    ProtectedResourceError,
    QuotaExhaustedError,
    RemoteUnavailableError,
    UnauthorizedError,
    ValidationError,
    VaultError,
)

__all__ = [
    "ChatKeeper",
    "ChatKeepError",
    "LimitExceededError",
    "NotFoundError",
    "ProtectedResourceError",
    "QuotaExhaustedError",
    "RemoteUnavailableError",
    "UnauthorizedError",
    "ValidationError",
    "VaultError",
]
