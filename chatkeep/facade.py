"""
Named-operation façade for out-of-process callers.

``Facade.handle(operation, payload)`` runs one operation against a
ChatKeeper and always returns a FacadeResponse; domain errors come back as
``{kind, message}`` instead of exceptions. External callers can never write
the entitlement-owned fields (tier, usage and limits) through
UPDATE_SETTINGS; those are stripped before the merge.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .api import ChatKeeper
from .errors import ChatKeepError, ValidationError
from .settings import PROTECTED_FIELDS

logger = logging.getLogger(__name__)

GET_SETTINGS = "GET_SETTINGS"
UPDATE_SETTINGS = "UPDATE_SETTINGS"
GET_LICENSE = "GET_LICENSE"
GET_ANALYTICS = "GET_ANALYTICS"
UPDATE_ANALYTICS = "UPDATE_ANALYTICS"
GET_STATUS = "GET_STATUS"
GET_CREDITS = "GET_CREDITS"
LIST_PROFILES = "LIST_PROFILES"


@dataclass(frozen=True)
class FacadeError:
    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class FacadeResponse:
    ok: bool
    data: Any = None
    error: Optional[FacadeError] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            out["data"] = self.data
        else:
            out["error"] = self.error.to_dict() if self.error else None
        return out


def strip_protected(partial: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of ``partial`` without the entitlement-owned top-level fields."""
    stripped = {k: v for k, v in partial.items() if k not in PROTECTED_FIELDS}
    dropped = set(partial) - set(stripped)
    if dropped:
        logger.warning("Ignoring protected settings fields: %s", ", ".join(sorted(dropped)))
    return stripped


class Facade:
    """Dispatches named operations to a ChatKeeper."""

    def __init__(self, keeper: ChatKeeper):
        self._keeper = keeper
        self._operations: dict[str, Callable[[Any], Any]] = {
            GET_SETTINGS: self._get_settings,
            UPDATE_SETTINGS: self._update_settings,
            GET_LICENSE: self._get_license,
            GET_ANALYTICS: self._get_analytics,
            UPDATE_ANALYTICS: self._update_analytics,
            GET_STATUS: self._get_status,
            GET_CREDITS: self._get_credits,
            LIST_PROFILES: self._list_profiles,
        }

    @property
    def operations(self) -> list[str]:
        return list(self._operations)

    def handle(self, operation: str, payload: Any = None) -> FacadeResponse:
        try:
            handler = self._operations.get(operation)
            if handler is None:
                raise ValidationError(f"Unknown operation: {operation}")
            return FacadeResponse(ok=True, data=handler(payload))
        except ChatKeepError as e:
            logger.info("%s failed: %s", operation, e)
            return FacadeResponse(ok=False, error=FacadeError(e.kind, str(e)))

    # -- Operations -----------------------------------------------------------

    def _get_settings(self, payload: Any) -> dict[str, Any]:
        return self._keeper.get_settings().to_dict()

    def _update_settings(self, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise ValidationError("Settings update must be an object")
        return self._keeper.update_settings(strip_protected(payload)).to_dict()

    def _get_license(self, payload: Any) -> dict[str, Any]:
        return self._keeper.refresh_license().to_dict()

    def _get_analytics(self, payload: Any) -> dict[str, Any]:
        return self._keeper.analytics.load()

    def _update_analytics(self, payload: Any) -> dict[str, Any]:
        return self._keeper.analytics.update(payload)

    def _get_status(self, payload: Any) -> dict[str, Any]:
        settings = self._keeper.get_settings()
        license = self._keeper.license.get_cached()
        return {
            "connected": True,
            "botEnabled": settings.master_enabled,
            "tier": license.tier if license else settings.tier,
            "activeProfile": self._keeper.active.profile_id,
            "messagesUsed": settings.messages_used,
            "messagesLimit": settings.messages_limit,
            "features": {
                "welcome": settings.welcome.enabled,
                "timer": settings.timer.enabled,
                "faq": settings.faq.enabled,
                "moderation": settings.moderation.enabled,
                "giveaway": settings.giveaway.enabled,
            },
        }

    def _get_credits(self, payload: Any) -> dict[str, Any]:
        credits = self._keeper.credits
        return {**credits.get_status().to_dict(), "warning": credits.check_warning().to_dict()}

    def _list_profiles(self, payload: Any) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._keeper.profiles.list_profiles(self._keeper.active)]
