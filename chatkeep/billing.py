"""
Billing collaborators: where subscription and trial state comes from.

Two implementations of BillingProtocol:

- LocalBillingStore keeps the user record in the ``billing_user`` sync
  document, which is where an embedded payment widget leaves it.
- HttpBillingClient asks a hosted billing API. It makes exactly one attempt
  per call with a bounded timeout; any failure surfaces as
  RemoteUnavailableError so entitlement verification can degrade.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote, urlparse

import httpx

from .errors import RemoteUnavailableError
from .kv_store import SYNC
from .protocol import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

BILLING_USER_KEY = "billing_user"

DEFAULT_TIMEOUT = 10.0


class LocalBillingStore:
    """User record stored alongside the rest of the sync state."""

    def __init__(self, kv: KeyValueStoreProtocol, *, extension_id: str = "buzzchat"):
        self._kv = kv
        self._extension_id = extension_id

    def get_user(self) -> Optional[dict[str, Any]]:
        try:
            user = self._kv.get(SYNC, BILLING_USER_KEY)
        except Exception as e:
            raise RemoteUnavailableError(f"Billing record unreadable: {e}") from e
        return dict(user) if isinstance(user, dict) else None

    def record_trial_start(self, started_at: str) -> None:
        user = self.get_user() or {}
        user.update({"trialStartedAt": started_at, "extensionId": self._extension_id})
        self._kv.set(SYNC, BILLING_USER_KEY, user)


class HttpBillingClient:
    """HTTP client for a hosted billing API."""

    def __init__(
        self,
        api_url: str,
        *,
        extension_id: str = "buzzchat",
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._api_url = api_url.rstrip("/")
        self._extension_id = extension_id

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Billing API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect credentials, or use localhost for local development."
                )

        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.Client(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
        )

    @property
    def _user_path(self) -> str:
        return f"/v1/extensions/{quote(self._extension_id, safe='')}/user"

    def get_user(self) -> Optional[dict[str, Any]]:
        """GET the user record; None when the service has no user (404)."""
        try:
            resp = self._client.get(self._user_path)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RemoteUnavailableError(
                f"Billing lookup failed: {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise RemoteUnavailableError(f"Billing lookup failed: {e}") from e

        user = data.get("user", data) if isinstance(data, dict) else None
        return user if isinstance(user, dict) else None

    def record_trial_start(self, started_at: str) -> None:
        try:
            resp = self._client.post(
                f"{self._user_path}/trial",
                json={"trialStartedAt": started_at},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(f"Trial registration failed: {e}") from e

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()
