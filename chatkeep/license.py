"""
Entitlement cache: which paid tier this installation is entitled to.

The License document is resolved from the billing collaborator and cached
in the sync area with a ``cachedAt`` stamp. A cached license younger than
24 hours is served without a remote call. Verification makes one attempt;
when it fails the last cached license is served indefinitely, and with no
cache at all the caller gets a free license. Nothing here raises to the
caller on remote failure.

The License is always written as one whole document, so concurrent readers
see either the old license or the new one.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .errors import ChatKeepError, RemoteUnavailableError, ValidationError
from .kv_store import SYNC
from .protocol import BillingProtocol, KeyValueStoreProtocol
from .settings import Settings, tier_limit_fields

logger = logging.getLogger(__name__)

LICENSE_KEY = "license"

TRIAL_DAYS = 7
CACHE_EXPIRY = timedelta(hours=24)

PAYMENT_BASE_URL = "https://extensionpay.com"


class LicenseState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CACHED_FRESH = "cached_fresh"
    CACHED_STALE = "cached_stale"
    VERIFYING = "verifying"
    DEGRADED = "degraded"

    def __str__(self) -> str:
        return self.value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string or epoch-ms number to an aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (TypeError, ValueError, OverflowError, OSError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class License:
    tier: str = "free"
    paid: bool = False
    trial_active: bool = False
    trial_ends_at: Optional[str] = None
    email: Optional[str] = None
    customer_id: Optional[str] = None
    cached_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "paid": self.paid,
            "trialActive": self.trial_active,
            "trialEndsAt": self.trial_ends_at,
            "email": self.email,
            "customerId": self.customer_id,
            "cachedAt": self.cached_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "License":
        cached_at = data.get("cachedAt")
        return cls(
            tier=str(data.get("tier") or "free"),
            paid=bool(data.get("paid", False)),
            trial_active=bool(data.get("trialActive", False)),
            trial_ends_at=data.get("trialEndsAt"),
            email=data.get("email"),
            customer_id=data.get("customerId"),
            cached_at=int(cached_at) if isinstance(cached_at, (int, float)) else None,
        )


FREE_LICENSE = License()


def license_from_user(user: Optional[Mapping[str, Any]], now: datetime) -> License:
    """
    Map a billing user record to a License (without cachedAt).

    - no user: free
    - paid: business if the plan is business, else pro
    - unpaid with a trial started less than TRIAL_DAYS ago: pro trial
    - otherwise: free
    """
    if not user:
        return FREE_LICENSE

    email = user.get("email") or None
    customer_id = user.get("id") or None

    if user.get("paid"):
        tier = "business" if user.get("planId") == "business" else "pro"
        return License(tier=tier, paid=True, email=email, customer_id=customer_id)

    started = parse_timestamp(user.get("trialStartedAt"))
    if started is not None:
        trial_end = started + timedelta(days=TRIAL_DAYS)
        if now < trial_end:
            return License(
                tier="pro",
                trial_active=True,
                trial_ends_at=trial_end.isoformat(),
                email=email,
                customer_id=customer_id,
            )

    return License(email=email, customer_id=customer_id)


class EntitlementCache:
    """Resolves, caches and degrades the installation's License."""

    def __init__(
        self,
        kv: KeyValueStoreProtocol,
        billing: BillingProtocol,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._kv = kv
        self._billing = billing
        self._clock = clock
        self._state = LicenseState.UNINITIALIZED

    @property
    def state(self) -> LicenseState:
        return self._state

    # -- Cache ----------------------------------------------------------------

    def get_cached(self) -> Optional[License]:
        """Cached License, or None if absent or unreadable."""
        try:
            raw = self._kv.get(SYNC, LICENSE_KEY)
        except Exception as e:
            logger.warning("Failed to read cached license: %s", e)
            return None
        return License.from_dict(raw) if isinstance(raw, Mapping) else None

    def is_expired(self, license: License) -> bool:
        if license.cached_at is None:
            return True
        age_ms = _to_ms(self._clock()) - license.cached_at
        return age_ms >= CACHE_EXPIRY.total_seconds() * 1000

    def _store(self, license: License) -> License:
        """Stamp and write the whole License. Returns the stamped copy."""
        stamped = replace(license, cached_at=_to_ms(self._clock()))
        self._kv.set(SYNC, LICENSE_KEY, stamped.to_dict())
        return stamped

    # -- Lifecycle ------------------------------------------------------------

    def init(self) -> License:
        """Serve a fresh cached License, otherwise verify."""
        cached = self.get_cached()
        if cached is not None and not self.is_expired(cached):
            self._state = LicenseState.CACHED_FRESH
            logger.debug("Using cached license: %s", cached.tier)
            return cached
        if cached is not None:
            self._state = LicenseState.CACHED_STALE
        return self.verify()

    def verify(self) -> License:
        """
        Ask the billing collaborator and cache the result.

        Never raises: on failure returns the last cached License (however
        old) or, with no cache, a free License.
        """
        self._state = LicenseState.VERIFYING
        try:
            user = self._billing.get_user()
        except RemoteUnavailableError as e:
            return self._degrade(e)
        except Exception as e:
            logger.exception("Unexpected billing failure")
            return self._degrade(e)

        license = license_from_user(user, self._clock())
        try:
            license = self._store(license)
        except Exception as e:
            # Verified but not cached; the next init() verifies again
            logger.warning("Failed to cache license: %s", e)
        self._state = LicenseState.CACHED_FRESH
        logger.info("License verified: %s", license.tier)
        return license

    def _degrade(self, error: Exception) -> License:
        self._state = LicenseState.DEGRADED
        cached = self.get_cached()
        if cached is not None:
            logger.warning("License verification failed (%s); using last known status", error)
            return cached
        logger.warning("License verification failed (%s); defaulting to free", error)
        return FREE_LICENSE

    # -- Trial ----------------------------------------------------------------

    def can_start_trial(self) -> bool:
        """True if there is no user record or it never started a trial."""
        try:
            user = self._billing.get_user()
        except RemoteUnavailableError as e:
            logger.warning("Can't check trial eligibility: %s", e)
            return False
        return not user or not user.get("trialStartedAt")

    def start_trial(self) -> License:
        """
        Start the one-per-installation trial.

        Raises:
            ValidationError: a trial was already started
            RemoteUnavailableError: the trial couldn't be registered
        """
        if not self.can_start_trial():
            raise ValidationError("Trial already used")
        now = self._clock()
        self._billing.record_trial_start(now.isoformat())
        license = self._store(License(
            tier="pro",
            trial_active=True,
            trial_ends_at=(now + timedelta(days=TRIAL_DAYS)).isoformat(),
        ))
        self._state = LicenseState.CACHED_FRESH
        logger.info("Trial started, ends %s", license.trial_ends_at)
        return license

    # -- Tier reconciliation --------------------------------------------------

    def sync_tier_with_settings(self, profiles, active, license: Optional[License] = None) -> Optional[Settings]:
        """
        Write the license tier and its limits into the active profile.

        Only writes when the profile's tier differs, so UI and automation code
        read plain numeric caps and never branch on tier themselves.
        Returns the (possibly updated) Settings, or None before migration.
        """
        license = license or self.get_cached()
        if license is None:
            return None
        settings = profiles.get_active_settings(active)
        if not isinstance(settings, Settings):
            return None
        if settings.tier == license.tier:
            return settings
        update = {"tier": license.tier, **tier_limit_fields(license.tier)}
        try:
            updated = profiles.update_active_settings(active, update)
        except ChatKeepError as e:
            logger.warning("Failed to sync tier into settings: %s", e)
            return settings
        logger.info("Settings synced with tier %s", license.tier)
        return updated


def format_trial_remaining(trial_ends_at: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """Human text for the time left in a trial."""
    end = parse_timestamp(trial_ends_at)
    if end is None:
        return None
    diff = end - (now or utc_now())
    if diff.total_seconds() <= 0:
        return "Trial expired"
    days = diff.days
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} left"
    hours = int(diff.total_seconds() // 3600)
    return f"{hours} hour{'s' if hours != 1 else ''} left"


def payment_url(extension_id: str, plan: str = "pro", annual: bool = False) -> str:
    params = []
    if plan == "business":
        params.append("plan=business")
    if annual:
        params.append("billing=annual")
    url = f"{PAYMENT_BASE_URL}/pay/{extension_id}"
    return f"{url}?{'&'.join(params)}" if params else url


def management_url(extension_id: str) -> str:
    return f"{PAYMENT_BASE_URL}/manage/{extension_id}"
