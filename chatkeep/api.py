"""
ChatKeeper: one installation's state, wired from its state directory.

Every surface (CLI, MCP bridge, HTTP API) builds a ChatKeeper and talks to
the components through it. The components themselves hold no ambient
state; the active profile is an explicit ``ActiveProfile`` carried here per
session.
"""

import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from .analytics import AnalyticsStore
from .api_keys import ApiKeyManager
from .billing import HttpBillingClient, LocalBillingStore
from .config import StoreConfig, get_default_state_dir, load_or_create_config
from .credits import CreditMeter
from .errors import NotFoundError
from .generation import ReplyGenerator
from .kv_store import SqliteKeyValueStore
from .license import EntitlementCache, License
from .profiles import DEFAULT_PROFILE_ID, ActiveProfile, ProfileStore
from .protocol import BillingProtocol, KeyValueStoreProtocol
from .provider_key import ProviderKeyStore
from .settings import Settings
from .vault import SecretVault

logger = logging.getLogger(__name__)


class ChatKeeper:
    """
    Local state and entitlement engine for one installation.

    Example:
        with ChatKeeper() as ck:
            ck.initialize()
            settings = ck.get_settings()
    """

    def __init__(
        self,
        state_dir: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        kv: Optional[KeyValueStoreProtocol] = None,
        billing: Optional[BillingProtocol] = None,
    ) -> None:
        """
        Args:
            state_dir: State directory. Defaults to CHATKEEP_STATE_DIR or ~/.chatkeep.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            kv: Injected key-value store (skips the SQLite file).
            billing: Injected billing collaborator.
        """
        if config is not None:
            self._config = config
        else:
            path = Path(state_dir).expanduser() if state_dir is not None else get_default_state_dir()
            self._config = load_or_create_config(path)

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._config.path)

        self._kv = kv if kv is not None else SqliteKeyValueStore(self._config.db_path)
        self._owns_billing = billing is None
        self._billing = billing if billing is not None else self._create_billing()

        self.profiles = ProfileStore(self._kv)
        self.license = EntitlementCache(self._kv, self._billing)
        self.credits = CreditMeter(self._kv)
        self.vault = SecretVault(self._kv)
        self.provider_keys = ProviderKeyStore(self.vault)
        self.api_keys = ApiKeyManager(self._kv)
        self.analytics = AnalyticsStore(self._kv)
        self.generator = ReplyGenerator(
            self.credits,
            self.provider_keys,
            model=self._config.generation.model,
            max_tokens=self._config.generation.max_tokens,
        )

        self.active = self.profiles.load_active()
        self._closed = False

    def _create_billing(self) -> BillingProtocol:
        billing = self._config.billing
        if billing.url:
            return HttpBillingClient(
                billing.url,
                extension_id=billing.extension_id,
                timeout=billing.verify_timeout,
            )
        return LocalBillingStore(self._kv, extension_id=billing.extension_id)

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def state_dir(self) -> Path:
        return self._config.path

    @property
    def kv(self) -> KeyValueStoreProtocol:
        return self._kv

    # -- Lifecycle ------------------------------------------------------------

    def initialize(self) -> bool:
        """
        Startup: migrate legacy settings and create the vault key.

        Run by one process (``chatkeep init`` or a façade entry point)
        before serving. Returns True if a migration happened.
        """
        migrated = self.profiles.migrate_legacy()
        self.vault.initialize()
        self.active = self.profiles.load_active()
        return migrated

    def refresh_license(self, *, force: bool = False) -> License:
        """Resolve the license and write its tier limits into the active profile."""
        license = self.license.verify() if force else self.license.init()
        self.license.sync_tier_with_settings(self.profiles, self.active, license)
        return license

    # -- Settings -------------------------------------------------------------

    def get_settings(self) -> Settings:
        """
        Active profile's settings, migrating on first use.

        An unreadable store reads as default settings; nothing is written.
        """
        settings = self.profiles.get_active_settings(self.active)
        if not isinstance(settings, Settings):
            self.profiles.migrate_legacy()
            settings = self.profiles.get_active_settings(self.active)
        if not isinstance(settings, Settings):
            logger.warning("No readable profiles, serving default settings")
            return Settings()
        return settings

    def update_settings(self, partial: Mapping[str, Any]) -> Settings:
        """Merge ``partial`` into the active profile (migrating on first use)."""
        self.get_settings()
        try:
            return self.profiles.update_active_settings(self.active, partial)
        except NotFoundError:
            if self.active.profile_id == DEFAULT_PROFILE_ID:
                raise
        # Active profile was deleted by another process; follow the read fallback
        logger.info("Active profile %s is gone, switching to default", self.active.profile_id)
        self.active = self.profiles.set_active_profile(DEFAULT_PROFILE_ID)
        return self.profiles.update_active_settings(self.active, partial)

    def switch_profile(self, profile_id: str) -> ActiveProfile:
        self.active = self.profiles.set_active_profile(profile_id)
        self.license.sync_tier_with_settings(self.profiles, self.active)
        return self.active

    # -- Cleanup --------------------------------------------------------------

    def close(self) -> None:
        """Close the store and billing client and detach the ops log."""
        if self._closed:
            return
        self._closed = True
        if self._owns_billing and isinstance(self._billing, HttpBillingClient):
            self._billing.close()
        self._kv.close()
        if self._ops_log_handler is not None:
            logging.getLogger("chatkeep").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False

    def __del__(self):
        """Cleanup on deletion."""
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
