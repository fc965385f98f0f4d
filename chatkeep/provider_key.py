"""Generation-provider (Anthropic) API key, kept encrypted in the vault."""

import logging
from typing import Optional

from .errors import ValidationError
from .vault import NOT_FOUND, SecretVault

logger = logging.getLogger(__name__)

SECRET_NAME = "anthropic_key"
KEY_PREFIX = "sk-ant-"


def mask_key(key: str) -> str:
    """``sk-ant-***...abcd``."""
    return f"{key[:7]}***...{key[-4:]}"


class ProviderKeyStore:
    """Stores the user's own provider key on this device only."""

    def __init__(self, vault: SecretVault):
        self._vault = vault

    def store_key(self, api_key: str) -> None:
        """
        Validate and store ``api_key``.

        Raises:
            ValidationError: missing or not an Anthropic key
            VaultError: the key couldn't be encrypted
        """
        if not api_key or not isinstance(api_key, str):
            raise ValidationError("API key is required")
        trimmed = api_key.strip()
        if not trimmed.startswith(KEY_PREFIX):
            raise ValidationError(
                f"Invalid API key format. Anthropic keys start with {KEY_PREFIX}"
            )
        self._vault.set_secure(SECRET_NAME, trimmed)
        logger.info("Provider key stored")

    def get_key(self) -> Optional[str]:
        result = self._vault.get_secure(SECRET_NAME)
        if result.ok:
            return result.value
        if result.error != NOT_FOUND:
            logger.warning("Provider key unreadable (%s)", result.error)
        return None

    def has_key(self) -> bool:
        return self.get_key() is not None

    def clear_key(self) -> bool:
        removed = self._vault.remove_secure(SECRET_NAME)
        if removed:
            logger.info("Provider key cleared")
        return removed

    def masked_key(self) -> Optional[str]:
        key = self.get_key()
        return mask_key(key) if key else None
