"""
Error types and error logging for chatkeep.

Domain errors carry a short ``kind`` string so the façades (MCP bridge,
HTTP API) can return structured errors without matching on class names.
Full stack traces go to a log file while users see clean messages.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class ChatKeepError(Exception):
    """Base class for all chatkeep domain errors."""

    kind = "error"


class ValidationError(ChatKeepError):
    """Bad name, length or shape. Raised before anything is written."""

    kind = "validation"


class NotFoundError(ChatKeepError):
    """Unknown profile, secret or credential."""

    kind = "not_found"


class ProtectedResourceError(ChatKeepError):
    """Attempt to delete the protected default profile."""

    kind = "protected"


class LimitExceededError(ChatKeepError):
    """A count cap was hit (profiles, API keys, tier caps, giveaway winners)."""

    kind = "limit_exceeded"


class QuotaExhaustedError(ChatKeepError):
    """The monthly AI credit allowance is used up."""

    kind = "quota_exhausted"


class RemoteUnavailableError(ChatKeepError):
    """Billing or generation collaborator unreachable or misbehaving."""

    kind = "remote_unavailable"


class UnauthorizedError(ChatKeepError):
    """A façade caller's credential is missing or not an issued key."""

    kind = "unauthorized"


class VaultError(ChatKeepError):
    """A secret could not be encrypted for storage."""

    kind = "vault"


def _error_log_path() -> Path:
    """Resolve error log path, respecting CHATKEEP_STATE_DIR."""
    state_dir = os.environ.get("CHATKEEP_STATE_DIR")
    if state_dir:
        return Path(state_dir) / "chatkeep-errors.log"
    return Path.home() / ".chatkeep" / "chatkeep-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write(traceback.format_exc())
    except OSError:
        pass  # error log unwritable
    return log_path
