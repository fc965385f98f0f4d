"""
Credit meter: the monthly allowance of AI generations.

One ledger document ``{month: "YYYY-MM", used}`` per installation. A ledger
from an earlier month reads as a fresh allowance, but it is only rewritten
by the next successful ``consume()``. ``consume()`` is a read-then-write
with no isolation; two processes consuming at the same moment can both
succeed on the last credit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .errors import QuotaExhaustedError
from .kv_store import SYNC
from .protocol import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

CREDITS_KEY = "ai_credits"

MONTHLY_ALLOWANCE = 500
WARNING_THRESHOLD = 50
CRITICAL_THRESHOLD = 10


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


def next_reset_date(now: datetime) -> datetime:
    """First day of the month after ``now``."""
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class CreditStatus:
    remaining: int
    used: int
    month: str
    reset_date: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "remaining": self.remaining,
            "used": self.used,
            "month": self.month,
            "resetDate": self.reset_date,
        }


@dataclass(frozen=True)
class CreditWarning:
    warning: bool
    level: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if not self.warning:
            return {"warning": False}
        return {"warning": True, "level": self.level, "message": self.message}


def status_from_ledger(ledger: Any, now: datetime) -> CreditStatus:
    """Status for a stored ledger; another month's ledger reads as fresh."""
    current = month_key(now)
    reset = next_reset_date(now).isoformat()
    if not isinstance(ledger, dict) or ledger.get("month") != current:
        return CreditStatus(MONTHLY_ALLOWANCE, 0, current, reset)
    used = ledger.get("used")
    used = used if isinstance(used, int) and not isinstance(used, bool) and used > 0 else 0
    return CreditStatus(max(0, MONTHLY_ALLOWANCE - used), used, current, reset)


def next_ledger(status: CreditStatus) -> dict[str, Any]:
    """The ledger after spending one credit from ``status``."""
    return {"used": status.used + 1, "month": status.month}


class CreditMeter:
    """Tracks the monthly AI generation allowance."""

    def __init__(
        self,
        kv: KeyValueStoreProtocol,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._kv = kv
        self._clock = clock

    def get_status(self) -> CreditStatus:
        """Current status. Never writes; read failures report no credits left."""
        now = self._clock()
        try:
            ledger = self._kv.get(SYNC, CREDITS_KEY)
        except Exception as e:
            logger.warning("Failed to read credits: %s", e)
            return CreditStatus(0, MONTHLY_ALLOWANCE, month_key(now), next_reset_date(now).isoformat())
        return status_from_ledger(ledger, now)

    def consume(self) -> int:
        """
        Spend one credit. A failed ledger read propagates; nothing is written.

        Returns:
            Credits remaining after this one

        Raises:
            QuotaExhaustedError: nothing left this month
        """
        status = status_from_ledger(self._kv.get(SYNC, CREDITS_KEY), self._clock())
        if status.remaining <= 0:
            raise QuotaExhaustedError(
                f"No AI credits remaining. Resets {self.format_reset_date()}"
            )
        self._kv.set(SYNC, CREDITS_KEY, next_ledger(status))
        remaining = status.remaining - 1
        logger.debug("Credit used, %d remaining for %s", remaining, status.month)
        return remaining

    def check_warning(self) -> CreditWarning:
        remaining = self.get_status().remaining
        if remaining <= CRITICAL_THRESHOLD:
            return CreditWarning(
                True, "critical",
                f"Only {remaining} AI credits left! Resets {self.format_reset_date()}",
            )
        if remaining <= WARNING_THRESHOLD:
            return CreditWarning(True, "low", f"{remaining} AI credits remaining this month")
        return CreditWarning(False)

    def can_use(self) -> bool:
        return self.get_status().remaining > 0

    def reset(self) -> None:
        """Start the current month over (admin and testing use)."""
        self._kv.set(SYNC, CREDITS_KEY, {"used": 0, "month": month_key(self._clock())})
        logger.info("AI credits reset")

    def usage_percentage(self) -> int:
        """Share of the allowance still available, 0-100."""
        return round(self.get_status().remaining / MONTHLY_ALLOWANCE * 100)

    def format_reset_date(self) -> str:
        """``Mar 1`` style date of the next reset."""
        reset = next_reset_date(self._clock())
        return f"{reset.strftime('%b')} {reset.day}"


def format_credits(credits: int, total: int = MONTHLY_ALLOWANCE) -> str:
    return f"{credits}/{total}"
