"""
Local usage analytics: message counters, daily stats and activity by hour.

Kept in the ``local`` area as one document. Updates are read-merge-write
like everything else; losing an increment to a concurrent writer is
acceptable for these counters.
"""

import copy
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from .errors import ValidationError
from .kv_store import LOCAL
from .protocol import KeyValueStoreProtocol
from .settings import deep_merge

logger = logging.getLogger(__name__)

ANALYTICS_KEY = "analytics"
MAX_DAILY_STATS_DAYS = 30

MESSAGE_KINDS = ("general", "welcome", "faq", "timer", "template")

# kind -> (total counter, daily counter)
_KIND_COUNTERS = {
    "welcome": ("welcomeMessagesSent", "welcomes"),
    "faq": ("faqRepliesSent", "faqs"),
    "timer": ("timerMessagesSent", "timers"),
    "template": ("templatesSent", "templates"),
}


def default_analytics() -> dict[str, Any]:
    return {
        "totalMessagesSent": 0,
        "welcomeMessagesSent": 0,
        "faqRepliesSent": 0,
        "timerMessagesSent": 0,
        "templatesSent": 0,
        "sessionsCount": 0,
        "lastSessionDate": None,
        "dailyStats": {},
        "hourlyActivity": [0] * 24,
        "topFaqTriggers": {},
    }


def _empty_day() -> dict[str, int]:
    return {"messages": 0, "welcomes": 0, "faqs": 0, "timers": 0, "templates": 0}


def _hour_label(hour: int) -> str:
    if hour == 0:
        return "12 AM"
    if hour < 12:
        return f"{hour} AM"
    if hour == 12:
        return "12 PM"
    return f"{hour - 12} PM"


class AnalyticsStore:
    """Reads and updates the analytics document."""

    def __init__(
        self,
        kv: KeyValueStoreProtocol,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._kv = kv
        self._clock = clock

    def load(self) -> dict[str, Any]:
        """Analytics with defaults filled in. Read failures give empty analytics."""
        try:
            raw = self._kv.get(LOCAL, ANALYTICS_KEY)
        except Exception as e:
            logger.warning("Failed to read analytics: %s", e)
            raw = None
        data = default_analytics()
        if isinstance(raw, Mapping):
            data = deep_merge(data, raw)
        hourly = data.get("hourlyActivity")
        if not isinstance(hourly, list) or len(hourly) != 24:
            data["hourlyActivity"] = [0] * 24
        return data

    def _save(self, data: Mapping[str, Any]) -> None:
        self._kv.set(LOCAL, ANALYTICS_KEY, dict(data))

    def update(self, partial: Any) -> dict[str, Any]:
        """Deep-merge ``partial`` into the stored analytics."""
        if not isinstance(partial, Mapping):
            raise ValidationError("Analytics update must be an object")
        data = deep_merge(self.load(), partial)
        self._save(data)
        return data

    def reset(self) -> dict[str, Any]:
        data = default_analytics()
        self._save(data)
        logger.info("Analytics reset")
        return data

    def track_message(self, kind: str = "general", trigger: Optional[str] = None) -> dict[str, Any]:
        if kind not in MESSAGE_KINDS:
            raise ValidationError(f"Unknown message kind: {kind}")
        now = self._clock()
        today = now.date().isoformat()
        data = self.load()

        day = data["dailyStats"].setdefault(today, _empty_day())
        data["totalMessagesSent"] += 1
        day["messages"] = day.get("messages", 0) + 1
        data["hourlyActivity"][now.hour] += 1

        if kind in _KIND_COUNTERS:
            total_key, day_key = _KIND_COUNTERS[kind]
            data[total_key] += 1
            day[day_key] = day.get(day_key, 0) + 1
        if kind == "faq" and trigger:
            triggers = data["topFaqTriggers"]
            triggers[trigger] = triggers.get(trigger, 0) + 1

        self._save(data)
        return data

    def track_session(self) -> dict[str, Any]:
        """Count a session, at most once per calendar day."""
        today = self._clock().date().isoformat()
        data = self.load()
        if data.get("lastSessionDate") != today:
            data["sessionsCount"] += 1
            data["lastSessionDate"] = today
            self._save(data)
        return data

    def daily_stats(self, end: Optional[date] = None, days: int = 7) -> list[dict[str, Any]]:
        """Per-day stats for the ``days`` days ending on ``end``, oldest first."""
        if not 1 <= days <= MAX_DAILY_STATS_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_DAILY_STATS_DAYS}")
        end = end or self._clock().date()
        stats = self.load()["dailyStats"]
        out = []
        for offset in range(days - 1, -1, -1):
            day = end - timedelta(days=offset)
            key = day.isoformat()
            out.append({"date": key, "label": day.strftime("%a"), **_empty_day(), **copy.deepcopy(stats.get(key, {}))})
        return out

    def summary(self) -> dict[str, Any]:
        data = self.load()
        today = self._clock().date()
        today_stats = data["dailyStats"].get(today.isoformat(), _empty_day())
        hourly = data["hourlyActivity"]
        top = sorted(data["topFaqTriggers"].items(), key=lambda item: item[1], reverse=True)[:5]
        return {
            "totalMessages": data["totalMessagesSent"],
            "todayMessages": today_stats.get("messages", 0),
            "welcomesSent": data["welcomeMessagesSent"],
            "faqReplies": data["faqRepliesSent"],
            "timerMessages": data["timerMessagesSent"],
            "templatesSent": data["templatesSent"],
            "sessionsCount": data["sessionsCount"],
            "last7Days": self.daily_stats(today, 7),
            "hourlyActivity": hourly,
            "topTriggers": [{"trigger": t, "count": c} for t, c in top],
            "peakHour": _hour_label(hourly.index(max(hourly))),
        }
