"""
Settings-editing helpers shared by the command bridge and the HTTP API.

Each helper takes the current Settings and returns the partial update to
apply (arrays are replaced wholesale by the merge, so list edits return the
whole new list). Tier caps are enforced here from the numeric limits the
entitlement layer wrote into Settings; ``None`` means unlimited.
"""

import random
from typing import Any, Optional, Sequence

from .errors import LimitExceededError, NotFoundError, ValidationError
from .settings import GiveawayEntry, Settings

MAX_TEMPLATE_NAME_LENGTH = 50
MIN_TIMER_INTERVAL = 1


def _check_cap(current: int, limit: Optional[int], what: str) -> None:
    if limit is not None and current >= limit:
        raise LimitExceededError(
            f"{what} limit reached ({limit}). Upgrade to Pro for unlimited {what.lower()}."
        )


def _check_index(items: Sequence[Any], index: int, what: str) -> None:
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(items):
        raise ValidationError(
            f"Invalid {what} index. Must be between 0 and {len(items) - 1}"
        )


def _clean_words(words: Any, what: str) -> list[str]:
    if not isinstance(words, (list, tuple)):
        raise ValidationError(f"{what} must be a list of strings")
    cleaned = [w.strip() for w in words if isinstance(w, str) and w.strip()]
    if not cleaned:
        raise ValidationError(f"{what} must have at least one entry")
    return cleaned


# -- Bot ----------------------------------------------------------------------

def set_master_enabled(enabled: bool) -> dict[str, Any]:
    return {"masterEnabled": bool(enabled)}


# -- Welcome ------------------------------------------------------------------

def set_welcome_message(message: str, enabled: bool = True, delay: Optional[int] = None) -> dict[str, Any]:
    if not message or not isinstance(message, str) or not message.strip():
        raise ValidationError("Welcome message is required")
    welcome: dict[str, Any] = {"message": message.strip(), "enabled": bool(enabled)}
    if delay is not None:
        if delay < 0:
            raise ValidationError("Welcome delay cannot be negative")
        welcome["delay"] = delay
    return {"welcome": welcome}


# -- FAQ ----------------------------------------------------------------------

def add_faq_rule(settings: Settings, triggers: Any, reply: str, case_sensitive: bool = False) -> dict[str, Any]:
    """
    Append an FAQ rule.

    Raises:
        ValidationError: no triggers or no reply
        LimitExceededError: the tier's FAQ rule cap is reached
    """
    cleaned = _clean_words(triggers, "Triggers")
    if not reply or not isinstance(reply, str) or not reply.strip():
        raise ValidationError("Reply is required")
    rules = settings.faq.rules
    _check_cap(len(rules), settings.faq_rules_limit, "FAQ rule")
    new_rule = {"triggers": cleaned, "reply": reply.strip(), "caseSensitive": bool(case_sensitive)}
    return {"faq": {"rules": [r.to_dict() for r in rules] + [new_rule]}}


def remove_faq_rule(settings: Settings, index: int) -> dict[str, Any]:
    rules = settings.faq.rules
    _check_index(rules, index, "FAQ rule")
    return {"faq": {"rules": [r.to_dict() for i, r in enumerate(rules) if i != index]}}


# -- Timers -------------------------------------------------------------------

def add_timer_message(settings: Settings, text: str, interval: int = 5) -> dict[str, Any]:
    """Append a timer message sent every ``interval`` minutes."""
    if not text or not isinstance(text, str) or not text.strip():
        raise ValidationError("Timer message text is required")
    if not isinstance(interval, int) or interval < MIN_TIMER_INTERVAL:
        raise ValidationError(f"Interval must be at least {MIN_TIMER_INTERVAL} minute")
    messages = settings.timer.messages
    _check_cap(len(messages), settings.timers_limit, "Timer")
    new_message = {"text": text.strip(), "interval": interval}
    return {"timer": {"messages": [m.to_dict() for m in messages] + [new_message]}}


def remove_timer_message(settings: Settings, index: int) -> dict[str, Any]:
    messages = settings.timer.messages
    _check_index(messages, index, "timer message")
    return {"timer": {"messages": [m.to_dict() for i, m in enumerate(messages) if i != index]}}


# -- Templates ----------------------------------------------------------------

def add_template(settings: Settings, name: str, text: str) -> dict[str, Any]:
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationError("Template name is required")
    if not text or not isinstance(text, str) or not text.strip():
        raise ValidationError("Template text is required")
    name = name.strip()[:MAX_TEMPLATE_NAME_LENGTH]
    templates = settings.templates
    if any(t.name.lower() == name.lower() for t in templates):
        raise ValidationError(f'A template named "{name}" already exists')
    _check_cap(len(templates), settings.templates_limit, "Template")
    return {"templates": [t.to_dict() for t in templates] + [{"name": name, "text": text.strip()}]}


def remove_template(settings: Settings, name: str) -> dict[str, Any]:
    remaining = [t for t in settings.templates if t.name.lower() != (name or "").lower()]
    if len(remaining) == len(settings.templates):
        raise NotFoundError(f'Template "{name}" not found')
    return {"templates": [t.to_dict() for t in remaining]}


# -- Moderation ---------------------------------------------------------------

def set_blocked_words(words: Any) -> dict[str, Any]:
    if not isinstance(words, (list, tuple)):
        raise ValidationError("Blocked words must be a list of strings")
    cleaned = []
    for word in words:
        if isinstance(word, str) and word.strip() and word.strip().lower() not in cleaned:
            cleaned.append(word.strip().lower())
    return {"moderation": {"blockedWords": cleaned}}


# -- Giveaway -----------------------------------------------------------------

def configure_giveaway(keywords: Any, unique_only: bool = True) -> dict[str, Any]:
    return {"giveaway": {"keywords": _clean_words(keywords, "Keywords"), "uniqueOnly": bool(unique_only)}}


def reset_giveaway() -> dict[str, Any]:
    return {"giveaway": {"entries": []}}


def remove_giveaway_entry(settings: Settings, username: str) -> dict[str, Any]:
    lowered = (username or "").lower()
    entries = [e for e in settings.giveaway.entries if e.username.lower() != lowered]
    if len(entries) == len(settings.giveaway.entries):
        raise NotFoundError(f'User "{username}" was not found in the giveaway entries')
    return {"giveaway": {"entries": [e.to_dict() for e in entries]}}


def pick_winners(
    entries: Sequence[GiveawayEntry],
    count: int = 1,
    rng: Optional[random.Random] = None,
) -> list[GiveawayEntry]:
    """
    Pick ``count`` distinct winners uniformly at random.

    Raises:
        ValidationError: count below 1
        LimitExceededError: more winners requested than there are entries
    """
    if not isinstance(count, int) or count < 1:
        raise ValidationError("Winner count must be at least 1")
    if count > len(entries):
        raise LimitExceededError(
            f"Cannot pick {count} winners from {len(entries)} entries"
        )
    return (rng or random).sample(list(entries), count)
