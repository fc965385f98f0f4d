"""
Typed Settings document and the merge rule that updates it.

A Settings document is what one profile configures: the entitlement
scalars (tier, usage counters, per-tier caps) and one sub-document per
feature area. On the wire and in storage it is a camelCase JSON object;
in Python each area is a dataclass.

Merge rule (``deep_merge``):
- nested objects merge field by field, recursively
- lists and primitives in the update replace the old value wholesale
- a field whose value is ``UNSET`` leaves the old value alone
- ``None`` is a real value and does overwrite
"""

import copy
import logging
import re
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Mapping, Optional, Union, get_args, get_origin

from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_WELCOME_MESSAGE = "Hey {username}! Welcome to the stream!"
DEFAULT_GIVEAWAY_KEYWORDS = ("entered", "entry", "enter")

TIERS = ("free", "pro", "business")


class _Unset:
    """Marker for an update field that is present but carries no value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __deepcopy__(self, memo):
        return self


UNSET = _Unset()


# -----------------------------------------------------------------------------
# Tier limits
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class TierLimits:
    """Numeric caps for a tier. None means unlimited."""
    messages: Optional[int]
    faq_rules: Optional[int]
    timers: Optional[int]
    templates: Optional[int]


TIER_LIMITS: dict[str, TierLimits] = {
    "free": TierLimits(messages=50, faq_rules=3, timers=2, templates=5),
    "pro": TierLimits(messages=250, faq_rules=None, timers=None, templates=None),
    "business": TierLimits(messages=250, faq_rules=None, timers=None, templates=None),
}


def limits_for_tier(tier: str) -> TierLimits:
    """Limits for a tier; unknown tiers get the free limits."""
    return TIER_LIMITS.get(tier, TIER_LIMITS["free"])


def tier_limit_fields(tier: str) -> dict[str, Optional[int]]:
    """The Settings fields (camelCase) that carry a tier's limits."""
    limits = limits_for_tier(tier)
    return {
        "messagesLimit": limits.messages,
        "faqRulesLimit": limits.faq_rules,
        "timersLimit": limits.timers,
        "templatesLimit": limits.templates,
    }


# -----------------------------------------------------------------------------
# Document base
# -----------------------------------------------------------------------------

_CAMEL_RE = re.compile(r"_([a-z])")


def _camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


class _Document:
    """
    Mixin giving a dataclass camelCase to_dict/from_dict.

    Subclasses list nested document fields in ``_nested`` and list-of-document
    fields in ``_lists``. Loading is lenient (unknown keys are dropped, absent
    keys take defaults); ``validate_partial`` is the strict path for updates.
    """

    _nested: ClassVar[dict[str, type]] = {}
    _lists: ClassVar[dict[str, type]] = {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in self._nested:
                out[_camel(f.name)] = value.to_dict()
            elif f.name in self._lists:
                out[_camel(f.name)] = [item.to_dict() for item in value]
            else:
                out[_camel(f.name)] = copy.deepcopy(value)
        return out

    @classmethod
    def from_dict(cls, data: Any):
        if not isinstance(data, Mapping):
            return cls()
        kwargs: dict[str, Any] = {}
        known = set()
        for f in fields(cls):
            key = _camel(f.name)
            known.add(key)
            if key not in data or data[key] is UNSET:
                continue
            value = data[key]
            if f.name in cls._nested:
                kwargs[f.name] = cls._nested[f.name].from_dict(value)
            elif f.name in cls._lists:
                item_cls = cls._lists[f.name]
                items = value if isinstance(value, list) else []
                kwargs[f.name] = [item_cls.from_dict(v) for v in items if isinstance(v, Mapping)]
            else:
                kwargs[f.name] = copy.deepcopy(value)
        unknown = set(data) - known
        if unknown:
            logger.debug("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
        return cls(**kwargs)

    @classmethod
    def validate_partial(cls, partial: Any, path: str = "") -> None:
        """
        Check an update against this document's shape.

        Raises:
            ValidationError: unknown key, or a value of the wrong type
        """
        where = path or cls.__name__
        if not isinstance(partial, Mapping):
            raise ValidationError(f"{where} must be an object")
        by_key = {_camel(f.name): f for f in fields(cls)}
        for key, value in partial.items():
            f = by_key.get(key)
            if f is None:
                raise ValidationError(f"Unknown setting: {_join(path, key)}")
            if value is UNSET:
                continue
            if f.name in cls._nested:
                cls._nested[f.name].validate_partial(value, _join(path, key))
            elif f.name in cls._lists:
                if not isinstance(value, list):
                    raise ValidationError(f"{_join(path, key)} must be a list")
                item_cls = cls._lists[f.name]
                for i, item in enumerate(value):
                    item_cls.validate_partial(item, f"{_join(path, key)}[{i}]")
            elif not _matches_type(value, f.type):
                raise ValidationError(
                    f"{_join(path, key)} has the wrong type ({type(value).__name__})"
                )


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _matches_type(value: Any, expected: Any) -> bool:
    origin = get_origin(expected)
    if origin is Union:
        return any(_matches_type(value, arg) for arg in get_args(expected))
    if expected is type(None):
        return value is None
    if expected is bool:
        return isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected is str:
        return isinstance(value, str)
    if origin is list:
        (item_type,) = get_args(expected) or (Any,)
        return isinstance(value, list) and all(
            item_type is Any or _matches_type(v, item_type) for v in value
        )
    return True


# -----------------------------------------------------------------------------
# Feature areas
# -----------------------------------------------------------------------------

@dataclass
class WelcomeSettings(_Document):
    enabled: bool = False
    message: str = DEFAULT_WELCOME_MESSAGE
    delay: int = 5


@dataclass
class TimerMessage(_Document):
    text: str = ""
    interval: int = 5
    last_sent: Optional[int] = None


@dataclass
class TimerSettings(_Document):
    _lists: ClassVar[dict[str, type]] = {"messages": TimerMessage}

    enabled: bool = False
    messages: list[TimerMessage] = field(default_factory=list)


@dataclass
class FaqRule(_Document):
    triggers: list[str] = field(default_factory=list)
    reply: str = ""
    case_sensitive: bool = False


@dataclass
class FaqSettings(_Document):
    _lists: ClassVar[dict[str, type]] = {"rules": FaqRule}

    enabled: bool = False
    rules: list[FaqRule] = field(default_factory=list)


@dataclass
class RepeatBlocking(_Document):
    enabled: bool = False
    max_count: int = 3


@dataclass
class ModerationSettings(_Document):
    _nested: ClassVar[dict[str, type]] = {"repeat_blocking": RepeatBlocking}

    enabled: bool = False
    blocked_words: list[str] = field(default_factory=list)
    repeat_blocking: RepeatBlocking = field(default_factory=RepeatBlocking)


@dataclass
class GiveawayEntry(_Document):
    username: str = ""
    timestamp: int = 0


@dataclass
class GiveawaySettings(_Document):
    _lists: ClassVar[dict[str, type]] = {"entries": GiveawayEntry}

    enabled: bool = False
    keywords: list[str] = field(default_factory=lambda: list(DEFAULT_GIVEAWAY_KEYWORDS))
    unique_only: bool = True
    entries: list[GiveawayEntry] = field(default_factory=list)


@dataclass
class Template(_Document):
    name: str = ""
    text: str = ""


@dataclass
class UiSettings(_Document):
    chat_selector: str = ""
    sound_notifications: bool = True
    show_message_count: bool = True
    dark_mode: bool = False
    watermark: bool = False


@dataclass
class Settings(_Document):
    """The whole per-profile configuration document."""

    _nested: ClassVar[dict[str, type]] = {
        "welcome": WelcomeSettings,
        "timer": TimerSettings,
        "faq": FaqSettings,
        "moderation": ModerationSettings,
        "giveaway": GiveawaySettings,
        "settings": UiSettings,
    }
    _lists: ClassVar[dict[str, type]] = {"templates": Template}

    tier: str = "free"
    messages_used: int = 0
    messages_limit: Optional[int] = TIER_LIMITS["free"].messages
    faq_rules_limit: Optional[int] = TIER_LIMITS["free"].faq_rules
    timers_limit: Optional[int] = TIER_LIMITS["free"].timers
    templates_limit: Optional[int] = TIER_LIMITS["free"].templates
    referral_bonus: int = 0
    master_enabled: bool = False
    welcome: WelcomeSettings = field(default_factory=WelcomeSettings)
    timer: TimerSettings = field(default_factory=TimerSettings)
    faq: FaqSettings = field(default_factory=FaqSettings)
    moderation: ModerationSettings = field(default_factory=ModerationSettings)
    giveaway: GiveawaySettings = field(default_factory=GiveawaySettings)
    templates: list[Template] = field(default_factory=list)
    settings: UiSettings = field(default_factory=UiSettings)


# Fields only the entitlement layer may write; façades strip them from updates
PROTECTED_FIELDS = frozenset({
    "tier", "messagesUsed", "messagesLimit",
    "faqRulesLimit", "timersLimit", "templatesLimit",
})


# -----------------------------------------------------------------------------
# Merge
# -----------------------------------------------------------------------------

def _strip_unset(value: Any) -> Any:
    """Deep copy of a replacement value with UNSET fields dropped."""
    if isinstance(value, Mapping):
        return {k: _strip_unset(v) for k, v in value.items() if v is not UNSET}
    if isinstance(value, list):
        return [_strip_unset(v) for v in value if v is not UNSET]
    return copy.deepcopy(value)


def deep_merge(target: Any, source: Any) -> Any:
    """
    Merge ``source`` into a copy of ``target``.

    Neither argument is modified. A non-object source leaves the target
    unchanged; a non-object target is replaced by the source.
    """
    if not isinstance(source, Mapping):
        return copy.deepcopy(target)
    if not isinstance(target, Mapping):
        return _strip_unset(source)

    result = copy.deepcopy(dict(target))
    for key, source_value in source.items():
        if source_value is UNSET:
            continue
        target_value = result.get(key)
        if isinstance(source_value, Mapping) and isinstance(target_value, Mapping):
            result[key] = deep_merge(target_value, source_value)
        else:
            result[key] = _strip_unset(source_value)
    return result


def merge_settings(settings: Settings, partial: Mapping[str, Any]) -> Settings:
    """Validate ``partial`` and merge it into ``settings``, returning new Settings."""
    Settings.validate_partial(partial)
    return Settings.from_dict(deep_merge(settings.to_dict(), partial))
