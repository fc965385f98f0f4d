"""
MCP stdio server for chatkeep: the local command bridge.

Exposes the bot's settings, analytics and profiles as MCP tools so local
AI agents can configure the chat bot without the HTTP API.

Usage:
    chatkeep mcp                              # stdio server (via CLI)
    claude --mcp-server chatkeep="chatkeep mcp"

All ChatKeeper calls are serialized through a single asyncio.Lock.
Cross-process safety is whatever the key-value store gives (row-level only).
"""

import asyncio
import json
from typing import Annotated, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from . import features
from .api import ChatKeeper
from .config import ENV_API_KEY, get_env_api_key
from .errors import ChatKeepError, UnauthorizedError
from .facade import GET_SETTINGS, GET_STATUS, UPDATE_SETTINGS, Facade

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "chatkeep",
    instructions=(
        "Configure a live-stream chat bot. "
        "Toggle the bot, edit welcome, FAQ, timer, moderation and giveaway settings, "
        "manage reply templates, read analytics and switch profiles."
    ),
)

_keeper: Optional[ChatKeeper] = None
_lock = asyncio.Lock()


def _get_keeper() -> ChatKeeper:
    """Lazy-init ChatKeeper (respects CHATKEEP_STATE_DIR).

    Must be called inside ``async with _lock``.
    """
    global _keeper
    if _keeper is None:
        _keeper = ChatKeeper()
        _keeper.initialize()
    _check_caller(_keeper)
    return _keeper


def _check_caller(keeper: ChatKeeper) -> None:
    """Business installs only answer callers presenting an issued API key."""
    license = keeper.license.get_cached()
    if license is None or license.tier != "business":
        return
    api_key = get_env_api_key()
    if api_key is None:
        raise UnauthorizedError(f"No API key provided (set {ENV_API_KEY})")
    result = keeper.api_keys.validate_key(api_key, context="mcp")
    if not result.valid:
        raise UnauthorizedError(result.reason or "Invalid API key")


def _facade() -> Facade:
    return Facade(_get_keeper())


class _ToolError(Exception):
    """A façade operation came back with a structured error."""


def _call(operation: str, payload=None):
    """Run a façade operation and return its data."""
    response = _facade().handle(operation, payload)
    if not response.ok:
        raise _ToolError(f"Error: {response.error.message}")
    return response.data


def _update(partial: dict) -> dict:
    return _call(UPDATE_SETTINGS, partial)


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_IDEMPOTENT = ToolAnnotations(idempotentHint=True, destructiveHint=False)
_DESTRUCTIVE = ToolAnnotations(destructiveHint=True, idempotentHint=False)


# ---------------------------------------------------------------------------
# Bot status
# ---------------------------------------------------------------------------


@mcp.tool(
    description="Get the bot's status: enabled state, tier, usage and which features are on.",
    annotations=_READ_ONLY,
)
async def get_status() -> str:
    """Bot status."""
    async with _lock:
        try:
            status = _call(GET_STATUS)
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)

    limit = status["messagesLimit"]
    features_on = [name for name, on in status["features"].items() if on]
    lines = [
        f"Bot: {'enabled' if status['botEnabled'] else 'disabled'}",
        f"Tier: {status['tier']}",
        f"Profile: {status['activeProfile']}",
        f"Messages: {status['messagesUsed']}/{'unlimited' if limit is None else limit}",
        f"Features on: {', '.join(features_on) if features_on else 'none'}",
    ]
    return "\n".join(lines)


@mcp.tool(description="Turn the chat bot on.", annotations=_IDEMPOTENT)
async def enable_bot() -> str:
    """Enable the bot."""
    async with _lock:
        try:
            _update(features.set_master_enabled(True))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return "Bot enabled."


@mcp.tool(description="Turn the chat bot off.", annotations=_IDEMPOTENT)
async def disable_bot() -> str:
    """Disable the bot."""
    async with _lock:
        try:
            _update(features.set_master_enabled(False))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return "Bot disabled."


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@mcp.tool(description="Get the active profile's full settings as JSON.", annotations=_READ_ONLY)
async def get_all_settings() -> str:
    """All settings."""
    async with _lock:
        try:
            settings = _call(GET_SETTINGS)
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return json.dumps(settings, indent=2)


@mcp.tool(
    description=(
        "Merge a partial settings object into the active profile. "
        "Nested objects are merged, arrays and values replaced. "
        "Tier, usage and limit fields are ignored."
    ),
    annotations=_IDEMPOTENT,
)
async def update_settings(
    settings: Annotated[dict, Field(
        description='Partial settings. Example: {"welcome": {"enabled": true}}',
    )],
) -> str:
    """Merge settings."""
    async with _lock:
        try:
            _update(settings)
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return "Settings updated."


@mcp.tool(
    description="Set the welcome message sent to new viewers. {username} is replaced with their name.",
    annotations=_IDEMPOTENT,
)
async def set_welcome_message(
    message: Annotated[str, Field(description="Welcome message text.")],
    enabled: Annotated[bool, Field(description="Enable welcome messages.")] = True,
    delay: Annotated[Optional[int], Field(description="Seconds to wait before greeting.")] = None,
) -> str:
    """Set the welcome message."""
    async with _lock:
        try:
            _update(features.set_welcome_message(message, enabled, delay))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return f'Welcome message set ({"enabled" if enabled else "disabled"}): "{message.strip()}"'


# ---------------------------------------------------------------------------
# FAQ
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Add an FAQ auto-reply rule. When any trigger appears in chat, the bot sends the reply."
    ),
    annotations=_DESTRUCTIVE,
)
async def add_faq_rule(
    triggers: Annotated[list[str], Field(description="Trigger words or phrases, e.g. ['shipping', 'deliver'].")],
    reply: Annotated[str, Field(description="Reply to send when a trigger is seen.")],
    case_sensitive: Annotated[bool, Field(description="Match triggers case-sensitively.")] = False,
) -> str:
    """Add an FAQ rule."""
    async with _lock:
        try:
            keeper = _get_keeper()
            partial = features.add_faq_rule(keeper.get_settings(), triggers, reply, case_sensitive)
            settings = _update(partial)
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    total = len(settings["faq"]["rules"])
    return f"FAQ rule added. Triggers: {', '.join(triggers)}\nTotal rules: {total}"


@mcp.tool(description="List FAQ auto-reply rules with their indices.", annotations=_READ_ONLY)
async def list_faq_rules() -> str:
    """List FAQ rules."""
    async with _lock:
        try:
            settings = _get_keeper().get_settings()
        except ChatKeepError as e:
            return _error_text(e)
    rules = settings.faq.rules
    if not rules:
        return "No FAQ rules configured. Use add_faq_rule to create one."
    lines = [f"FAQ rules ({len(rules)} total, {'enabled' if settings.faq.enabled else 'disabled'}):"]
    for i, rule in enumerate(rules):
        lines.append(f'[{i}] {", ".join(rule.triggers)} -> "{rule.reply}"')
    return "\n".join(lines)


@mcp.tool(
    description="Remove an FAQ rule by its 0-based index (see list_faq_rules).",
    annotations=_DESTRUCTIVE,
)
async def remove_faq_rule(
    index: Annotated[int, Field(description="Index of the rule to remove.")],
) -> str:
    """Remove an FAQ rule."""
    async with _lock:
        try:
            keeper = _get_keeper()
            settings = _update(features.remove_faq_rule(keeper.get_settings(), index))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return f"Removed FAQ rule {index}. Remaining rules: {len(settings['faq']['rules'])}"


# ---------------------------------------------------------------------------
# Timers and templates
# ---------------------------------------------------------------------------


@mcp.tool(description="Add a message the bot posts every N minutes.", annotations=_DESTRUCTIVE)
async def add_timer_message(
    text: Annotated[str, Field(description="Message text.")],
    interval: Annotated[int, Field(description="Minutes between posts.")] = 5,
) -> str:
    """Add a timer message."""
    async with _lock:
        try:
            keeper = _get_keeper()
            settings = _update(features.add_timer_message(keeper.get_settings(), text, interval))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return f"Timer message added (every {interval} min). Total timers: {len(settings['timer']['messages'])}"


@mcp.tool(description="Save a reusable reply template.", annotations=_DESTRUCTIVE)
async def add_template(
    name: Annotated[str, Field(description="Template name.")],
    text: Annotated[str, Field(description="Template text.")],
) -> str:
    """Add a template."""
    async with _lock:
        try:
            keeper = _get_keeper()
            settings = _update(features.add_template(keeper.get_settings(), name, text))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return f'Template "{name.strip()}" saved. Total templates: {len(settings["templates"])}'


@mcp.tool(description="List saved reply templates.", annotations=_READ_ONLY)
async def list_templates() -> str:
    """List templates."""
    async with _lock:
        try:
            templates = _get_keeper().get_settings().templates
        except ChatKeepError as e:
            return _error_text(e)
    if not templates:
        return "No templates saved. Use add_template to create one."
    return "\n".join(f'{t.name}: "{t.text}"' for t in templates)


# ---------------------------------------------------------------------------
# Moderation and giveaways
# ---------------------------------------------------------------------------


@mcp.tool(
    description="Replace the blocked-word list. Messages containing these words are flagged.",
    annotations=_IDEMPOTENT,
)
async def set_blocked_words(
    words: Annotated[list[str], Field(description="Words to block. An empty list clears it.")],
) -> str:
    """Set blocked words."""
    async with _lock:
        try:
            settings = _update(features.set_blocked_words(words))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    blocked = settings["moderation"]["blockedWords"]
    return f"Blocked words set ({len(blocked)}): {', '.join(blocked) if blocked else 'none'}"


@mcp.tool(
    description="Configure giveaway entry keywords. Viewers typing a keyword are entered.",
    annotations=_IDEMPOTENT,
)
async def configure_giveaway(
    keywords: Annotated[list[str], Field(description="Entry keywords, e.g. ['enter', 'entry'].")],
    unique_only: Annotated[bool, Field(description="Count each viewer once.")] = True,
) -> str:
    """Configure the giveaway."""
    async with _lock:
        try:
            _update(features.configure_giveaway(keywords, unique_only))
        except (_ToolError, ChatKeepError) as e:
            return _error_text(e)
    return f"Giveaway configured. Keywords: {', '.join(keywords)}\nUnique entries only: {unique_only}"


@mcp.tool(description="Pick random giveaway winners from the current entries.", annotations=_READ_ONLY)
async def pick_giveaway_winner(
    count: Annotated[int, Field(description="Number of winners.")] = 1,
) -> str:
    """Pick giveaway winners."""
    async with _lock:
        try:
            entries = _get_keeper().get_settings().giveaway.entries
            if not entries:
                return "No entries to pick from! The giveaway has no participants yet."
            winners = features.pick_winners(entries, count)
        except ChatKeepError as e:
            return _error_text(e)
    names = "\n".join(f"{i}. {w.username}" for i, w in enumerate(winners, 1))
    return f"Winner{'s' if count > 1 else ''}:\n{names}\n\nPicked from {len(entries)} entries."


# ---------------------------------------------------------------------------
# Analytics and profiles
# ---------------------------------------------------------------------------


@mcp.tool(description="Get chat analytics: totals, last 7 days, peak hour and top FAQ triggers.", annotations=_READ_ONLY)
async def get_analytics() -> str:
    """Analytics summary."""
    async with _lock:
        try:
            summary = _get_keeper().analytics.summary()
        except ChatKeepError as e:
            return _error_text(e)
    return json.dumps(summary, indent=2)


@mcp.tool(description="Reset all analytics counters to zero.", annotations=_DESTRUCTIVE)
async def reset_analytics() -> str:
    """Reset analytics."""
    async with _lock:
        try:
            _get_keeper().analytics.reset()
        except ChatKeepError as e:
            return _error_text(e)
    return "Analytics reset."


@mcp.tool(description="List settings profiles.", annotations=_READ_ONLY)
async def list_profiles() -> str:
    """List profiles."""
    async with _lock:
        try:
            keeper = _get_keeper()
        except ChatKeepError as e:
            return _error_text(e)
        summaries = keeper.profiles.list_profiles(keeper.active)
    if not summaries:
        return "No profiles yet."
    return "\n".join(
        f"{'*' if s.is_active else ' '} {s.id}  {s.name}" for s in summaries
    )


@mcp.tool(description="Make another profile active.", annotations=_IDEMPOTENT)
async def switch_profile(
    profile_id: Annotated[str, Field(description="Profile ID (see list_profiles).")],
) -> str:
    """Switch the active profile."""
    async with _lock:
        try:
            active = _get_keeper().switch_profile(profile_id)
        except ChatKeepError as e:
            return _error_text(e)
    return f"Active profile: {active.profile_id}"


def _error_text(e: Exception) -> str:
    text = str(e)
    return text if text.startswith("Error: ") else f"Error: {text}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP stdio server."""
    import os
    import signal
    # anyio's stdin reader shields the blocking readline from cancellation,
    # so the first Ctrl+C can't take effect; exit directly instead.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
