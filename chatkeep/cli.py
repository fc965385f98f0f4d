"""
CLI for chatkeep.

Usage:
    chatkeep init
    chatkeep settings get
    chatkeep settings set '{"welcome": {"enabled": true}}'
    chatkeep license show
    chatkeep apikey create "Stream deck"
    chatkeep serve
"""

import json
import os
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .api import ChatKeeper
from .config import ENV_STATE_DIR
from .credits import format_credits
from .errors import ChatKeepError
from .license import format_trial_remaining, management_url, payment_url
from .logging_config import configure_quiet_mode, enable_debug_mode

# Quiet by default; CHATKEEP_VERBOSE=1 turns on debug logging
if os.environ.get("CHATKEEP_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"chatkeep {version('chatkeep')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False


def _json_callback(value: bool):
    global _json_output
    _json_output = value


app = typer.Typer(
    name="chatkeep",
    help="Local state and entitlements for the chat bot.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

profiles_app = typer.Typer(name="profiles", help="Manage settings profiles.", no_args_is_help=True)
settings_app = typer.Typer(name="settings", help="Read and update the active profile's settings.", no_args_is_help=True)
license_app = typer.Typer(name="license", help="Tier, trial and billing status.", no_args_is_help=True)
apikey_app = typer.Typer(name="apikey", help="API keys for the HTTP control API.", no_args_is_help=True)
provider_app = typer.Typer(name="provider-key", help="Anthropic key for AI replies.", no_args_is_help=True)
app.add_typer(profiles_app)
app.add_typer(settings_app)
app.add_typer(license_app)
app.add_typer(apikey_app)
app.add_typer(provider_app)


StateOption = Annotated[
    Optional[Path],
    typer.Option(
        "--state", "-s",
        envvar=ENV_STATE_DIR,
        help="Path to the state directory (default: ~/.chatkeep/)",
    ),
]


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Local state and entitlements for the chat bot."""


def _get_keeper(state: Optional[Path]) -> ChatKeeper:
    """Open the state directory, migrating on first use."""
    import atexit

    try:
        ck = ChatKeeper(state)
        ck.initialize()
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(ck.close)
    return ck


def _echo(data: Any, text: Optional[str] = None) -> None:
    if _json_output or text is None:
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(text)


def _fail(e: ChatKeepError) -> None:
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


# -----------------------------------------------------------------------------
# init / status
# -----------------------------------------------------------------------------

@app.command()
def init(state: StateOption = None):
    """Create the state directory, migrate legacy settings and the vault key."""
    ck = ChatKeeper(state)
    try:
        migrated = ck.initialize()
        license = ck.refresh_license()
    finally:
        ck.close()
    typer.echo(f"State directory: {ck.state_dir}")
    typer.echo("Migrated settings into default profile" if migrated else "Profiles already present")
    typer.echo(f"Tier: {license.tier}")


@app.command()
def status(state: StateOption = None):
    """Show bot status, tier and credits."""
    from .facade import GET_STATUS, Facade

    ck = _get_keeper(state)
    response = Facade(ck).handle(GET_STATUS)
    if not response.ok:
        typer.echo(f"Error: {response.error.message}", err=True)
        raise typer.Exit(1)
    data = response.data
    credits = ck.credits.get_status()
    data["credits"] = credits.to_dict()
    limit = data["messagesLimit"]
    _echo(data, "\n".join([
        f"Bot: {'enabled' if data['botEnabled'] else 'disabled'}",
        f"Tier: {data['tier']}",
        f"Profile: {data['activeProfile']}",
        f"Messages: {data['messagesUsed']}/{'unlimited' if limit is None else limit}",
        f"AI credits: {format_credits(credits.remaining)}",
    ]))


@app.command()
def credits(state: StateOption = None):
    """Show this month's AI credits."""
    ck = _get_keeper(state)
    status = ck.credits.get_status()
    warning = ck.credits.check_warning()
    lines = [
        f"Remaining: {format_credits(status.remaining)} ({ck.credits.usage_percentage()}%)",
        f"Resets: {ck.credits.format_reset_date()}",
    ]
    if warning.warning:
        lines.append(f"Warning: {warning.message}")
    _echo({**status.to_dict(), "warning": warning.to_dict()}, "\n".join(lines))


# -----------------------------------------------------------------------------
# profiles
# -----------------------------------------------------------------------------

@profiles_app.command("list")
def profiles_list(state: StateOption = None):
    """List profiles (active one marked with *)."""
    ck = _get_keeper(state)
    summaries = ck.profiles.list_profiles(ck.active)
    _echo(
        [s.to_dict() for s in summaries],
        "\n".join(f"{'*' if s.is_active else ' '} {s.id}  {s.name}" for s in summaries),
    )


@profiles_app.command("create")
def profiles_create(
    name: Annotated[str, typer.Argument(help="Profile name")],
    state: StateOption = None,
):
    """Create a profile with default settings."""
    ck = _get_keeper(state)
    try:
        profile = ck.profiles.create_profile(name)
    except ChatKeepError as e:
        _fail(e)
    typer.echo(f"Created {profile.id} ({profile.name})")


@profiles_app.command("duplicate")
def profiles_duplicate(
    profile_id: Annotated[str, typer.Argument(help="Profile to copy")],
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="Name for the copy")] = None,
    state: StateOption = None,
):
    """Copy a profile's settings into a new profile."""
    ck = _get_keeper(state)
    try:
        profile = ck.profiles.duplicate_profile(profile_id, name)
    except ChatKeepError as e:
        _fail(e)
    typer.echo(f"Created {profile.id} ({profile.name})")


@profiles_app.command("rename")
def profiles_rename(
    profile_id: Annotated[str, typer.Argument(help="Profile to rename")],
    name: Annotated[str, typer.Argument(help="New name")],
    state: StateOption = None,
):
    """Rename a profile."""
    ck = _get_keeper(state)
    try:
        profile = ck.profiles.rename_profile(profile_id, name)
    except ChatKeepError as e:
        _fail(e)
    typer.echo(f"Renamed {profile.id} to {profile.name}")


@profiles_app.command("delete")
def profiles_delete(
    profile_id: Annotated[str, typer.Argument(help="Profile to delete")],
    state: StateOption = None,
):
    """Delete a profile (the default profile can't be deleted)."""
    ck = _get_keeper(state)
    try:
        ck.profiles.delete_profile(profile_id)
    except ChatKeepError as e:
        _fail(e)
    typer.echo(f"Deleted {profile_id}")


@profiles_app.command("switch")
def profiles_switch(
    profile_id: Annotated[str, typer.Argument(help="Profile to activate")],
    state: StateOption = None,
):
    """Make a profile active."""
    ck = _get_keeper(state)
    try:
        active = ck.switch_profile(profile_id)
    except ChatKeepError as e:
        _fail(e)
    typer.echo(f"Active profile: {active.profile_id}")


# -----------------------------------------------------------------------------
# settings
# -----------------------------------------------------------------------------

@settings_app.command("get")
def settings_get(
    section: Annotated[Optional[str], typer.Argument(help="Only this top-level section")] = None,
    state: StateOption = None,
):
    """Print the active profile's settings as JSON."""
    ck = _get_keeper(state)
    data = ck.get_settings().to_dict()
    if section is not None:
        if section not in data:
            typer.echo(f"Error: Unknown section: {section}", err=True)
            raise typer.Exit(1)
        data = data[section]
    typer.echo(json.dumps(data, indent=2))


@settings_app.command("set")
def settings_set(
    partial: Annotated[str, typer.Argument(help="JSON object to merge into settings")],
    state: StateOption = None,
):
    """Merge a JSON object into the active profile's settings."""
    from .facade import UPDATE_SETTINGS, Facade

    try:
        payload = json.loads(partial)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: invalid JSON: {e}", err=True)
        raise typer.Exit(1)
    ck = _get_keeper(state)
    response = Facade(ck).handle(UPDATE_SETTINGS, payload)
    if not response.ok:
        typer.echo(f"Error: {response.error.message}", err=True)
        raise typer.Exit(1)
    typer.echo("Settings updated")


# -----------------------------------------------------------------------------
# license
# -----------------------------------------------------------------------------

def _show_license(ck: ChatKeeper, license) -> None:
    lines = [f"Tier: {license.tier}", f"Paid: {'yes' if license.paid else 'no'}"]
    if license.trial_active:
        lines.append(f"Trial: {format_trial_remaining(license.trial_ends_at)}")
    if license.email:
        lines.append(f"Email: {license.email}")
    lines.append(f"Status: {ck.license.state}")
    if str(ck.license.state) == "degraded":
        lines.append("Can't verify, using last known status")
    _echo(license.to_dict(), "\n".join(lines))


@license_app.command("show")
def license_show(state: StateOption = None):
    """Show the cached license (verifying if it is stale)."""
    ck = _get_keeper(state)
    _show_license(ck, ck.refresh_license())


@license_app.command("verify")
def license_verify(state: StateOption = None):
    """Ask the billing service now, ignoring the cache."""
    ck = _get_keeper(state)
    _show_license(ck, ck.refresh_license(force=True))


@license_app.command("trial")
def license_trial(state: StateOption = None):
    """Start the 7-day Pro trial."""
    ck = _get_keeper(state)
    try:
        license = ck.license.start_trial()
    except ChatKeepError as e:
        _fail(e)
    ck.license.sync_tier_with_settings(ck.profiles, ck.active, license)
    typer.echo(f"Trial started: {format_trial_remaining(license.trial_ends_at)}")


@license_app.command("upgrade-url")
def license_upgrade_url(
    plan: Annotated[str, typer.Option("--plan", help="pro or business")] = "pro",
    annual: Annotated[bool, typer.Option("--annual", help="Annual billing")] = False,
    manage: Annotated[bool, typer.Option("--manage", help="Subscription management page")] = False,
    state: StateOption = None,
):
    """Print the payment or management URL."""
    ck = _get_keeper(state)
    extension_id = ck.config.billing.extension_id
    typer.echo(management_url(extension_id) if manage else payment_url(extension_id, plan, annual))


# -----------------------------------------------------------------------------
# apikey
# -----------------------------------------------------------------------------

@apikey_app.command("create")
def apikey_create(
    name: Annotated[str, typer.Argument(help="Label for the key")],
    state: StateOption = None,
):
    """Issue an API key. The key is shown once."""
    ck = _get_keeper(state)
    try:
        created = ck.api_keys.create_key(name)
    except ChatKeepError as e:
        _fail(e)
    _echo(
        {**created.record.to_public_dict(), "key": created.key},
        f"{created.record.id} ({created.record.name})\n{created.key}\n"
        "Store this key now; it won't be shown again.",
    )


@apikey_app.command("list")
def apikey_list(state: StateOption = None):
    """List API keys (previews only)."""
    ck = _get_keeper(state)
    records = ck.api_keys.list_keys()
    _echo(
        [r.to_public_dict() for r in records],
        "\n".join(f"{r.id}  {r.key_preview}  {r.name}" for r in records) or "No API keys",
    )


@apikey_app.command("revoke")
def apikey_revoke(
    key_id: Annotated[str, typer.Argument(help="Key ID (key_...)")],
    state: StateOption = None,
):
    """Revoke an API key."""
    ck = _get_keeper(state)
    try:
        ck.api_keys.revoke_key(key_id)
    except ChatKeepError as e:
        _fail(e)
    typer.echo(f"Revoked {key_id}")


# -----------------------------------------------------------------------------
# provider-key
# -----------------------------------------------------------------------------

@provider_app.command("set")
def provider_key_set(
    key: Annotated[str, typer.Argument(help="Anthropic API key (sk-ant-...)")],
    state: StateOption = None,
):
    """Store the Anthropic key, encrypted."""
    ck = _get_keeper(state)
    try:
        ck.provider_keys.store_key(key)
    except ChatKeepError as e:
        _fail(e)
    typer.echo(f"Stored {ck.provider_keys.masked_key()}")


@provider_app.command("show")
def provider_key_show(state: StateOption = None):
    """Show the stored key, masked."""
    ck = _get_keeper(state)
    typer.echo(ck.provider_keys.masked_key() or "No key stored")


@provider_app.command("clear")
def provider_key_clear(state: StateOption = None):
    """Remove the stored key."""
    ck = _get_keeper(state)
    typer.echo("Key removed" if ck.provider_keys.clear_key() else "No key stored")


# -----------------------------------------------------------------------------
# generate / servers
# -----------------------------------------------------------------------------

@app.command()
def reply(
    message: Annotated[str, typer.Argument(help="Viewer message to answer")],
    tone: Annotated[str, typer.Option("--tone", "-t", help="friendly, professional, hype or chill")] = "friendly",
    state: StateOption = None,
):
    """Generate an AI reply (uses one credit)."""
    ck = _get_keeper(state)
    try:
        result = ck.generator.generate(message, tone)
    except ChatKeepError as e:
        _fail(e)
    _echo(result.to_dict(), result.text)
    if result.warning and not _json_output:
        typer.echo(result.warning.message, err=True)


@app.command()
def mcp():
    """Run the MCP stdio server (command bridge)."""
    from .mcp import main as mcp_main
    mcp_main()


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option("--host", help="Bind host")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Bind port")] = None,
    state: StateOption = None,
):
    """Run the HTTP control API."""
    from .http_api import serve as serve_http

    ck = _get_keeper(state)
    ck.refresh_license()
    serve_http(ck, host=host, port=port)


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="chatkeep CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
