"""
Command-line interface for crm_sync.

Operator commands for the contact bridge: configuration, tenant connection
management, field mappings, diagnostics and maintenance.

Usage:
    # Show help
    crm-sync --help

    # Connect a tenant to the remote CRM
    crm-sync connect --tenant acme --origin https://bridge.example.com
    crm-sync finish --tenant acme --code CODE --state STATE

    # Configure field mappings
    crm-sync mappings save --tenant acme mappings.yaml

    # Inspect recent webhook activity
    crm-sync events --tenant acme --limit 20
"""

import json
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from crm_sync import __version__
from crm_sync.bridge import Bridge
from crm_sync.config.generator import save_config_file
from crm_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from crm_sync.config.settings import Settings
from crm_sync.context import TenantContext
from crm_sync.errors import SyncError
from crm_sync.storage.db import DEFAULT_EVENT_LIMIT, MAX_EVENT_LIMIT
from crm_sync.utils.paths import LOGS_SUBDIR, resolve_config_dir, resolve_under
from crm_sync.utils.logging import get_logger, setup_logging

tenant_option = click.option(
    "--tenant",
    "-t",
    "tenant_key",
    required=True,
    envvar="CRM_SYNC_TENANT",
    help="Tenant key of the installation.",
)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def get_bridge(ctx: click.Context) -> Bridge:
    """Build the bridge on first use and cache it on the context."""
    if ctx.obj.get("bridge") is None:
        ctx.obj["bridge"] = Bridge(ctx.obj["settings"])
    return ctx.obj["bridge"]


def fail(message: str, error: Exception | None = None) -> None:
    """Print an error in red and exit with status 1."""
    code = getattr(error, "code", None)
    prefix = f"Error [{code}]" if code else "Error"
    click.echo(click.style(f"{prefix}: {message}", fg="red"), err=True)
    sys.exit(1)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="crm-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CRM_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.crm-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CRM_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    Bidirectional contact bridge between a local CRM and a remote CRM.

    Keeps contacts in both systems in step, in real time, for every
    connected tenant.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = resolve_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # The CLI stays usable without a valid config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config
    effective_verbose = verbose or bool(config.get("verbose", False))
    ctx.obj["verbose"] = effective_verbose

    setup_logging(
        verbose=effective_verbose,
        log_dir=resolve_under(resolved_config_dir, config.get("log_dir"), LOGS_SUBDIR),
        enable_file_logging=True,
    )

    ctx.obj["settings"] = Settings.from_config(config, config_dir=resolved_config_dir)
    ctx.obj.setdefault("bridge", None)


# =============================================================================
# Setup Commands
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Examples:

        crm-sync init-config

        crm-sync init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")
    try:
        written = save_config_file(config_file, force=force)
    except OSError as e:
        fail(f"Could not write {config_file}: {e}")
        return

    if not written:
        fail(f"Configuration file already exists: {config_file}. Use --force to overwrite.")
        return

    click.echo(click.style("Configuration file created successfully!", fg="green"))
    click.echo("\nNext steps:")
    click.echo("1. Set local_api_base and any other options you need")
    click.echo("2. Export CRM_SYNC_CLIENT_ID, CRM_SYNC_CLIENT_SECRET and")
    click.echo("   CRM_SYNC_STATE_SIGNING_SECRET")
    click.echo("3. Run 'crm-sync init-db'")
    logger.info(f"Created configuration file: {config_file}")


@cli.command("init-db")
@click.pass_context
def init_db_command(ctx: click.Context) -> None:
    """Create the bridge database tables if they do not exist."""
    settings: Settings = ctx.obj["settings"]
    try:
        Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
        get_bridge(ctx).database
    except (OSError, SyncError) as e:
        fail(f"Could not initialize database: {e}", e)
        return
    click.echo(click.style(f"Database ready: {settings.database_path}", fg="green"))


# =============================================================================
# Connection Commands
# =============================================================================


@cli.command("status")
@tenant_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status_command(ctx: click.Context, tenant_key: str, as_json: bool) -> None:
    """
    Show the remote CRM connection status of a tenant.

    Example:

        crm-sync status --tenant acme
    """
    try:
        status = get_bridge(ctx).oauth_flow.status(TenantContext(tenant_key))
    except SyncError as e:
        fail(str(e), e)
        return

    if as_json:
        echo_json(status.to_dict())
        return

    click.echo(f"=== Connection Status: {tenant_key} ===\n")
    state = (
        click.style("Connected", fg="green")
        if status.connected
        else click.style("Not connected", fg="red")
    )
    click.echo(f"Remote CRM:     {state}")
    if status.remote_account_id:
        click.echo(f"Account:        {status.remote_account_id}")
    if status.scopes:
        click.echo(f"Scopes:         {', '.join(status.scopes)}")
    if status.token_expires_in_ms is not None:
        click.echo(f"Token expires:  in {status.token_expires_in_ms // 1000}s")
    if status.last_error_code:
        click.echo(click.style(f"Last error:     {status.last_error_code}", fg="yellow"))


@cli.command("connect")
@tenant_option
@click.option(
    "--origin",
    help="Public origin of the bridge, used to build the OAuth redirect URI.",
)
@click.pass_context
def connect_command(ctx: click.Context, tenant_key: str, origin: str | None) -> None:
    """
    Print the authorization URL that connects a tenant.

    Open the URL in a browser and grant access; the remote CRM then
    redirects to the callback with a code and state for 'crm-sync finish'.
    """
    try:
        url = get_bridge(ctx).oauth_flow.start(TenantContext(tenant_key), origin=origin)
    except SyncError as e:
        fail(str(e), e)
        return
    click.echo("Open this URL to connect the remote CRM:\n")
    click.echo(url)


@cli.command("finish")
@tenant_option
@click.option("--code", required=True, help="Authorization code from the callback.")
@click.option("--state", required=True, help="State parameter from the callback.")
@click.option("--origin", help="Origin used when the flow was started.")
@click.pass_context
def finish_command(
    ctx: click.Context, tenant_key: str, code: str, state: str, origin: str | None
) -> None:
    """Complete the OAuth flow with the callback's code and state."""
    logger = get_logger(__name__)
    try:
        status = get_bridge(ctx).oauth_flow.finish(
            TenantContext(tenant_key), code, state, origin=origin
        )
    except SyncError as e:
        logger.error(f"OAuth finish failed for {tenant_key}: {e}")
        fail(str(e), e)
        return
    click.echo(
        click.style(
            f"Connected {tenant_key} to remote account {status.remote_account_id}.",
            fg="green",
        )
    )


@cli.command("disconnect")
@tenant_option
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def disconnect_command(ctx: click.Context, tenant_key: str, yes: bool) -> None:
    """Clear the stored tokens of a tenant."""
    if not yes and not click.confirm(f"Disconnect {tenant_key} from the remote CRM?"):
        click.echo("Aborted.")
        return
    try:
        get_bridge(ctx).oauth_flow.disconnect(TenantContext(tenant_key))
    except SyncError as e:
        fail(str(e), e)
        return
    click.echo(click.style(f"Disconnected {tenant_key}.", fg="green"))


@cli.command("token")
@tenant_option
@click.pass_context
def token_command(ctx: click.Context, tenant_key: str) -> None:
    """Check that a valid access token can be obtained, refreshing if needed."""
    try:
        token = get_bridge(ctx).tokens.get_valid_access_token(TenantContext(tenant_key))
    except SyncError as e:
        fail(str(e), e)
        return
    preview = f"{token[:4]}...{token[-4:]}" if len(token) > 12 else "****"
    click.echo(click.style(f"Access token OK ({preview})", fg="green"))


# =============================================================================
# Mapping Commands
# =============================================================================


@cli.group("mappings")
def mappings_group() -> None:
    """Show or replace a tenant's field mappings."""


@mappings_group.command("show")
@tenant_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def mappings_show_command(ctx: click.Context, tenant_key: str, as_json: bool) -> None:
    """List the field mappings of a tenant."""
    try:
        mappings = get_bridge(ctx).mappings.list_mappings(TenantContext(tenant_key))
    except SyncError as e:
        fail(str(e), e)
        return

    if as_json:
        echo_json([m.to_row() for m in mappings])
        return
    if not mappings:
        click.echo("No mappings configured.")
        return
    click.echo(f"{'LOCAL FIELD':<14} {'REMOTE PROPERTY':<24} {'DIRECTION':<18} TRANSFORM")
    for m in mappings:
        click.echo(
            f"{m.local_field_key:<14} {m.remote_property:<24} "
            f"{m.direction.value:<18} {m.transform.value}"
        )


@mappings_group.command("save")
@tenant_option
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def mappings_save_command(ctx: click.Context, tenant_key: str, path: Path) -> None:
    """
    Replace a tenant's mappings with the list in a YAML or JSON file.

    Example file:

        - local_field_key: email
          remote_property: email
          direction: bidirectional
          transform: lowercase
    """
    try:
        rows = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        fail(f"Could not read {path}: {e}")
        return

    try:
        saved = get_bridge(ctx).mappings.save(TenantContext(tenant_key), rows)
    except SyncError as e:
        fail(str(e), e)
        return
    click.echo(click.style(f"Saved {len(saved)} mappings for {tenant_key}.", fg="green"))


@cli.command("properties")
@tenant_option
@click.pass_context
def properties_command(ctx: click.Context, tenant_key: str) -> None:
    """List the remote CRM's contact properties available for mapping."""
    try:
        properties = get_bridge(ctx).mappings.remote_properties(TenantContext(tenant_key))
    except SyncError as e:
        fail(str(e), e)
        return
    for prop in properties:
        flag = " (read-only)" if prop.get("read_only") else ""
        click.echo(f"{prop['name']:<32} {prop.get('label') or ''}{flag}")
    click.echo(f"\n{len(properties)} properties")


# =============================================================================
# Diagnostics and Maintenance
# =============================================================================


@cli.command("events")
@click.option("--tenant", "-t", "tenant_key", help="Filter by tenant key.")
@click.option("--account", "-a", help="Filter by remote account id.")
@click.option(
    "--limit",
    "-n",
    type=click.IntRange(1, MAX_EVENT_LIMIT, clamp=True),
    default=DEFAULT_EVENT_LIMIT,
    show_default=True,
    help="Number of events to show.",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def events_command(
    ctx: click.Context,
    tenant_key: str | None,
    account: str | None,
    limit: int,
    as_json: bool,
) -> None:
    """Show the most recent webhook and sync events."""
    try:
        events = get_bridge(ctx).database.list_events(
            tenant_key=tenant_key, remote_account_id=account, limit=limit
        )
    except SyncError as e:
        fail(str(e), e)
        return

    if as_json:
        echo_json(events)
        return
    if not events:
        click.echo("No events recorded.")
        return
    for event in events:
        status = event.get("status") or ""
        color = {"error": "red", "ignored": "yellow"}.get(status)
        line = (
            f"{event['received_at_ms']}  {event['event_type']:<32} "
            f"{status:<9} {event.get('object_id') or '-':<12} "
            f"{event.get('error_code') or ''}"
        )
        click.echo(click.style(line, fg=color) if color else line)


@cli.command("local-event")
@click.option(
    "--type",
    "event_type",
    type=click.Choice(["created", "updated"]),
    default="updated",
    show_default=True,
    help="Local event type.",
)
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def local_event_command(ctx: click.Context, event_type: str, path: Path) -> None:
    """
    Feed a local contact event (JSON file) through the outbound sync.

    The file holds {"tenant_key": ..., "event_id": ..., "contact": {...}}.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        fail(f"Could not read {path}: {e}")
        return

    try:
        handler = get_bridge(ctx).local_events
    except (ConfigError, SyncError) as e:
        fail(str(e), e)
        return

    if event_type == "created":
        result = handler.on_contact_created(data)
    else:
        result = handler.on_contact_updated(data)

    if result is None:
        fail("Event was not synced; see the log for details.")
        return
    click.echo(f"{result.outcome.value}: remote contact {result.remote_contact_id or '-'}")


@cli.command("ledger-gc")
@click.pass_context
def ledger_gc_command(ctx: click.Context) -> None:
    """Delete expired sync ledger entries."""
    try:
        removed = get_bridge(ctx).database.purge_expired_ledger()
    except SyncError as e:
        fail(str(e), e)
        return
    click.echo(f"Removed {removed} expired ledger entries.")
