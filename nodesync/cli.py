"""nodesync CLI -- operate a leader or follower from the shell."""

import functools
import threading

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from nodesync import __version__
from nodesync.config import Settings, configure, get_settings
from nodesync.errors import NodeSyncError
from nodesync.logging_setup import setup_logging

console = Console()

STATUS_STYLES = {"online": "green", "offline": "dim", "syncing": "cyan", "error": "red"}


def _database():
    from nodesync.db import get_database

    return get_database()


def handle_errors(func):
    """Print nodesync errors in red and exit 1 instead of dumping a traceback."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except NodeSyncError as e:
            console.print(f"[red]Error:[/] {e}")
            raise SystemExit(1)

    return wrapper


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@click.group()
@click.version_option(version=__version__)
@click.option("--database-url", envvar="NODESYNC_DATABASE_URL", default=None, help="SQLAlchemy database URL")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, ...)")
@handle_errors
def main(database_url: str | None, log_level: str | None):
    """nodesync -- leader/follower configuration sync.

    A leader registers follower nodes and serves its configuration; a
    follower pulls that configuration on an interval and applies it.
    """
    settings = Settings.from_env()
    if database_url:
        settings.database_url = database_url
    if log_level:
        settings.log_level = log_level
    configure(settings)
    setup_logging(settings.log_level, settings.log_file)


# ── Database ─────────────────────────────────────────────────────────


@main.group()
def db():
    """Database maintenance."""


@db.command(name="init")
def db_init():
    """Create all tables."""
    database = _database()
    database.create_all()
    console.print(f"[green]Database ready:[/] {database.engine.url.render_as_string(hide_password=True)}")


# ── Nodes ────────────────────────────────────────────────────────────


def _registry():
    from nodesync.cluster.registry import NodeRegistry
    from nodesync.system.role import RoleStateMachine

    database = _database()
    return NodeRegistry(database, is_leader=RoleStateMachine(database).is_leader)


@main.group()
def nodes():
    """Manage registered follower nodes (leader only)."""


@nodes.command(name="register")
@click.argument("name")
@click.argument("host")
@click.option("--port", "-p", default=3001, type=int, help="Follower port")
@click.option("--interval", "-i", default=60, type=int, help="Expected sync interval in seconds")
@handle_errors
def nodes_register(name: str, host: str, port: int, interval: int):
    """Register a follower and print its API key (shown only once)."""
    node = _registry().register(name, host, port, interval)
    console.print(
        Panel(
            f"ID:      {node.id}\n"
            f"Name:    {node.name}\n"
            f"Address: {node.host}:{node.port}\n"
            f"API key: [bold yellow]{node.api_key}[/]",
            title="Node registered",
        )
    )
    console.print("[yellow]Save this API key now, it cannot be shown again.[/]")


@nodes.command(name="list")
@handle_errors
def nodes_list():
    """List registered nodes."""
    all_nodes = _registry().list_all()

    if not all_nodes:
        console.print("[yellow]No nodes registered.[/]")
        return

    table = Table(title=f"Slave Nodes ({len(all_nodes)})")
    table.add_column("Name", style="cyan")
    table.add_column("Address")
    table.add_column("Status")
    table.add_column("Sync", justify="center")
    table.add_column("Interval", justify="right")
    table.add_column("Last seen")
    table.add_column("Config hash", style="dim")
    table.add_column("ID", style="dim")

    for node in all_nodes:
        style = STATUS_STYLES.get(node.status.value, "")
        table.add_row(
            node.name,
            f"{node.host}:{node.port}",
            f"[{style}]{node.status.value}[/]" if style else node.status.value,
            "on" if node.sync_enabled else "[red]off[/]",
            f"{node.sync_interval}s",
            _fmt_time(node.last_seen),
            (node.config_hash or "-")[:12],
            node.id,
        )

    console.print(table)


@nodes.command(name="show")
@click.argument("node_id")
@handle_errors
def nodes_show(node_id: str):
    """Show one node."""
    node = _registry().get(node_id)
    console.print(
        Panel(
            f"Name:        {node.name}\n"
            f"Address:     {node.host}:{node.port}\n"
            f"Status:      {node.status.value}\n"
            f"Sync:        {'enabled' if node.sync_enabled else 'disabled'} every {node.sync_interval}s\n"
            f"Last seen:   {_fmt_time(node.last_seen)}\n"
            f"Config hash: {node.config_hash or '-'}\n"
            f"API key:     {node.key_prefix}...",
            title=node.id,
        )
    )


@nodes.command(name="update")
@click.argument("node_id")
@click.option("--name", default=None)
@click.option("--host", default=None)
@click.option("--port", default=None, type=int)
@click.option("--interval", default=None, type=int)
@click.option("--sync/--no-sync", "sync_enabled", default=None, help="Enable or disable sync for the node")
@handle_errors
def nodes_update(node_id: str, name, host, port, interval, sync_enabled):
    """Update a node's settings."""
    node = _registry().update(
        node_id, name=name, host=host, port=port, sync_interval=interval, sync_enabled=sync_enabled
    )
    console.print(f"[green]Updated[/] {node.name}")


@nodes.command(name="delete")
@click.argument("node_id")
@click.confirmation_option(prompt="Delete this node? Its API key stops working immediately.")
@handle_errors
def nodes_delete(node_id: str):
    """Delete a node."""
    _registry().delete(node_id)
    console.print(f"[green]Deleted[/] {node_id}")


@nodes.command(name="check-stale")
@handle_errors
def nodes_check_stale():
    """Mark nodes that stopped syncing as offline."""
    from nodesync.cluster.status_checker import StatusChecker

    settings = get_settings()
    names = StatusChecker(_database(), settings.stale_factor, settings.stale_min_seconds).mark_stale()
    if names:
        for name in names:
            console.print(f"  [yellow]![/] {name} -> offline")
    else:
        console.print("[green]No stale nodes.[/]")


# ── Role ─────────────────────────────────────────────────────────────


def _roles():
    from nodesync.system.role import RoleStateMachine

    return RoleStateMachine(_database())


def _print_role(config) -> None:
    lines = [f"Role:      [bold]{config.role.value}[/]"]
    if not config.is_leader:
        leader = f"{config.leader_host}:{config.leader_port}" if config.leader_host else "-"
        lines += [
            f"Leader:    {leader}",
            f"API key:   {config.leader_key_prefix or '-'}",
            f"Interval:  {config.sync_interval}s",
            f"Connected: {'[green]yes[/]' if config.connected else '[red]no[/]'}",
            f"Last sync: {_fmt_time(config.last_connected_at)} ({(config.last_sync_hash or '-')[:12]})",
        ]
        if config.connection_error:
            lines.append(f"Error:     [red]{config.connection_error}[/]")
    console.print(Panel("\n".join(lines), title=f"System config (v{config.version})"))


@main.group()
def role():
    """Show or change this deployment's role."""


@role.command(name="show")
@handle_errors
def role_show():
    """Show the current role and leader connection."""
    _print_role(_roles().get())


@role.command(name="set")
@click.argument("mode", type=click.Choice(["leader", "follower", "master", "slave"]))
@handle_errors
def role_set(mode: str):
    """Switch to leader or follower."""
    _print_role(_roles().set_role(mode))


# ── Leader connection ────────────────────────────────────────────────


@main.group()
def leader():
    """Manage the follower's connection to its leader."""


@leader.command(name="connect")
@click.argument("host")
@click.option("--port", "-p", default=3001, type=int)
@click.option("--api-key", "-k", required=True, envvar="NODESYNC_LEADER_API_KEY", help="Key issued by the leader")
@click.option("--interval", "-i", default=60, type=int, help="Sync interval in seconds (min 10)")
@handle_errors
def leader_connect(host: str, port: int, api_key: str, interval: int):
    """Connect this follower to a leader and verify the key."""
    config = _roles().connect_to_leader(host, port, api_key, interval)
    console.print(f"[green]Connected to[/] {host}:{port}")
    _print_role(config)


@leader.command(name="disconnect")
@handle_errors
def leader_disconnect():
    """Stop syncing from the leader."""
    _roles().disconnect_from_leader()
    console.print("[green]Disconnected.[/]")


@leader.command(name="test")
@handle_errors
def leader_test():
    """Probe the configured leader without changing anything."""
    result = _roles().test_connection()
    if result.success:
        console.print(f"  [green]v[/] {result.message} ({result.latency_ms}ms, node {result.node_name})")
    else:
        console.print(f"  [red]x[/] {result.message}")
        raise SystemExit(1)


# ── Sync ─────────────────────────────────────────────────────────────


@main.group()
def sync():
    """Pull configuration from the leader."""


@sync.command(name="once")
@handle_errors
def sync_once():
    """Run one pull right now."""
    from nodesync.sync.puller import SyncPuller

    outcome = SyncPuller(_database()).sync_once()
    if not outcome.imported:
        console.print(f"[green]Already in sync[/] ({outcome.leader_hash[:12]})")
        return

    console.print(f"[green]Imported[/] {outcome.changes_applied} change(s) ({outcome.leader_hash[:12]})")
    table = Table(title="Changes by category")
    table.add_column("Category", style="cyan")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Unchanged", justify="right", style="dim")
    table.add_column("Skipped", justify="right")
    for name, counts in (outcome.details or {}).items():
        table.add_row(
            name,
            str(counts["created"]),
            str(counts["updated"]),
            str(counts["unchanged"]),
            str(counts["skipped"]),
        )
    console.print(table)


@sync.command(name="run")
@handle_errors
def sync_run():
    """Pull on the configured interval until interrupted."""
    from nodesync.sync.puller import SyncPuller

    stop = threading.Event()
    console.print("[bold blue]nodesync[/] -- sync loop started (Ctrl+C to stop)")
    try:
        SyncPuller(_database()).run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
        console.print("\nStopped.")


@sync.command(name="hash")
@handle_errors
def sync_hash():
    """Print the digest of the local configuration."""
    from nodesync.sync.engine import SyncEngine

    click.echo(SyncEngine(_database()).report_local_digest())


# ── Serve ────────────────────────────────────────────────────────────


@main.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", "-p", default=3001, type=int, help="Bind port")
def serve(host: str, port: int):
    """Run the HTTP API (and the background sync loops)."""
    import uvicorn

    uvicorn.run("web.backend.app.main:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
