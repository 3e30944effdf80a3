import json
import shlex
import uuid
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from hjx import __version__
from hjx.config import DEFAULT_CONFIG, load_config, init_config, find_config, save_global_config
from hjx.credentials import load_credentials, save_credential, HJX_CREDENTIALS_FILE
from hjx.diff import summarize, ONLY_FILE, ONLY_CACHE, CONFLICT
from hjx.errors import DocumentError, ExportError, HjxError, PermissionDenied, SelectionCancelled
from hjx.log import read_logs, setup_logging
from hjx.review import display_diff, review_conflicts
from hjx.storage import choose_directory, create_handle
from hjx.workspace import Workspace


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Diagnostic log level (default: $HJX_LOG_LEVEL or WARNING).")
@click.pass_context
def main(ctx, log_level):
    """hjx: local-first storage for the company database."""
    load_credentials()
    setup_logging(log_level)
    if ctx.invoked_subcommand is None:
        shell()


def _open_workspace(console, policy=None):
    """Load config, build the workspace and run the startup restore."""
    try:
        config = load_config()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    if policy:
        config["conflict_policy"] = policy
    reviewer = config.get("reviewer") or None
    workspace = Workspace(
        config,
        chooser=lambda diff: review_conflicts(diff, model=reviewer, console=console),
    )
    return workspace


def _print_restore(console, result):
    labels = {
        "empty": "[dim]Nothing stored yet. Starting empty.[/dim]",
        "cache": "Loaded from local cache.",
        "external": "Loaded from external storage.",
        "merged": "Local cache reconciled with external storage.",
    }
    console.print(labels[result.source])
    if result.diff:
        counts = summarize(result.diff)
        if any(counts.values()):
            console.print(
                f"  [cyan]{counts[ONLY_FILE]} only in file[/cyan] | "
                f"[green]{counts[ONLY_CACHE]} only in cache[/green] | "
                f"[yellow]{counts[CONFLICT]} conflicts resolved[/yellow]"
            )


@main.command()
def init():
    """Create .hjxconfig in the current directory with defaults."""
    if find_config():
        click.echo(".hjxconfig already exists.")
        return
    config_path = init_config()
    click.echo(f"Created {config_path}")


@main.command()
@click.argument("key")
@click.argument("value")
def auth(key, value):
    """Save a credential. Stored in ~/.hjx/credentials.

    Examples:
        hjx auth ANTHROPIC_API_KEY sk-ant-...
        hjx auth AWS_ACCESS_KEY_ID AKIA...
    """
    save_credential(key, value)
    click.echo(f"Saved {key} to {HJX_CREDENTIALS_FILE}")


@main.command("config")
@click.argument("key", type=click.Choice(sorted(DEFAULT_CONFIG)))
@click.argument("value")
def config_cmd(key, value):
    """Set a user-wide default in ~/.hjx/config.json. A project's .hjxconfig still wins.

    Examples:
        hjx config actor Lin
        hjx config conflict_policy ask
    """
    try:
        save_global_config({key: value})
    except ValueError as e:
        click.echo(str(e))
        raise SystemExit(1)
    click.echo(f"Set {key} for every project on this machine.")


@main.command()
def status():
    """Show where the database is stored and what it holds."""
    console = Console()
    workspace = _open_workspace(console)
    result = workspace.restore()
    try:
        _print_restore(console, result)
        _print_status(console, workspace)
    finally:
        workspace.close()


def _print_status(console, workspace):
    info = workspace.status()
    if info["storage"]:
        color = {"granted": "green", "prompt": "yellow", "denied": "red"}[info["permission"]]
        console.print(f"Storage: [bold]{info['storage']}[/bold] ([{color}]{info['permission']}[/{color}])")
    else:
        console.print("Storage: [dim]local cache only[/dim]")
    if info["export_to"]:
        console.print(f"Exports: {info['export_to']}")
    if info["last_update"]:
        console.print(f"Last change: {info['last_update'].actor_label} at {info['last_update'].time}")

    if not info["collections"]:
        console.print("[dim]No collections.[/dim]")
        return
    table = Table(title="Collections")
    table.add_column("Collection", style="bold cyan")
    table.add_column("Records", justify="right")
    for name, count in info["collections"].items():
        table.add_row(name, str(count))
    console.print(table)


@main.command()
@click.argument("path", required=False)
@click.option("--s3", "bucket", default=None, help="Use an S3 bucket instead of a directory.")
@click.option("--prefix", default="", help="Key prefix inside the S3 bucket.")
def connect(path, bucket, prefix):
    """Mirror the database to a directory (or S3 bucket) as db.json.

    Without PATH you are asked for a directory.
    """
    console = Console()
    workspace = _open_workspace(console)
    workspace.restore()
    try:
        if bucket:
            handle = create_handle("s3", bucket, prefix=prefix)
        else:
            handle = choose_directory(path)
        diff = workspace.connect(handle)
    except SelectionCancelled:
        console.print("[dim]Cancelled.[/dim]")
        return
    except (PermissionDenied, RuntimeError) as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    finally:
        workspace.close()

    console.print(f"[green]Connected to {handle.label}.[/green]")
    if diff:
        display_diff(diff, console)


@main.command()
def disconnect():
    """Stop mirroring to external storage. The local cache is kept."""
    console = Console()
    workspace = _open_workspace(console)
    workspace.restore()
    try:
        if workspace.disconnect():
            console.print("[green]Disconnected.[/green] Data stays in the local cache.")
        else:
            console.print("[dim]No storage connected.[/dim]")
    finally:
        workspace.close()


@main.command()
@click.option("--review", is_flag=True, help="Choose the winner of each conflict interactively.")
@click.option("--policy", type=click.Choice(["newest", "file", "cache"]), default=None,
              help="Override conflict_policy for this run.")
def sync(review, policy):
    """Load the local cache, reconcile it with external storage and save both."""
    console = Console()
    workspace = _open_workspace(console, policy="ask" if review else policy)
    result = workspace.restore()
    try:
        _print_restore(console, result)
        if result.diff:
            display_diff(result.diff, console)
        workspace.scheduler.flush_now()
    finally:
        workspace.close()


@main.command()
def diff():
    """Compare external db.json with the local cache."""
    console = Console()
    workspace = _open_workspace(console)
    result = workspace.compare()
    if result is None:
        console.print("[dim]No readable external storage. Run 'hjx connect' first.[/dim]")
        return
    display_diff(result, console)


@main.command("export")
@click.option("--dir", "directory", default=None, type=click.Path(file_okay=False),
              help="Directory to write db_<timestamp>.json into.")
@click.option("--remember", is_flag=True, help="Use this directory for future exports.")
def export_cmd(directory, remember):
    """Export the database as a timestamped JSON file."""
    console = Console()
    workspace = _open_workspace(console)
    workspace.restore()
    try:
        if directory and remember:
            workspace.set_export_target(create_handle("directory", directory), prompt=lambda h, m: True)
        location = workspace.export(directory)
    except (ExportError, PermissionDenied) as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    finally:
        workspace.close()
    console.print(f"[green]Exported to {location}[/green]")


@main.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt.")
def import_cmd(file, yes):
    """Replace the whole database with an exported JSON file."""
    console = Console()
    workspace = _open_workspace(console)
    workspace.restore()
    try:
        if not yes and len(workspace.state.snapshot):
            if not click.confirm("This replaces all current data. Continue?", default=False):
                console.print("[dim]Cancelled.[/dim]")
                return
        snapshot = workspace.import_file(file)
    except DocumentError as e:
        console.print(f"[red]Import rejected: {e}[/red]")
        raise SystemExit(1)
    finally:
        workspace.close()
    console.print(f"[green]Imported {len(snapshot)} records from {file}.[/green]")


@main.command()
@click.option("-n", "--limit", default=20, help="Number of log entries to show.")
def logs(limit):
    """Show the persistence audit log."""
    console = Console()

    entries = read_logs(limit)
    if not entries:
        console.print("[dim]No logs yet.[/dim]")
        return

    table = Table(title="Persistence Log")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="bold")
    table.add_column("Details")

    for entry in entries:
        ts = entry.get("timestamp", "")
        if ts:
            try:
                ts = datetime.fromisoformat(ts).strftime("%m-%d %H:%M:%S")
            except ValueError:
                pass
        details = {k: v for k, v in entry.items() if k not in ("timestamp", "event")}
        table.add_row(ts, entry.get("event", ""), json.dumps(details, ensure_ascii=False))

    console.print(table)


@main.command("shell")
def shell_cmd():
    """Interactive shell. Changes are autosaved."""
    shell()


def _print_records(console, snapshot, collection=None):
    names = [collection] if collection else list(snapshot.names)
    if not names:
        console.print("[dim]No collections.[/dim]")
        return
    for name in names:
        records = snapshot.records(name)
        if not records:
            console.print(f"[dim]{name}: empty[/dim]")
            continue
        table = Table(title=name, title_justify="left")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Modified", style="dim")
        for r in records:
            table.add_row(r["id"], str(r.get("name") or r.get("plateNumber") or ""), str(r.get("lastModifiedAt", "")))
        console.print(table)


def shell():
    """Interactive hjx shell over the restored state."""
    console = Console()
    workspace = _open_workspace(console)
    result = workspace.restore()
    actor = workspace.config.get("actor") or None

    console.print("[bold]hjx shell[/bold]")
    _print_restore(console, result)
    console.print(
        "[dim]Commands: list [collection], show <collection> <id>, put <collection> <json>, "
        "rm <collection> <id>, set <key> <json>, diff, status, export [dir], import <file>, "
        "flush, exit[/dim]\n"
    )

    try:
        while True:
            marker = "*" if workspace.scheduler.pending else ""
            try:
                user_input = input(f"hjx{marker}> ").strip()
            except (KeyboardInterrupt, EOFError):
                console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue
            if user_input in ("exit", "quit"):
                break

            command, _, rest = user_input.partition(" ")
            try:
                _shell_command(console, workspace, command, rest.strip(), actor)
            except (ValueError, KeyError, HjxError) as e:
                console.print(f"[red]{e}[/red]")
    finally:
        workspace.close()


def _shell_command(console, workspace, command, rest, actor):
    state = workspace.state

    if command == "list":
        _print_records(console, state.snapshot, rest or None)

    elif command == "show":
        collection, record_id = shlex.split(rest)
        record = state.snapshot.get(collection, record_id)
        if record is None:
            raise KeyError(f"{collection}/{record_id} not found")
        console.print_json(json.dumps(record, ensure_ascii=False))

    elif command == "put":
        collection, _, payload = rest.partition(" ")
        try:
            record = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}")
        if not isinstance(record, dict):
            raise ValueError("Record must be a JSON object")
        record.setdefault("id", str(uuid.uuid4()))
        state.upsert(collection, record, actor=actor)
        console.print(f"[green]Saved {collection}/{record['id']}[/green]")

    elif command == "rm":
        collection, record_id = shlex.split(rest)
        state.remove(collection, record_id, actor=actor)
        console.print(f"[red]Removed[/red] {collection}/{record_id}")

    elif command == "set":
        key, _, payload = rest.partition(" ")
        try:
            value = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}")
        state.set_extra(key, value, actor=actor)
        console.print(f"[green]Set {key}[/green]")

    elif command == "diff":
        result = workspace.external_diff()
        if result is None:
            console.print("[dim]No readable external storage.[/dim]")
        else:
            display_diff(result, console)

    elif command == "status":
        _print_status(console, workspace)

    elif command == "export":
        location = workspace.export(rest or None)
        console.print(f"[green]Exported to {location}[/green]")

    elif command == "import":
        confirm = input("Replace all current data? (y/n) > ").strip().lower()
        if confirm not in ("y", "yes"):
            console.print("[dim]Cancelled.[/dim]")
            return
        snapshot = workspace.import_file(rest)
        console.print(f"[green]Imported {len(snapshot)} records.[/green]")

    elif command == "flush":
        workspace.scheduler.flush_now()
        console.print("[green]Saved.[/green]")

    else:
        console.print(f"[dim]Unknown command: {command}[/dim]")
