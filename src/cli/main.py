"""
tfstate CLI - bootstrap, migrate and operate a remote state backend.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from bootstrap.provisioner import BootstrapProvisioner
from common.config import BootstrapConfig, CoordinatorSettings, get_settings
from common.errors import (
    BackendNotFoundError,
    ConfigurationError,
    ConflictError,
    CorruptStateError,
    LockBusyError,
    StateBackendError,
)
from common.log import configure_logging
from migration.migrate import StateMigration
from state.coordinator import RemoteStateCoordinator
from state.local_store import LocalStateFile
from state.models import StateDocument, default_identity


app = typer.Typer(
    name="tfstate",
    help="Bootstrap and coordinate remote infrastructure state in S3 + DynamoDB",
    add_completion=False,
)
console = Console(stderr=True)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BUSY = 2
EXIT_CONFLICT = 3
EXIT_NOT_FOUND = 4
EXIT_CORRUPT = 5

T = TypeVar("T")


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, LockBusyError):
        return EXIT_BUSY
    if isinstance(exc, ConflictError):
        return EXIT_CONFLICT
    if isinstance(exc, BackendNotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(exc, CorruptStateError):
        return EXIT_CORRUPT
    return EXIT_ERROR


def _run(label: str, fn: Callable[[], T]) -> T:
    """Run a command body, mapping backend errors to messages and exit codes."""
    try:
        return fn()
    except LockBusyError as e:
        console.print(f"[bold yellow]⏳ {label}: state is locked[/bold yellow]")
        console.print(f"[dim]{escape(str(e))}[/dim]")
        console.print("[dim]Wait for the holder to finish, or retry with --lock-timeout.[/dim]")
        raise typer.Exit(code=exit_code_for(e))
    except (StateBackendError, ValidationError) as e:
        console.print(f"[bold red]✗ {label} failed:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=exit_code_for(e))


# -------- Factories (patched in tests) --------
def make_coordinator(settings: CoordinatorSettings, *, workspace: Optional[str] = None) -> RemoteStateCoordinator:
    return RemoteStateCoordinator.from_config(settings.to_backend_config(), settings, workspace=workspace)


def make_provisioner(config: BootstrapConfig, local: LocalStateFile) -> BootstrapProvisioner:
    return BootstrapProvisioner(config, local=local)


@app.callback()
def main() -> None:
    settings = _run("Configuration", get_settings)
    configure_logging(settings.log_level, json_output=settings.log_json)


@app.command()
def bootstrap(
    bucket: Optional[str] = typer.Option(None, help="State bucket name (default: TFSTATE_BUCKET)"),
    table: Optional[str] = typer.Option(None, help="Lock table name (default: TFSTATE_DYNAMODB_TABLE)"),
    region: Optional[str] = typer.Option(None, help="AWS region (default: TFSTATE_REGION)"),
    sse: str = typer.Option("AES256", help="Server-side encryption: AES256 or aws:kms"),
    kms_key_id: Optional[str] = typer.Option(None, help="KMS key for aws:kms encryption"),
    billing_mode: str = typer.Option("PAY_PER_REQUEST", help="PAY_PER_REQUEST or PROVISIONED"),
    read_capacity: Optional[int] = typer.Option(None, help="Read capacity (PROVISIONED only)"),
    write_capacity: Optional[int] = typer.Option(None, help="Write capacity (PROVISIONED only)"),
    state_file: Optional[Path] = typer.Option(None, help="Local state file for bootstrap bookkeeping"),
) -> None:
    """Create the state bucket and lock table (local state only)."""
    settings = get_settings()

    def body() -> None:
        name = bucket or settings.bucket
        tbl = table or settings.dynamodb_table
        reg = region or settings.region
        if not name or not tbl or not reg:
            raise ConfigurationError("bucket, table and region are required")
        cfg = BootstrapConfig(
            bucket_name=name,
            table_name=tbl,
            region=reg,
            sse_algorithm=sse,
            kms_key_id=kms_key_id,
            billing_mode=billing_mode,
            read_capacity=read_capacity,
            write_capacity=write_capacity,
        )
        local = LocalStateFile(state_file or settings.local_state_path)
        result = make_provisioner(cfg, local).ensure()
        if result.changed:
            console.print(f"[bold green]✓ Backend ready:[/bold green] s3://{result.bucket} + {result.table}")
        else:
            console.print(f"[green]✓ No changes.[/green] s3://{result.bucket} and {result.table} already configured")

    _run("Bootstrap", body)


@app.command()
def migrate(
    state_file: Optional[Path] = typer.Option(None, help="Local state file to migrate"),
    yes: bool = typer.Option(False, "--yes", help="Skip the interactive confirmation"),
) -> None:
    """Copy the local state into the remote backend (one-time, confirmed)."""
    settings = get_settings()

    def body() -> None:
        local = LocalStateFile(state_file or settings.local_state_path)
        migration = StateMigration(local, make_coordinator(settings), identity=default_identity())
        plan = migration.prepare()
        console.print(
            Panel.fit(
                f"[bold cyan]State migration[/bold cyan]\n"
                f"From:      {plan.source}\n"
                f"To:        {plan.target_uri}\n"
                f"Lineage:   {plan.lineage}\n"
                f"Serial:    {plan.serial}\n"
                f"Resources: {plan.resource_count}",
                border_style="cyan",
            )
        )
        if not yes:
            console.print("The local file will be kept, but the remote copy becomes authoritative.")
            answer = typer.prompt("Only 'yes' will be accepted to confirm")
            if answer.strip() != "yes":
                console.print("[yellow]Migration cancelled.[/yellow]")
                raise typer.Exit(code=EXIT_ERROR)
        migration.commit(plan, plan.confirmation_token)
        console.print(f"[bold green]✓ Migrated[/bold green] to {plan.target_uri}; {plan.source} marked superseded")

    _run("Migrate", body)


@app.command()
def status(workspace: Optional[str] = typer.Option(None, help="Workspace name")) -> None:
    """Show who holds the state lock, if anyone."""
    settings = get_settings()

    def body() -> None:
        coord = make_coordinator(settings, workspace=workspace)
        info = coord.lock_status()
        if info is None:
            console.print(f"[green]Unlocked[/green] {coord.state_uri}")
            return
        flag = " [bold red](stale)[/bold red]" if coord.is_stale(info) else ""
        console.print(f"[yellow]Locked[/yellow]{flag} {coord.state_uri}")
        console.print(f"  ID:        {info.id}")
        console.print(f"  Who:       {info.who}")
        console.print(f"  Operation: {info.operation}")
        console.print(f"  Created:   {info.created.isoformat()}")

    _run("Status", body)


@app.command()
def pull(workspace: Optional[str] = typer.Option(None, help="Workspace name")) -> None:
    """Print the current remote state to stdout."""
    settings = get_settings()

    def body() -> None:
        doc = make_coordinator(settings, workspace=workspace).snapshot()
        typer.echo(doc.to_json_bytes().decode("utf-8"), nl=False)

    _run("Pull", body)


@app.command()
def push(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="State file to upload"),
    workspace: Optional[str] = typer.Option(None, help="Workspace name"),
    lock_timeout: Optional[float] = typer.Option(None, help="Seconds to wait for the lock"),
) -> None:
    """Write a state file as the next remote version; its serial must match the remote one."""
    settings = get_settings()

    def body() -> None:
        doc = StateDocument.from_json_bytes(path.read_bytes())
        coord = make_coordinator(settings, workspace=workspace)
        with coord.locked(default_identity(), "push", info=str(path), timeout=lock_timeout) as handle:
            result = coord.write_state(handle, doc, expected_version=doc.serial)
        if result.written:
            console.print(f"[bold green]✓ Pushed[/bold green] serial {result.serial} to {coord.state_uri}")
        else:
            console.print(f"[green]✓ No changes.[/green] Remote already at serial {result.serial}")

    _run("Push", body)


@app.command("force-unlock")
def force_unlock(
    lock_id: str = typer.Argument(..., help="ID of the lock to remove"),
    reason: str = typer.Option(..., help="Why the lock is being overridden (recorded in the audit log)"),
    workspace: Optional[str] = typer.Option(None, help="Workspace name"),
    yes: bool = typer.Option(False, "--yes", help="Skip the interactive confirmation"),
) -> None:
    """Remove a lock left behind by a crashed process. Dangerous."""
    settings = get_settings()

    def body() -> None:
        coord = make_coordinator(settings, workspace=workspace)
        if not yes:
            console.print("[bold red]Removing a lock held by a live process can corrupt state.[/bold red]")
            if not typer.confirm(f"Force-unlock {lock_id} on {coord.state_uri}?", default=False):
                console.print("[yellow]Force-unlock cancelled.[/yellow]")
                raise typer.Exit(code=EXIT_ERROR)
        removed = coord.force_unlock(lock_id, operator=default_identity(), reason=reason)
        console.print(f"[bold green]✓ Lock {removed.id} removed[/bold green] (held by {removed.who})")

    _run("Force-unlock", body)


@app.command()
def versions(workspace: Optional[str] = typer.Option(None, help="Workspace name")) -> None:
    """List retained revisions of the state object."""
    settings = get_settings()

    def body() -> None:
        coord = make_coordinator(settings, workspace=workspace)
        table = Table(title=coord.state_uri)
        table.add_column("Version ID")
        table.add_column("Last modified")
        table.add_column("Size", justify="right")
        table.add_column("Latest")
        for v in coord.list_versions():
            table.add_row(
                v.version_id,
                v.last_modified.isoformat() if v.last_modified else "-",
                str(v.size),
                "✓" if v.is_latest else "",
            )
        Console().print(table)

    _run("Versions", body)


@app.command()
def workspaces() -> None:
    """List workspaces that have remote state."""
    settings = get_settings()

    def body() -> None:
        config = settings.to_backend_config()
        coord = make_coordinator(settings)
        current = config.workspace
        for name in coord.list_workspaces(config):
            marker = "*" if name == current else " "
            typer.echo(f"{marker} {name}")

    _run("Workspaces", body)


if __name__ == "__main__":
    app()
