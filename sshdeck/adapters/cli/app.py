"""
Main CLI application
"""
import dataclasses
from concurrent.futures import wait
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer
from rich.table import Table

from ...application import Application
from ...core.config import AppConfig
from ...core.exceptions import (
    InvalidRecord,
    SshDeckError,
    VaultCorrupt,
    WrongPassword,
    user_message,
)
from ...core.logging import get_logger, get_stderr_console, get_stdout_console, setup_logging
from ...domain.session.models import Session
from ...domain.transfer.models import TaskStatus, TransferDirection, TransferRequest
from ...domain.vault.models import (
    ConnectionRecord,
    Credential,
    PasswordCredential,
    PrivateKeyCredential,
)
from ..config.loader import ConfigLoader
from .prompts import RichPromptProvider
from .terminal import InteractiveTerminal
from .transfer import describe, run_wizard, show_progress

logger = get_logger(__name__)
console = get_stdout_console()
stderr_console = get_stderr_console()

UNLOCK_ATTEMPTS = 3

# Create main app
app = typer.Typer(
    name="sshdeck",
    add_completion=False,
    help="SSH client with an encrypted connection vault, tabs and SFTP transfers",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="TOML configuration file"
    ),
    vault: Optional[Path] = typer.Option(
        None, "--vault", help="Vault file path"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Console logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
):
    """
    sshdeck - saved SSH connections behind a master password

    Connections are stored encrypted; use [bold]init[/bold] once, then
    [bold]add[/bold], [bold]connect[/bold], [bold]upload[/bold] and
    [bold]download[/bold].
    """
    try:
        config = ConfigLoader().load(
            toml_path=config_file,
            cli_overrides={"vault_path": vault, "log_level": log_level},
        )
    except (SshDeckError, FileNotFoundError) as e:
        stderr_console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)

    setup_logging(level=config.log_level, log_file=config.log_path)
    ctx.obj = config


# ============================================================
# Helpers
# ============================================================

@contextmanager
def _handle_errors() -> Iterator[None]:
    """Short message for the user, full detail in the log"""
    try:
        yield
    except SshDeckError as e:
        logger.debug("Command failed", exc_info=True)
        stderr_console.print(f"[red]✗[/red] {user_message(e)}")
        raise typer.Exit(1)


def _unlock(app_: Application, prompts: RichPromptProvider) -> str:
    """Prompt for the master password, re-prompting on a wrong one"""
    if not app_.vault_exists:
        prompts.error(f"No vault at {app_.config.vault_path}; run 'sshdeck init' first")
        raise typer.Exit(1)

    for attempt in range(1, UNLOCK_ATTEMPTS + 1):
        password = prompts.prompt("Master password", password=True)
        try:
            app_.unlock(password)
            return password
        except WrongPassword as e:
            remaining = UNLOCK_ATTEMPTS - attempt
            prompts.error(user_message(e) + (f" ({remaining} left)" if remaining else ""))
        except VaultCorrupt as e:
            # Structural damage; a different password cannot help
            prompts.error(user_message(e))
            raise typer.Exit(1)
    raise typer.Exit(1)


@contextmanager
def _open_app(ctx: typer.Context) -> Iterator[Application]:
    config: AppConfig = ctx.obj
    prompts = RichPromptProvider()
    application = Application(config)
    try:
        with _handle_errors():
            _unlock(application, prompts)
            yield application
    finally:
        application.shutdown()


def _connect_all(application: Application, keys: List[str]) -> List[Session]:
    """Connect to several records in parallel; failures are reported"""
    records = [application.store.find(key) for key in keys]
    futures = {
        application.sessions.connect_in_background(record): record for record in records
    }
    with console.status(f"Connecting to {len(records)} host(s)…"):
        wait(futures)

    sessions = []
    for future, record in futures.items():
        error = future.exception()
        if error is None:
            sessions.append(future.result())
            console.print(f"[green]✓[/green] {record.label} ({record.target})")
        else:
            stderr_console.print(f"[red]✗[/red] {record.label}: {user_message(error)}")
    return sessions


def _prompt_credential(prompts: RichPromptProvider, key: Optional[Path]) -> Credential:
    """Key auth if a key file is given, password auth otherwise"""
    if key is not None:
        passphrase = None
        if prompts.confirm("Is the key protected by a passphrase?", default=False):
            passphrase = prompts.prompt("Key passphrase", password=True)
        return PrivateKeyCredential(path=str(key.expanduser()), passphrase=passphrase)
    return PasswordCredential(password=prompts.prompt("SSH password", password=True))


def _check(application: Application, record: ConnectionRecord) -> None:
    with console.status(f"Testing {record.target}…"):
        application.check_connection(record)
    console.print(f"[green]✓[/green] {record.target}: connected and authenticated")


def _format_time(ts: Optional[float]) -> str:
    if ts is None:
        return "never"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


# ============================================================
# Vault commands
# ============================================================

@app.command()
def init(ctx: typer.Context):
    """Create a new, empty vault"""
    config: AppConfig = ctx.obj
    prompts = RichPromptProvider()
    application = Application(config)
    if application.vault_exists:
        prompts.error(f"Vault already exists at {config.vault_path}")
        raise typer.Exit(1)
    try:
        with _handle_errors():
            application.create_vault(prompts.new_password("Choose a master password"))
    finally:
        application.shutdown()
    prompts.success(f"Vault created at {config.vault_path}")


@app.command()
def passwd(ctx: typer.Context):
    """Change the master password"""
    config: AppConfig = ctx.obj
    prompts = RichPromptProvider()
    application = Application(config)
    try:
        with _handle_errors():
            old = _unlock(application, prompts)
            application.change_password(old, prompts.new_password())
    finally:
        application.shutdown()
    prompts.success("Master password changed")


@app.command(name="list")
def list_connections(ctx: typer.Context):
    """List saved connections, most recently used first"""
    with _open_app(ctx) as application:
        records = application.store.list()
        if not records:
            console.print("[yellow]No saved connections[/yellow]")
            return

        table = Table(title="Connections", show_header=True, header_style="bold cyan")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Target", style="green")
        table.add_column("Auth", style="magenta")
        table.add_column("Last used", style="yellow")
        table.add_column("Attempts", justify="right")
        for record in records:
            auth = "key" if isinstance(record.credential, PrivateKeyCredential) else "password"
            failures = sum(1 for h in record.history if not h.success)
            attempts = f"{len(record.history)}" + (f" [red]({failures} failed)[/red]" if failures else "")
            table.add_row(
                record.id, record.label, record.target, auth, _format_time(record.last_used_at), attempts
            )
        console.print(table)


@app.command()
def add(
    ctx: typer.Context,
    host: str = typer.Option(..., "--host", "-H", help="Remote host"),
    user: str = typer.Option(..., "--user", "-u", help="Remote user"),
    port: int = typer.Option(22, "--port", "-p", help="SSH port"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Friendly name"),
    key: Optional[Path] = typer.Option(None, "--key", "-i", help="Private key file (password auth if omitted)"),
    test: bool = typer.Option(False, "--test", "-t", help="Connect once before saving"),
):
    """Save a new connection"""
    prompts = RichPromptProvider()
    with _open_app(ctx) as application:
        record = ConnectionRecord(
            host=host, user=user, port=port, name=name, credential=_prompt_credential(prompts, key)
        )
        record.validate()
        if test:
            _check(application, record)
        application.store.add(record)
        prompts.success(f"Saved {record.label} ({record.target}) as {record.id}")


@app.command()
def edit(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Connection id, name or user@host"),
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Remote host"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Remote user"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="SSH port"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Friendly name"),
    key: Optional[Path] = typer.Option(None, "--key", "-i", help="Switch to this private key"),
    password: bool = typer.Option(False, "--password", help="Switch to (or change the) password"),
    test: bool = typer.Option(False, "--test", "-t", help="Connect once before saving"),
):
    """
    Change a saved connection.

    Without options every field is prompted with its current value.
    """
    prompts = RichPromptProvider()
    with _open_app(ctx) as application:
        record = application.store.find(target)
        changes: Dict[str, Any] = {}

        if all(v is None for v in (host, user, port, name, key)) and not password:
            changes["host"] = prompts.prompt("Host", default=record.host)
            changes["user"] = prompts.prompt("User", default=record.user)
            raw_port = prompts.prompt("Port", default=str(record.port))
            try:
                changes["port"] = int(raw_port)
            except ValueError:
                raise InvalidRecord(f"Port must be a number, got {raw_port!r}") from None
            changes["name"] = prompts.prompt("Name", default=record.name or "") or None
            if prompts.confirm("Change the credential?", default=False):
                raw_key = prompts.prompt("Private key file (empty for password auth)", default="")
                changes["credential"] = _prompt_credential(prompts, Path(raw_key) if raw_key else None)
        else:
            for field_name, value in (("host", host), ("user", user), ("port", port), ("name", name)):
                if value is not None:
                    changes[field_name] = value
            if key is not None or password:
                changes["credential"] = _prompt_credential(prompts, key)

        if test:
            candidate = dataclasses.replace(record, **changes)
            candidate.validate()
            _check(application, candidate)
        updated = application.edit_connection(record.id, **changes)
        prompts.success(f"Updated {updated.label} ({updated.target})")


@app.command(name="test")
def check_saved(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Connection id, name or user@host"),
):
    """Connect and authenticate without opening a terminal"""
    with _open_app(ctx) as application:
        _check(application, application.store.find(target))


@app.command()
def remove(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Connection id, name or user@host"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a saved connection"""
    prompts = RichPromptProvider()
    with _open_app(ctx) as application:
        record = application.store.find(target)
        if not yes and not prompts.confirm(f"Delete {record.label} ({record.target})?"):
            raise typer.Exit(0)
        application.store.delete(record.id)
        prompts.success(f"Deleted {record.label}")


# ============================================================
# Session commands
# ============================================================

@app.command()
def connect(
    ctx: typer.Context,
    targets: List[str] = typer.Argument(..., help="One or more connections; each opens a tab"),
):
    """
    Open interactive terminals.

    Ctrl+G leaves, F6/F7 switch tabs, F8 closes the current tab.
    """
    with _open_app(ctx) as application:
        sessions = _connect_all(application, targets)
        if not sessions:
            raise typer.Exit(1)
        InteractiveTerminal(application).run([s.id for s in sessions])


def _transfer(ctx: typer.Context, target: str, direction: TransferDirection, source: str, target_dir: str) -> None:
    with _open_app(ctx) as application:
        record = application.store.find(target)
        session = application.sessions.connect(record)
        job = application.start_transfer(
            TransferRequest(session.id, direction, source, target_dir)
        )
        show_progress(application, job)
        _report(job)


def _report(job) -> None:
    if job.status is TaskStatus.COMPLETED:
        console.print(f"[green]✓[/green] {describe(job)}")
        return
    if job.status is TaskStatus.CANCELLED:
        console.print(f"[yellow]⚠[/yellow] {describe(job)}")
        raise typer.Exit(130)
    stderr_console.print(f"[red]✗[/red] {describe(job)}: {job.error}")
    raise typer.Exit(1)


@app.command()
def upload(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Connection id, name or user@host"),
    source: str = typer.Argument(..., help="Local file or directory"),
    remote_dir: str = typer.Argument(..., help="Existing remote directory"),
):
    """Upload a file or directory tree"""
    _transfer(ctx, target, TransferDirection.UPLOAD, source, remote_dir)


@app.command()
def download(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Connection id, name or user@host"),
    source: str = typer.Argument(..., help="Remote file or directory"),
    local_dir: str = typer.Argument(".", help="Existing local directory"),
):
    """Download a file or directory tree"""
    _transfer(ctx, target, TransferDirection.DOWNLOAD, source, local_dir)


@app.command()
def transfer(
    ctx: typer.Context,
    targets: List[str] = typer.Argument(..., help="Connections to make available to the wizard"),
):
    """Pick session, direction, source and target interactively"""
    prompts = RichPromptProvider()
    with _open_app(ctx) as application:
        sessions = _connect_all(application, targets)
        if not sessions:
            raise typer.Exit(1)
        preselected = sessions[0].id if len(sessions) == 1 else None
        request = run_wizard(application, prompts, preselected)
        if request is None:
            prompts.warning("Transfer aborted")
            return
        job = application.start_transfer(request)
        show_progress(application, job)
        _report(job)


@app.command()
def history(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Connection id, name or user@host"),
):
    """Show the connection attempts of a saved connection"""
    with _open_app(ctx) as application:
        record = application.store.find(target)
        table = Table(title=f"History: {record.label}", show_header=True, header_style="bold cyan")
        table.add_column("When", style="yellow")
        table.add_column("Result")
        for entry in reversed(record.history):
            result = "[green]success[/green]" if entry.success else "[red]failure[/red]"
            table.add_row(_format_time(entry.timestamp), result)
        console.print(table)


def run():
    """CLI entry point"""
    app()


if __name__ == "__main__":
    run()
