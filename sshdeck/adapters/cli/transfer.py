"""
Transfer CLI helpers: interactive wizard and progress display
"""
import threading
from typing import Optional, Tuple

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from ...application import Application
from ...core.events import Event, TransferProgress
from ...core.logging import get_logger, get_stdout_console
from ...core.utils import format_size
from ...domain.transfer import wizard
from ...domain.transfer.browser import DirectoryBrowser, browser_for
from ...domain.transfer.models import Side, TransferDirection, TransferJob, TransferRequest
from ...domain.transfer.wizard import WizardState, WizardStep
from .prompts import RichPromptProvider

logger = get_logger(__name__)

_PICK_HERE = "[green]✓ use this directory[/green]"
_PARENT = "[cyan]..[/cyan]"


def show_progress(app: Application, job: TransferJob, console: Optional[Console] = None) -> TransferJob:
    """
    Render a job's progress until it finishes.

    Ctrl+C cancels the job; the partial target is left in place.
    """
    console = console or get_stdout_console()
    latest: dict = {}
    changed = threading.Event()

    def on_event(event: Event) -> None:
        if isinstance(event, TransferProgress) and event.job_id == job.id:
            latest["event"] = event
            changed.set()

    unsubscribe = app.bus.subscribe(on_event)
    try:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
            transient=True,
            disable=not console.is_terminal,
        ) as progress:
            task = progress.add_task(f"{job.direction.value}", total=None)
            while not job.done.is_set():
                try:
                    changed.wait(0.1)
                except KeyboardInterrupt:
                    console.print("[yellow]Cancelling…[/yellow]")
                    app.transfers.cancel(job.id)
                    continue
                changed.clear()
                event = latest.get("event")
                if event is not None:
                    name = (event.current_file or "").rsplit("/", 1)[-1]
                    progress.update(
                        task,
                        description=name or job.direction.value,
                        completed=event.bytes_done,
                        total=event.total_bytes or None,
                    )
    finally:
        unsubscribe()
    return job


def describe(job: TransferJob) -> str:
    return (
        f"{job.status.value}: {format_size(job.bytes_done)} of {format_size(job.total_bytes)}"
        f" in {job.files_done}/{job.files_total} files ({job.duration:.1f}s, {format_size(int(job.average_speed))}/s)"
    )


# ============================================================
# Interactive wizard
# ============================================================

def run_wizard(
    app: Application,
    prompts: RichPromptProvider,
    session_id: Optional[str] = None,
) -> Optional[TransferRequest]:
    """
    Walk the user through the transfer wizard.

    Returns:
        The confirmed request, or None if aborted
    """
    state = wizard.start(session_id)
    while not state.step.is_final:
        state = wizard.advance(state, _ask(app, prompts, state))
    if state.step is WizardStep.ABORTED:
        return None
    return wizard.to_request(state)


def _ask(app: Application, prompts: RichPromptProvider, state: WizardState) -> wizard.Action:
    app.touch()
    if state.step is WizardStep.SELECT_SESSION:
        sessions = [s for s in app.sessions.list_sessions() if s.state.is_open]
        if not sessions:
            prompts.error("No connected sessions")
            return wizard.Abort()
        picked = prompts.choose("Session", [f"{s.label} ({s.record.target})" for s in sessions])
        return wizard.Back() if picked is None else wizard.SessionChosen(sessions[picked].id)

    if state.step is WizardStep.SELECT_DIRECTION:
        directions = list(TransferDirection)
        picked = prompts.choose("Direction", [d.value for d in directions])
        return wizard.Back() if picked is None else wizard.DirectionChosen(directions[picked])

    if state.step in (WizardStep.SELECT_SOURCE, WizardStep.SELECT_TARGET):
        side = wizard.browser_side(state)
        browser = browser_for(side, app.sessions, state.session_id)
        picking_source = state.step is WizardStep.SELECT_SOURCE
        chosen = _browse(prompts, browser, _start_dir(app, state, side), pick_files=picking_source)
        if chosen is None:
            return wizard.Back()
        path, is_dir = chosen
        return wizard.SourceChosen(path, is_dir) if picking_source else wizard.TargetChosen(path)

    prompts.info(f"{state.direction.value}: {state.source} → {state.target_dir}")
    return wizard.Confirmed() if prompts.confirm("Start transfer?", default=True) else wizard.Back()


def _start_dir(app: Application, state: WizardState, side: Side) -> Optional[str]:
    if not app.store.is_open:
        return None
    if side is Side.LOCAL:
        return app.store.last_local_dir
    return app.sessions.get(state.session_id).record.last_remote_dir


def _browse(
    prompts: RichPromptProvider,
    browser: DirectoryBrowser,
    start: Optional[str],
    pick_files: bool,
) -> Optional[Tuple[str, bool]]:
    """
    Navigate directories until the user picks an entry.

    Returns:
        (path, is_dir), or None to go back
    """
    listing = browser.open_at(start, only_dirs=not pick_files)
    while True:
        options = [_PICK_HERE, _PARENT] + [
            f"[bold blue]{e.name}/[/bold blue]" if e.is_dir else f"{e.name} [dim]{format_size(e.size)}[/dim]"
            for e in listing.entries
        ]
        picked = prompts.choose(f"{browser.side.value}: {listing.path}", options)
        if picked is None:
            return None
        if picked == 0:
            return listing.path, True
        if picked == 1:
            listing = browser.open_at(browser.parent(listing.path), only_dirs=not pick_files)
            continue

        entry = listing.entries[picked - 2]
        if not entry.is_dir:
            return entry.path, False
        listing = browser.open_at(entry.path, only_dirs=not pick_files)
