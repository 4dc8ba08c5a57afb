"""
Rich-based user prompts
"""
from typing import List, Optional, Sequence

from rich.console import Console
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.table import Table

from ...core.interfaces import PromptProvider
from ...core.logging import get_stdout_console


class RichPromptProvider(PromptProvider):
    """Rich-based prompt provider"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or get_stdout_console()

    def prompt(self, message: str, default: Optional[str] = None, password: bool = False) -> str:
        """Prompt user for input"""
        return Prompt.ask(message, password=password, default=default, console=self.console)

    def confirm(self, message: str, default: bool = False) -> bool:
        """Prompt user for confirmation"""
        return Confirm.ask(message, default=default, console=self.console)

    def new_password(self, message: str = "New master password") -> str:
        """Ask twice until both entries match and are non-empty"""
        while True:
            first = Prompt.ask(message, password=True, console=self.console)
            if not first:
                self.error("Password must not be empty")
                continue
            second = Prompt.ask("Repeat password", password=True, console=self.console)
            if first == second:
                return first
            self.error("Passwords do not match")

    def choose(self, title: str, options: Sequence[str], allow_back: bool = True) -> Optional[int]:
        """
        Numbered menu.

        Returns:
            Index of the chosen option, or None for "back"
        """
        table = Table(title=title, show_header=False, box=None)
        table.add_column("#", style="cyan", justify="right")
        table.add_column("Option")
        if allow_back:
            table.add_row("0", "[dim].. back[/dim]")
        for i, option in enumerate(options, start=1):
            table.add_row(str(i), option)
        self.console.print(table)

        choices: List[str] = [str(i) for i in range(0 if allow_back else 1, len(options) + 1)]
        picked = IntPrompt.ask("Select", choices=choices, show_choices=False, console=self.console)
        return None if picked == 0 else picked - 1

    def info(self, message: str) -> None:
        """Display info message"""
        self.console.print(f"[cyan]ℹ[/cyan] {message}")

    def success(self, message: str) -> None:
        """Display success message"""
        self.console.print(f"[green]✓[/green] {message}")

    def warning(self, message: str) -> None:
        """Display warning message"""
        self.console.print(f"[yellow]⚠[/yellow] {message}")

    def error(self, message: str) -> None:
        """Display error message"""
        self.console.print(f"[red]✗[/red] {message}")
