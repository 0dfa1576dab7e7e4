"""Shared console output, selection prompts, and logging setup."""

from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Confirm, Prompt

# ---------------------------------------------------------------------------
# Console singletons
# ---------------------------------------------------------------------------

console = Console()
err_console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(verbose: bool = False) -> None:
    """Route the ``sshed`` loggers through Rich on stderr."""
    level = logging.DEBUG if verbose else logging.WARNING
    root = logging.getLogger("sshed")
    root.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=err_console, show_path=False, show_time=verbose)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
    for handler in root.handlers:
        handler.setLevel(level)


# ---------------------------------------------------------------------------
# Fuzzy / substring matcher
# ---------------------------------------------------------------------------


def fuzzy_match(query: str, candidates: list[str]) -> list[tuple[int, str]]:
    """Return (index, candidate) pairs where *query* is a case-insensitive subsequence.

    Results are sorted: exact prefix matches first, then subsequence matches.
    """
    q = query.lower()
    prefix_matches: list[tuple[int, str]] = []
    subseq_matches: list[tuple[int, str]] = []

    for idx, candidate in enumerate(candidates):
        c = candidate.lower()
        if c.startswith(q):
            prefix_matches.append((idx, candidate))
        elif q in c or _is_subsequence(q, c):
            subseq_matches.append((idx, candidate))

    return prefix_matches + subseq_matches


def _is_subsequence(needle: str, haystack: str) -> bool:
    it = iter(haystack)
    return all(ch in it for ch in needle)


# ---------------------------------------------------------------------------
# Selection prompts
# ---------------------------------------------------------------------------


def select_with_filter(items: list[str], title: str = "Select") -> int | None:
    """Present a filterable numbered list and return the selected index.

    Typing a number selects directly; typing text filters the list; an empty
    answer cancels and returns None.
    """
    if not items:
        err_console.print("[red]No hosts to choose from.[/red]")
        return None

    filtered = list(enumerate(items))

    while True:
        console.print()
        console.rule(f"[bold cyan]{title}[/bold cyan]")
        for display_num, (_, label) in enumerate(filtered, start=1):
            console.print(f"  [bold green]{display_num:>3}[/bold green]  {escape(label)}")
        console.print("\n  [dim]empty=cancel  text=filter  /=clear filter[/dim]")

        choice = Prompt.ask("  [bold]>[/bold]", default="").strip()

        if choice == "":
            return None

        if choice == "/":
            filtered = list(enumerate(items))
            continue

        if choice.isdigit():
            num = int(choice)
            if 1 <= num <= len(filtered):
                return filtered[num - 1][0]
            err_console.print(f"[red]Invalid number. Choose 1-{len(filtered)}.[/red]")
            continue

        matches = fuzzy_match(choice, items)
        if matches:
            filtered = matches
        else:
            err_console.print("[yellow]No matches. Showing all.[/yellow]")
            filtered = list(enumerate(items))


def select_many(items: list[str], title: str = "Select") -> list[int]:
    """Pick several entries by number, comma or space separated."""
    if not items:
        err_console.print("[red]No hosts to choose from.[/red]")
        return []

    console.print()
    console.rule(f"[bold cyan]{title}[/bold cyan]")
    for num, label in enumerate(items, start=1):
        console.print(f"  [bold green]{num:>3}[/bold green]  {escape(label)}")

    while True:
        raw = Prompt.ask("  [bold]numbers[/bold] (e.g. 1,3)", default="")
        picks = raw.replace(",", " ").split()
        if all(p.isdigit() and 1 <= int(p) <= len(items) for p in picks):
            return sorted({int(p) - 1 for p in picks})
        err_console.print(f"[red]Choose numbers between 1 and {len(items)}.[/red]")


def confirm_action(message: str, *, default: bool = False) -> bool:
    """Ask the user to confirm an action."""
    return Confirm.ask(f"  [bold yellow]{message}[/bold yellow]", default=default)


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def print_command_preview(command_line: str) -> None:
    """Show the command that is about to be executed in dim style."""
    console.print(f"\n  [dim]$ {escape(command_line)}[/dim]\n")


def print_error(msg: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[bold red]Error:[/bold red] {escape(msg)}")


def print_success(msg: str) -> None:
    console.print(f"[bold green]✓[/bold green] {escape(msg)}")


def print_info(msg: str) -> None:
    console.print(f"[bold blue]ℹ[/bold blue] {escape(msg)}")


def is_interactive() -> bool:
    return sys.stdin.isatty()
