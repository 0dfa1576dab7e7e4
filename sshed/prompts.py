"""Interactive questions for ``sshed add``.

Everything here talks to the terminal; the values it returns are plain,
already-validated strings that the registry and keychain accept as-is.
"""

from __future__ import annotations

import getpass
from dataclasses import dataclass, field

import typer
from rich.markup import escape
from rich.prompt import Confirm, Prompt

from sshed.keychain import Record
from sshed.sshconfig import Host, check_option
from sshed.utils import console, err_console, select_with_filter

KEY_INPUT = "Input custom path"
KEY_EDITOR = "Paste file contents"
KEY_SKIP = "Leave empty"
KEY_SELECT = "Select known key"


@dataclass(slots=True)
class HostAnswers:
    """Field values collected for one host."""

    alias: str
    hostname: str
    port: str = "22"
    user: str = ""
    password: str = ""
    identity_file: str | None = None
    key_content: str = ""
    jump_host: str = ""
    options: dict[str, str] = field(default_factory=dict)

    def to_host(self) -> Host:
        return Host(
            alias=self.alias,
            hostname=self.hostname,
            port=self.port,
            user=self.user,
            identity_file=self.identity_file,
            jump_host=self.jump_host,
            options=dict(self.options),
        )

    def to_record(self) -> Record:
        return Record(password=self.password, private_key=self.key_content)


def ask_password(message: str = "Please type your password") -> str:
    return Prompt.ask(message, password=True)


def ask_new_password() -> str:
    """Ask twice until both entries match and are non-empty."""
    while True:
        first = Prompt.ask("New keychain password", password=True)
        if not first:
            err_console.print("[red]Password must not be empty.[/red]")
            continue
        if first == Prompt.ask("Repeat password", password=True):
            return first
        err_console.print("[red]Passwords do not match.[/red]")


def _ask_required(message: str, default: str = "") -> str:
    while True:
        value = Prompt.ask(message, default=default or None)
        if value and value.strip():
            return value.strip()
        err_console.print("[red]A value is required.[/red]")


def _ask_port(default: str) -> str:
    while True:
        value = Prompt.ask("Port", default=default or "22").strip()
        if value.isdigit():
            return value
        err_console.print("[red]Port must be a number.[/red]")


def _ask_identity(answers: HostAnswers, existing: Host | None, known_keys: list[str]) -> None:
    current = existing.identity_file if existing else None
    if current and not Confirm.ask("Do you want to change key information?", default=False):
        answers.identity_file = current
        return

    choices = [KEY_INPUT, KEY_EDITOR, KEY_SKIP]
    if known_keys:
        choices.append(KEY_SELECT)
    idx = select_with_filter(choices, title="How do you want to provide key file?")
    choice = choices[idx] if idx is not None else KEY_SKIP

    if choice == KEY_SKIP:
        answers.identity_file = current
    elif choice == KEY_SELECT:
        picked = select_with_filter(known_keys, title="Choose private key")
        answers.identity_file = known_keys[picked] if picked is not None else current
    elif choice == KEY_INPUT:
        path = Prompt.ask("Private key path", default=current or None)
        answers.identity_file = path.strip() if path and path.strip() else None
    else:
        content = typer.edit("")
        answers.key_content = content or ""
        answers.identity_file = None


def _ask_jump_host(answers: HostAnswers, aliases: list[str]) -> None:
    candidates = [a for a in aliases if a != answers.alias]
    if not candidates or not Confirm.ask("Do you want to provide a jumphost?", default=False):
        answers.jump_host = ""
        return
    idx = select_with_filter(candidates, title="Choose jumphost")
    answers.jump_host = candidates[idx] if idx is not None else ""


def _ask_options(answers: HostAnswers) -> None:
    while Confirm.ask("Add additional SSH options?", default=False):
        key = _ask_required("Option")
        value = _ask_required("Value")
        try:
            check_option(key, value)
        except ValueError as exc:
            err_console.print(f"[red]{escape(str(exc))}[/red]")
            continue
        answers.options[key] = value


def ask_host(
    alias: str,
    existing: Host | None,
    *,
    aliases: list[str],
    known_keys: list[str],
) -> HostAnswers:
    """Walk the user through every field of a host entry."""
    console.print()
    console.rule("[bold cyan]Host details[/bold cyan]")

    answers = HostAnswers(
        alias=_ask_required("Alias", alias),
        hostname=_ask_required("Hostname", existing.hostname if existing else "").lower(),
    )
    answers.port = _ask_port(existing.port if existing else "22")
    default_user = existing.user if existing else getpass.getuser()
    console.print("[dim]Enter a single space to leave the user empty (active user is used).[/dim]")
    user = Prompt.ask("User", default=default_user or None)
    answers.user = (user or "").strip()
    answers.password = Prompt.ask("Password (optional)", password=True, default="", show_default=False)

    _ask_identity(answers, existing, known_keys)
    _ask_jump_host(answers, aliases)
    if existing:
        answers.options = dict(existing.options)
    _ask_options(answers)
    return answers
