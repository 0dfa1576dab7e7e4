"""Typer CLI application for sshed.

Commands: show, list, add, remove, to, at, transfer, encrypt, config,
backup, restore. Paths and binaries come from ``sshed.config.load_settings``;
the resolved context is built once in the root callback and passed to every
command through ``ctx.obj``.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.panel import Panel
from rich.table import Table

from sshed import __version__
from sshed.backup import create_backup, restore_backup
from sshed.command import CommandBuilder
from sshed.config import ENV_VARS, AppContext, load_settings
from sshed.errors import NotFoundError, SshedError, StorageError
from sshed.executor import run_interactive, run_on_hosts
from sshed.keychain import Record
from sshed.prompts import HostAnswers, ask_host, ask_new_password, ask_password
from sshed.sshconfig import SSHConfig, check_host, check_option
from sshed.utils import (
    confirm_action,
    console,
    is_interactive,
    print_error,
    print_info,
    print_success,
    select_many,
    select_with_filter,
    setup_logging,
)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="sshed",
    help="SSH config editor and hosts manager.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=True,
)

_KEYCHAIN_COMMANDS = {"show", "add", "remove", "rm", "to", "at", "transfer", "encrypt"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _exit_on_error() -> Iterator[None]:
    """Print any sshed error and exit with status 1."""
    try:
        yield
    except SshedError as exc:
        print_error(str(exc))
        raise typer.Exit(1)


def _complete_alias(incomplete: str) -> list[str]:
    try:
        registry = SSHConfig.parse(load_settings().config)
    except SshedError:
        return []
    return [alias for alias in registry.hosts if alias.startswith(incomplete)]


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"sshed [bold]{__version__}[/bold]")
        raise typer.Exit()


def _bootstrap_keychain(app_ctx: AppContext) -> None:
    keychain = app_ctx.keychain
    if not keychain.bootstrapped:
        print_info(f"Creating keychain at {keychain.path}")
        if is_interactive() and confirm_action("Protect keychain with password?"):
            keychain.encrypt_database(ask_new_password())
        return
    if keychain.encrypted and is_interactive():
        keychain.unlock(ask_password())


def _pick_alias(app_ctx: AppContext, alias: str | None) -> str:
    if alias:
        return alias
    options = sorted(app_ctx.registry.hosts)
    if not is_interactive():
        raise NotFoundError("no host alias given")
    idx = select_with_filter(options, title="Choose server")
    if idx is None:
        raise typer.Exit(0)
    return options[idx]


def _builder(app_ctx: AppContext) -> CommandBuilder:
    return CommandBuilder(app_ctx.registry, app_ctx.keychain, app_ctx.settings)


def _read_key_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise StorageError(f"Cannot read key file {path}: {exc}") from exc


def _parse_options(pairs: list[str]) -> dict[str, str]:
    options: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key or not value:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--option")
        try:
            check_option(key, value)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--option") from exc
        options[key] = value
    return options


# ---------------------------------------------------------------------------
# Root callback
# ---------------------------------------------------------------------------


@app.callback()
def main(
    ctx: typer.Context,
    keychain: Annotated[
        Optional[Path], typer.Option("--keychain", help=f"Path to keychain database [{ENV_VARS['keychain']}].")
    ] = None,
    config: Annotated[
        Optional[Path], typer.Option("--config", help=f"Path to SSH config file [{ENV_VARS['config']}].")
    ] = None,
    backup_dir: Annotated[
        Optional[Path], typer.Option("--backup-dir", help=f"Path to backup directory [{ENV_VARS['backup_dir']}].")
    ] = None,
    ssh_path: Annotated[
        Optional[str], typer.Option("--ssh-path", help=f"SSH binary [{ENV_VARS['ssh_path']}].")
    ] = None,
    scp_path: Annotated[
        Optional[str], typer.Option("--scp-path", help=f"SCP binary [{ENV_VARS['scp_path']}].")
    ] = None,
    sshpass_path: Annotated[
        Optional[str], typer.Option("--sshpass-path", help=f"sshpass binary [{ENV_VARS['sshpass_path']}].")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Debug logging.")] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version", "-V", help="Show version and exit.", callback=_version_callback, is_eager=True
        ),
    ] = False,
):
    """SSH config editor and hosts manager."""
    setup_logging(verbose)
    with _exit_on_error():
        settings = load_settings(
            {
                "keychain": keychain,
                "config": config,
                "backup_dir": backup_dir,
                "ssh_path": ssh_path,
                "scp_path": scp_path,
                "sshpass_path": sshpass_path,
            }
        )
        ctx.obj = AppContext(settings=settings)
        if ctx.invoked_subcommand in _KEYCHAIN_COMMANDS:
            _bootstrap_keychain(ctx.obj)


# ---------------------------------------------------------------------------
# sshed show / list
# ---------------------------------------------------------------------------


@app.command("show")
def cmd_show(
    ctx: typer.Context,
    alias: Annotated[
        Optional[str], typer.Argument(help="Host alias.", autocompletion=_complete_alias)
    ] = None,
):
    """Show host details."""
    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        alias = _pick_alias(app_ctx, alias)
        host = app_ctx.registry.get(alias)
        if host is None:
            raise NotFoundError("host not found")
        record = app_ctx.keychain.find(alias) or Record()

    lines = [
        f"[bold]Hostname:[/bold]      {host.address}",
        f"[bold]Port:[/bold]          {host.port}",
        f"[bold]User:[/bold]          {host.user or '[dim]<active user>[/dim]'}",
        f"[bold]Identity file:[/bold] {host.identity_file or '—'}",
        f"[bold]Jump host:[/bold]     {host.jump_host or '—'}",
        f"[bold]Password:[/bold]      {'stored' if record.password else '—'}",
        f"[bold]Inline key:[/bold]    {'stored' if record.private_key else '—'}",
    ]
    for key, value in host.options.items():
        lines.append(f"[bold]{key}:[/bold] {value}")
    console.print(Panel("\n".join(lines), title=f"[bold]{host.alias}[/bold]", border_style="blue"))


@app.command("list")
def cmd_list(ctx: typer.Context):
    """List all hosts in a table."""
    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        hosts = app_ctx.registry.get_all()

    if not hosts:
        print_info(f"No hosts in {app_ctx.settings.config}.")
        raise typer.Exit()

    table = Table(
        title="sshed — hosts",
        show_header=True,
        header_style="bold magenta",
        border_style="bright_blue",
    )
    table.add_column("Alias", style="bold", min_width=10)
    table.add_column("Address", style="cyan", min_width=15)
    table.add_column("Port", justify="right", min_width=5)
    table.add_column("User", min_width=8)
    table.add_column("Jump host", style="green")

    for host in hosts.values():
        table.add_row(host.alias, host.address, host.port, host.user or "—", host.jump_host or "—")

    console.print(table)


app.command("ls", hidden=True)(cmd_list)


# ---------------------------------------------------------------------------
# sshed add / remove
# ---------------------------------------------------------------------------


@app.command("add")
def cmd_add(
    ctx: typer.Context,
    alias: Annotated[
        Optional[str], typer.Argument(help="Host alias to add or edit.", autocompletion=_complete_alias)
    ] = None,
    hostname: Annotated[
        Optional[str], typer.Option("--hostname", help="Hostname; skips the interactive questions.")
    ] = None,
    port: Annotated[str, typer.Option("--port", help="Port.")] = "22",
    user: Annotated[str, typer.Option("--user", help="User; empty means the active user.")] = "",
    identity_file: Annotated[Optional[str], typer.Option("--identity-file", help="Private key path.")] = None,
    jump_host: Annotated[str, typer.Option("--jump-host", help="Alias of the jump host.")] = "",
    option: Annotated[
        Optional[list[str]], typer.Option("--option", "-o", help="Extra SSH option as KEY=VALUE.")
    ] = None,
    password: Annotated[str, typer.Option("--password", help="Password to store in the keychain.")] = "",
    key_content_file: Annotated[
        Optional[Path], typer.Option("--key-content-file", help="Store this private key inline in the keychain.")
    ] = None,
):
    """Add or edit a host."""
    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        registry = app_ctx.registry
        existing = registry.get(alias) if alias else None

        if hostname is not None:
            if not alias:
                raise typer.BadParameter("an alias is required with --hostname", param_hint="ALIAS")
            if not port.isdigit():
                raise typer.BadParameter("port must be a number", param_hint="--port")
            answers = HostAnswers(
                alias=alias,
                hostname=hostname,
                port=port,
                user=user.strip(),
                password=password,
                identity_file=identity_file or None,
                key_content=_read_key_file(key_content_file) if key_content_file else "",
                jump_host=jump_host,
                options=_parse_options(option or []),
            )
        else:
            answers = ask_host(
                alias or "",
                existing,
                aliases=registry.hosts,
                known_keys=sorted(registry.keys),
            )

        host = answers.to_host()
        try:
            check_host(host)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

        app_ctx.keychain.put(answers.alias, answers.to_record())
        registry.add(host)
        registry.save()

    print_success(f"Saved {answers.alias}.")


@app.command("remove")
def cmd_remove(
    ctx: typer.Context,
    alias: Annotated[str, typer.Argument(help="Host alias.", autocompletion=_complete_alias)],
):
    """Remove a host and its keychain record."""
    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        if not app_ctx.registry.remove(alias):
            raise NotFoundError("host not found")
        app_ctx.keychain.remove(alias)
        app_ctx.registry.save()
    print_success(f"Removed {alias}.")


app.command("rm", hidden=True)(cmd_remove)


# ---------------------------------------------------------------------------
# sshed to / at / transfer
# ---------------------------------------------------------------------------


@app.command("to")
def cmd_to(
    ctx: typer.Context,
    alias: Annotated[
        Optional[str], typer.Argument(help="Host alias.", autocompletion=_complete_alias)
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose ssh output.")] = False,
):
    """Connect to a host."""
    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        alias = _pick_alias(app_ctx, alias)
        with _builder(app_ctx).ssh(alias, verbose=verbose) as invocation:
            exit_code = run_interactive(invocation, preview=verbose)
    raise typer.Exit(exit_code)


@app.command("at")
def cmd_at(
    ctx: typer.Context,
    aliases: Annotated[
        Optional[list[str]], typer.Argument(help="Host aliases.", autocompletion=_complete_alias)
    ] = None,
    command: Annotated[Optional[str], typer.Option("--command", "-c", help="Command to run.")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose ssh output.")] = False,
):
    """Execute a command on one or more hosts concurrently."""
    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        if not aliases:
            if not is_interactive():
                raise NotFoundError("no host alias given")
            options = sorted(app_ctx.registry.hosts)
            aliases = [options[i] for i in select_many(options, title="Choose servers")]
        if not command:
            if not is_interactive():
                raise typer.BadParameter("a command is required", param_hint="--command")
            command = typer.prompt("Command")

        results = run_on_hosts(_builder(app_ctx), aliases, command, verbose=verbose)

    failed = 0
    for result in results:
        console.print(f"[bold yellow]{result.alias}:[/bold yellow]")
        if result.output:
            console.print(result.output.rstrip("\n"), highlight=False, markup=False)
        if not result.ok:
            failed += 1
            print_error(f"{result.alias}: {result.error}")
        console.print()

    if failed:
        raise typer.Exit(1)


@app.command("transfer")
def cmd_transfer(
    ctx: typer.Context,
    alias: Annotated[str, typer.Argument(help="Host alias.", autocompletion=_complete_alias)],
    source: Annotated[str, typer.Argument(help="Source path.")],
    destination: Annotated[str, typer.Argument(help="Destination path.")],
    upload: Annotated[bool, typer.Option("--upload", "-u", help="Upload files to the host.")] = False,
    download: Annotated[bool, typer.Option("--download", "-d", help="Download files from the host.")] = False,
    recursive: Annotated[bool, typer.Option("--recursive", "-r", help="Copy directories.")] = False,
):
    """Transfer files to or from a host."""
    if upload == download:
        print_error("specify either --upload or --download")
        raise typer.Exit(2)

    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        host = app_ctx.registry.get(alias)
        if host is not None:
            if upload:
                print_info(f"Uploading {source} to {host.address} in {destination}")
            else:
                print_info(f"Downloading {source} from {host.address} to {destination}")
        with _builder(app_ctx).transfer(
            alias, source, destination, upload=upload, recursive=recursive
        ) as invocation:
            exit_code = run_interactive(invocation)

    if exit_code != 0:
        print_error(f"Transfer exited with code {exit_code}.")
        raise typer.Exit(exit_code)
    print_success("Done!")


# ---------------------------------------------------------------------------
# sshed encrypt / config / backup / restore
# ---------------------------------------------------------------------------


@app.command("encrypt")
def cmd_encrypt(ctx: typer.Context):
    """Protect the keychain with a password."""
    app_ctx: AppContext = ctx.obj
    with _exit_on_error():
        keychain = app_ctx.keychain
        if keychain.encrypted:
            print_info("Keychain is already encrypted.")
            raise typer.Exit()
        keychain.encrypt_database(ask_new_password())
    print_success("Keychain encrypted.")


@app.command("config")
def cmd_config(ctx: typer.Context):
    """Show resolved paths and binaries."""
    settings = ctx.obj.settings
    console.print(Panel(
        f"[bold]SSH config:[/bold]  {settings.config}\n"
        f"[bold]Keychain:[/bold]    {settings.keychain}\n"
        f"[bold]Backup dir:[/bold]  {settings.backup_dir}\n"
        f"[bold]ssh:[/bold]         {settings.ssh_path}\n"
        f"[bold]scp:[/bold]         {settings.scp_path}\n"
        f"[bold]sshpass:[/bold]     {settings.sshpass_path}",
        title="[bold]sshed config[/bold]",
        border_style="blue",
    ))


@app.command("backup")
def cmd_backup(ctx: typer.Context):
    """Back up the SSH config and keychain into a .tgz file."""
    settings = ctx.obj.settings
    with _exit_on_error():
        archive = create_backup(settings.config, settings.keychain, settings.backup_dir)
    print_success(f"Backup written to {archive}")


@app.command("restore")
def cmd_restore(
    ctx: typer.Context,
    archive: Annotated[Path, typer.Argument(help="Backup .tgz file.")],
):
    """Restore the SSH config and keychain from a backup."""
    settings = ctx.obj.settings
    with _exit_on_error():
        restore_backup(archive, settings.config, settings.keychain)
    print_success(f"Restored {settings.config} and {settings.keychain}.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def app_entry() -> None:
    """Console script entry point for ``sshed``."""
    app()
