"""SSH / SCP command assembly.

Turns an alias into a ready-to-run local command line: resolves the host and
(at most one) jump host from the SSH config, pulls passwords and inline key
material from the keychain, and quotes every dynamic token for ``sh -c``.
Passwords are fed through ``sshpass``; a password-protected jump host is
reached through a ProxyCommand relay, any other jump host through native
ProxyJump addressing.
"""

from __future__ import annotations

import getpass
import logging
import os
import posixpath
import shlex
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sshed.config import Settings
from sshed.errors import ConfigError, NotFoundError, StorageError
from sshed.keychain import Keychain
from sshed.sshconfig import Host, SSHConfig

logger = logging.getLogger(__name__)

MASK = "******"


def quote_path(path: str, *, remote: bool = False) -> str:
    """Normalize *path* and single-quote it for a POSIX shell.

    A result starting with ``-`` gets an explicit ``./`` prefix so the invoked
    program can never read it as an option.
    """
    clean = posixpath.normpath(path) if remote else os.path.normpath(path)
    if clean.startswith("-"):
        clean = "./" + clean
    return "'" + clean.replace("'", "'\"'\"'") + "'"


def _pct(token: str) -> str:
    """Escape ssh's %-token expansion inside a ProxyCommand."""
    return token.replace("%", "%%")


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Invocation:
    """A composed command line plus a secret-free rendering for display."""

    command_line: str
    display: str
    identity_file: str | None = None

    @property
    def argv(self) -> list[str]:
        if os.name == "nt":
            return ["cmd", "/C", self.command_line]
        return ["sh", "-c", self.command_line]


@dataclass(frozen=True, slots=True)
class _Jump:
    host: Host
    user: str
    password: str


@dataclass(frozen=True, slots=True)
class _Target:
    host: Host
    user: str
    password: str
    identity_file: str | None
    jump: _Jump | None


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class CommandBuilder:
    """Build ssh/scp invocations for aliases declared in *registry*."""

    def __init__(self, registry: SSHConfig, keychain: Keychain, settings: Settings) -> None:
        self.registry = registry
        self.keychain = keychain
        self.settings = settings

    # ---------- resolution ----------

    @staticmethod
    def _effective_user(host: Host) -> str:
        if host.user:
            return host.user
        try:
            return getpass.getuser()
        except (OSError, KeyError) as exc:
            raise ConfigError(f"Cannot determine the local user for {host.alias}: {exc}") from exc

    def _password_for(self, alias: str) -> str:
        record = self.keychain.find(alias)
        return record.password if record else ""

    @contextmanager
    def _resolve(self, alias: str) -> Iterator[_Target]:
        host = self.registry.get(alias)
        if host is None:
            raise NotFoundError("host not found")

        jump: _Jump | None = None
        if host.jump_host:
            jump_host = self.registry.get(host.jump_host)
            if jump_host is None:
                raise NotFoundError("jumphost not found")
            jump = _Jump(
                host=jump_host,
                user=self._effective_user(jump_host),
                password=self._password_for(jump_host.alias),
            )

        record = self.keychain.find(alias)
        password = record.password if record else ""

        if host.identity_file or not (record and record.private_key):
            yield _Target(host, self._effective_user(host), password, host.identity_file, jump)
            return

        try:
            fd, key_path = tempfile.mkstemp(prefix="sshed-key-")
        except OSError as exc:
            raise StorageError(f"Cannot create a temporary key file for {alias}: {exc}") from exc
        try:
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(record.private_key)
                    if not record.private_key.endswith("\n"):
                        fh.write("\n")
            except OSError as exc:
                raise StorageError(f"Cannot write temporary key file {key_path}: {exc}") from exc
            logger.debug("Materialized inline key for %s at %s", alias, key_path)
            yield _Target(host, self._effective_user(host), password, key_path, jump)
        finally:
            try:
                os.unlink(key_path)
            except FileNotFoundError:
                pass
            logger.debug("Removed temporary key %s", key_path)

    # ---------- shared pieces ----------

    def _sshpass(self, password: str, *, mask: bool) -> list[str]:
        if not password:
            return []
        secret = MASK if mask else shlex.quote(password)
        return [shlex.quote(self.settings.sshpass_path), "-p", secret]

    def _config_args(self) -> list[str]:
        if self.registry.path.exists():
            return ["-F", quote_path(str(self.registry.path))]
        return []

    def _relay_option(self, jump: _Jump, *, mask: bool) -> str:
        """``ProxyCommand=...`` feeding the jump host's password via sshpass."""
        host = jump.host
        secret = MASK if mask else shlex.quote(_pct(jump.password))
        inner = [shlex.quote(_pct(self.settings.sshpass_path)), "-p", secret]
        inner += [shlex.quote(_pct(self.settings.ssh_path)), "-W", "%h:%p"]
        if host.port:
            inner += ["-p", shlex.quote(_pct(host.port))]
        if host.identity_file:
            inner += ["-i", _pct(quote_path(host.identity_file))]
        inner.append(shlex.quote(_pct(f"{jump.user}@{host.address}")))
        return "ProxyCommand=" + " ".join(inner)

    def _jump_args(self, target: _Target, *, native: list[str], mask: bool) -> list[str]:
        jump = target.jump
        if jump is None:
            return []
        if jump.password:
            return ["-o", shlex.quote(self._relay_option(jump, mask=mask))]
        return native

    @staticmethod
    def _option_args(host: Host) -> list[str]:
        args: list[str] = []
        for key, value in host.options.items():
            args += ["-o", shlex.quote(f"{key}={value}")]
        return args

    @staticmethod
    def _finish(compose: Callable[[bool], list[str]], identity_file: str | None) -> Invocation:
        line = " ".join(compose(False))
        display = " ".join(compose(True))
        logger.debug("Built command: %s", display)
        return Invocation(command_line=line, display=display, identity_file=identity_file)

    # ---------- ssh ----------

    @contextmanager
    def ssh(
        self,
        alias: str,
        command: str | None = None,
        *,
        verbose: bool = False,
    ) -> Iterator[Invocation]:
        """Yield the ssh invocation for *alias*; temp key files live until exit."""
        with self._resolve(alias) as target:
            host = target.host

            def compose(mask: bool) -> list[str]:
                args = self._sshpass(target.password, mask=mask)
                args += [shlex.quote(self.settings.ssh_path), *self._config_args()]
                if host.port:
                    args += ["-p", shlex.quote(host.port)]
                if target.identity_file:
                    args += ["-i", quote_path(target.identity_file)]
                args += self._jump_args(
                    target, native=["-J", shlex.quote(host.jump_host)], mask=mask
                )
                args += self._option_args(host)
                if verbose:
                    args.append("-v")
                args.append(shlex.quote(f"{target.user}@{host.address}"))
                if command:
                    args.append(shlex.quote(command))
                return args

            yield self._finish(compose, target.identity_file)

    # ---------- scp ----------

    @contextmanager
    def transfer(
        self,
        alias: str,
        source: str,
        destination: str,
        *,
        upload: bool,
        recursive: bool = False,
    ) -> Iterator[Invocation]:
        """Yield the scp invocation copying *source* to *destination*.

        With ``upload`` the source is local and the destination remote;
        otherwise the other way round.
        """
        if upload and not os.path.exists(os.path.normpath(source)):
            raise NotFoundError("source file does not exist")

        with self._resolve(alias) as target:
            host = target.host
            remote_prefix = shlex.quote(f"{target.user}@{host.address}") + ":"
            if upload:
                src = quote_path(source)
                dst = remote_prefix + quote_path(destination, remote=True)
            else:
                src = remote_prefix + quote_path(source, remote=True)
                dst = quote_path(destination)

            def compose(mask: bool) -> list[str]:
                args = self._sshpass(target.password, mask=mask)
                args += [shlex.quote(self.settings.scp_path), *self._config_args()]
                if recursive:
                    args.append("-r")
                if host.port:
                    args += ["-P", shlex.quote(host.port)]
                if target.identity_file:
                    args += ["-i", quote_path(target.identity_file)]
                args += self._jump_args(
                    target,
                    native=["-o", shlex.quote(f"ProxyJump={host.jump_host}")],
                    mask=mask,
                )
                args += self._option_args(host)
                args += [src, dst]
                return args

            yield self._finish(compose, target.identity_file)
