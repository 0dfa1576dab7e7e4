"""Subprocess runner for built invocations, including the multi-host fan-out.

Wraps subprocess calls to provide consistent UX: command preview, inherited
terminal for interactive sessions, captured output for fan-out workers, and
exit code propagation.
"""

from __future__ import annotations

import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from sshed.command import CommandBuilder, Invocation
from sshed.errors import ExecError, SshedError
from sshed.utils import print_command_preview

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HostResult:
    """Outcome of one fan-out worker."""

    alias: str
    returncode: int | None = None
    output: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


def run_interactive(invocation: Invocation, *, preview: bool = False) -> int:
    """Run an invocation with the caller's stdin/stdout/stderr.

    Used for SSH sessions and transfers. Returns the process exit code.
    """
    if preview:
        print_command_preview(invocation.display)

    logger.debug("Running: %s", invocation.display)
    try:
        result = subprocess.run(invocation.argv, env=os.environ.copy())
    except OSError as exc:
        raise ExecError(f"Cannot start {invocation.argv[0]}: {exc}") from exc
    except KeyboardInterrupt:
        return 130
    return result.returncode


def run_capture(invocation: Invocation, *, timeout: float | None = None) -> tuple[int, str]:
    """Run an invocation and capture stdout and stderr combined.

    Returns (exit_code, combined_output).
    """
    logger.debug("Capturing: %s", invocation.display)
    try:
        result = subprocess.run(
            invocation.argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            env=os.environ.copy(),
        )
    except subprocess.TimeoutExpired as exc:
        raise ExecError(f"Command timed out after {timeout} seconds.", returncode=124) from exc
    except OSError as exc:
        raise ExecError(f"Cannot start {invocation.argv[0]}: {exc}") from exc
    return result.returncode, result.stdout


def _run_one(
    builder: CommandBuilder,
    alias: str,
    command: str,
    verbose: bool,
    timeout: float | None,
) -> HostResult:
    try:
        with builder.ssh(alias, command, verbose=verbose) as invocation:
            returncode, output = run_capture(invocation, timeout=timeout)
    except SshedError as exc:
        logger.debug("Worker for %s failed: %s", alias, exc)
        return HostResult(alias=alias, returncode=getattr(exc, "returncode", None), error=str(exc))
    except OSError as exc:
        logger.debug("Worker for %s failed", alias, exc_info=True)
        return HostResult(alias=alias, error=f"{type(exc).__name__}: {exc}")

    if returncode != 0:
        return HostResult(
            alias=alias,
            returncode=returncode,
            output=output,
            error=f"exited with code {returncode}",
        )
    return HostResult(alias=alias, returncode=returncode, output=output)


def run_on_hosts(
    builder: CommandBuilder,
    aliases: list[str],
    command: str,
    *,
    verbose: bool = False,
    max_workers: int | None = None,
    timeout: float | None = None,
) -> list[HostResult]:
    """Run *command* on every alias concurrently, one worker per alias.

    Failures are attributed to their own alias only. Results come back in the
    order of *aliases* once every worker has finished. A locked or unreadable
    keychain fails the whole call before any worker starts.
    """
    if not aliases:
        return []

    # Decrypt once up front; workers then only read the cached records.
    builder.keychain.aliases()

    workers = max_workers or len(aliases)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sshed-at") as pool:
        futures = [
            pool.submit(_run_one, builder, alias, command, verbose, timeout)
            for alias in aliases
        ]
        return [f.result() for f in futures]
