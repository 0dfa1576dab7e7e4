"""Round-trip parser and writer for OpenSSH client config files.

The file is shared with ``ssh`` itself and with whoever edits it by hand, so
the registry models only a handful of directives (HostName, Port, User,
IdentityFile, ProxyJump) plus a passthrough option bag, and re-emits every line
it did not change byte-for-byte: comments, blank lines, repeated directives,
wildcard/multi-pattern ``Host`` blocks and ``Match`` blocks included.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path

from sshed.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PORT = "22"
DEFAULT_INDENT = "    "

# lowercased directive -> Host attribute
MODELED_DIRECTIVES: dict[str, str] = {
    "hostname": "hostname",
    "port": "port",
    "user": "user",
    "identityfile": "identity_file",
    "proxyjump": "jump_host",
}

# spelling used when a modeled directive is written for the first time
_CANONICAL_NAMES: dict[str, str] = {
    "hostname": "HostName",
    "port": "Port",
    "user": "User",
    "identityfile": "IdentityFile",
    "proxyjump": "ProxyJump",
}

_DIRECTIVE_RE = re.compile(r"^(?P<indent>\s*)(?P<key>[^\s=]+)(?:\s*=\s*|\s+)(?P<value>.*?)\s*$")
_WILDCARD_CHARS = set("*?!")


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Host:
    """One ``Host <alias>`` block of the SSH config."""

    alias: str
    hostname: str = ""
    port: str = DEFAULT_PORT
    user: str = ""
    identity_file: str | None = None
    jump_host: str = ""
    options: dict[str, str] = field(default_factory=dict)

    @property
    def address(self) -> str:
        """Network address to connect to; ssh falls back to the alias itself."""
        return self.hostname or self.alias


@dataclass(slots=True)
class _Line:
    raw: str
    kind: str = "raw"  # "raw" | "field" | "option"
    key: str = ""  # lowercased directive name
    name: str = ""  # directive name as spelled in the file
    value: str = ""
    indent: str = ""


@dataclass(slots=True)
class _Block:
    header: str
    lines: list[_Line] = field(default_factory=list)
    host: Host | None = None  # None for blocks the registry does not model
    alias: str = ""  # alias as it appeared in the header
    fresh: bool = False


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _quote(value: str) -> str:
    if any(ch.isspace() for ch in value) and not (value.startswith('"') and value.endswith('"')):
        return f'"{value}"'
    return value


_BLOCK_KEYWORDS = frozenset({"host", "match"})


def _single_line(value: str) -> bool:
    return "\n" not in value and "\r" not in value


def check_option(key: str, value: str) -> None:
    """Raise ValueError unless *key* and *value* form one passthrough directive line."""
    if not key or any(ch.isspace() for ch in key) or "=" in key:
        raise ValueError(f"Invalid option name {key!r}.")
    if key.lower() in _BLOCK_KEYWORDS:
        raise ValueError(f"{key} starts a new block and cannot be a host option.")
    if key.lower() in MODELED_DIRECTIVES:
        raise ValueError(f"{key} is a host field, not an option.")
    if not value.strip() or not _single_line(value):
        raise ValueError(f"Option {key} needs a single-line value.")


def check_host(host: Host) -> None:
    """Raise ValueError if *host* would not read back as the same block."""
    alias = host.alias
    if not alias or any(ch.isspace() for ch in alias) or _WILDCARD_CHARS & set(alias):
        raise ValueError(f"Invalid host alias {alias!r}.")
    for key, attr in MODELED_DIRECTIVES.items():
        value = getattr(host, attr) or ""
        if not _single_line(value):
            raise ValueError(f"{_CANONICAL_NAMES[key]} must be a single line.")
    if host.port and not host.port.isdigit():
        raise ValueError(f"Port must be a number, got {host.port!r}.")
    for key, value in host.options.items():
        check_option(key, value)


def _modeled_alias(patterns: str) -> str | None:
    parts = patterns.split()
    if len(parts) != 1:
        return None
    alias = _unquote(parts[0])
    if not alias or _WILDCARD_CHARS & set(alias):
        return None
    return alias


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SSHConfig:
    """Ordered registry of the hosts declared in one SSH config file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.preamble: list[_Line] = []
        self.warnings: list[ValidationError] = []
        self.keys: set[str] = set()
        self._blocks: list[_Block] = []

    # ---------- parsing ----------

    @classmethod
    def parse(cls, path: Path | str) -> SSHConfig:
        """Read *path* into a registry. A missing file yields an empty registry."""
        config = cls(Path(path).expanduser())
        try:
            text = config.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("SSH config %s does not exist yet", config.path)
            return config
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageError(f"Cannot read SSH config {config.path}: {exc}") from exc

        config._parse_text(text)
        config._refresh_keys()
        return config

    @classmethod
    def from_text(cls, text: str, path: Path | str = "config") -> SSHConfig:
        config = cls(Path(path))
        config._parse_text(text)
        config._refresh_keys()
        return config

    def _warn(self, message: str, lineno: int, line: str) -> None:
        warning = ValidationError(message, lineno=lineno, line=line)
        self.warnings.append(warning)
        logger.warning("%s: %s (skipped)", self.path, warning)

    def _parse_text(self, text: str) -> None:
        block: _Block | None = None
        seen_aliases: set[str] = set()
        # lowercased keys already bound in the current modeled block
        bound: set[str] = set()
        values: dict[str, str] = {}
        options: dict[str, str] = {}

        def finish() -> None:
            if block is not None and block.alias and block.host is None:
                block.host = Host(alias=block.alias, options=dict(options), **values)

        for lineno, raw in enumerate(text.splitlines(), start=1):
            stripped = raw.strip()
            if not stripped or stripped.startswith("#"):
                (block.lines if block else self.preamble).append(_Line(raw))
                continue

            match = _DIRECTIVE_RE.match(raw)
            if match is None or not match.group("value"):
                self._warn(f"directive '{stripped}' has no value", lineno, raw)
                continue

            name = match.group("key")
            key = name.lower()
            value = match.group("value")

            if key in ("host", "match"):
                finish()
                block = _Block(header=raw)
                bound, values, options = set(), {}, {}
                alias = _modeled_alias(value) if key == "host" else None
                if alias is not None and alias in seen_aliases:
                    self._warn(f"duplicate Host '{alias}' is preserved but ignored", lineno, raw)
                elif alias is not None:
                    seen_aliases.add(alias)
                    block.alias = alias
                self._blocks.append(block)
                continue

            line = _Line(raw, key=key, name=name, value=value, indent=match.group("indent"))

            if block is None or not block.alias:
                (block.lines if block else self.preamble).append(line)
                continue

            if key in bound:
                block.lines.append(line)
                continue

            if key in MODELED_DIRECTIVES:
                if key == "port" and not value.isdigit():
                    self._warn(f"invalid port '{value}'", lineno, raw)
                    continue
                line.kind = "field"
                values[MODELED_DIRECTIVES[key]] = _unquote(value)
            else:
                line.kind = "option"
                options[name] = value
            bound.add(key)
            block.lines.append(line)

        finish()

    # ---------- lookup ----------

    def _find(self, alias: str) -> _Block | None:
        for block in self._blocks:
            if block.host is not None and block.host.alias == alias:
                return block
        return None

    def get(self, alias: str) -> Host | None:
        """Exact-match lookup. Returns None when the alias is not declared."""
        block = self._find(alias)
        if block is None or block.host is None:
            return None
        return replace(block.host, options=dict(block.host.options))

    def get_all(self) -> dict[str, Host]:
        """Alias -> Host for every modeled host, in file order."""
        return {
            b.host.alias: replace(b.host, options=dict(b.host.options))
            for b in self._blocks
            if b.host is not None
        }

    @property
    def hosts(self) -> list[str]:
        return [b.host.alias for b in self._blocks if b.host is not None]

    # ---------- mutation ----------

    def add(self, host: Host) -> None:
        """Upsert *host*: replace in place if the alias exists, otherwise append."""
        check_host(host)
        host = replace(host, options=dict(host.options))
        block = self._find(host.alias)
        if block is not None:
            block.host = host
        else:
            self._blocks.append(
                _Block(header=f"Host {host.alias}", host=host, alias=host.alias, fresh=True)
            )
        self._refresh_keys()

    def remove(self, alias: str) -> bool:
        """Drop the block for *alias*. Returns False if it was not declared."""
        block = self._find(alias)
        if block is None:
            return False
        self._blocks.remove(block)
        self._refresh_keys()
        return True

    def _refresh_keys(self) -> None:
        self.keys = {
            b.host.identity_file
            for b in self._blocks
            if b.host is not None and b.host.identity_file
        }

    # ---------- serialization ----------

    def render(self) -> str:
        out: list[str] = [line.raw for line in self.preamble]
        for block in self._blocks:
            if block.fresh and out and out[-1].strip():
                out.append("")
            if block.host is None:
                out.append(block.header)
                out.extend(line.raw for line in block.lines)
            else:
                out.extend(self._render_host_block(block, block.host))
        return "\n".join(out) + "\n" if out else ""

    @staticmethod
    def _render_host_block(block: _Block, host: Host) -> list[str]:
        directives = [ln for ln in block.lines if ln.kind != "raw" or ln.key]
        indent = directives[0].indent if directives else DEFAULT_INDENT
        field_values = {key: getattr(host, attr) or "" for key, attr in MODELED_DIRECTIVES.items()}
        option_keys = {name.lower(): name for name in host.options}
        emitted: set[str] = set()

        body: list[str] = []
        last_directive = -1
        for line in block.lines:
            if line.kind == "field":
                new = field_values[line.key]
                emitted.add(line.key)
                if not new:
                    continue
                if new == _unquote(line.value):
                    body.append(line.raw)
                else:
                    body.append(f"{line.indent}{line.name} {_quote(new)}")
            elif line.kind == "option":
                name = option_keys.get(line.key)
                emitted.add(line.key)
                if name is None:
                    continue
                new = host.options[name]
                if new == line.value:
                    body.append(line.raw)
                else:
                    body.append(f"{line.indent}{line.name} {new}")
            else:
                body.append(line.raw)
            if line.key:
                last_directive = len(body) - 1

        added: list[str] = []
        for key in ("hostname", "user", "port", "identityfile", "proxyjump"):
            value = field_values[key]
            if key in emitted or not value or (key == "port" and value == DEFAULT_PORT):
                continue
            added.append(f"{indent}{_CANONICAL_NAMES[key]} {_quote(value)}")
        for lowered, name in option_keys.items():
            if lowered not in emitted and lowered not in MODELED_DIRECTIVES:
                added.append(f"{indent}{name} {host.options[name]}")

        body[last_directive + 1:last_directive + 1] = added
        header = block.header if block.alias == host.alias else f"Host {host.alias}"
        return [header, *body]

    def save(self) -> None:
        """Write the registry back to its path via temp file + atomic rename."""
        data = self.render()
        directory = self.path.parent
        try:
            mode = stat.S_IMODE(self.path.stat().st_mode)
        except FileNotFoundError:
            mode = 0o644
        except OSError as exc:
            raise StorageError(f"Cannot stat SSH config {self.path}: {exc}") from exc

        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        except OSError as exc:
            raise StorageError(f"Cannot write SSH config {self.path}: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StorageError(f"Cannot write SSH config {self.path}: {exc}") from exc
        logger.debug("Wrote SSH config %s (%d hosts)", self.path, len(self.hosts))
