"""Tests for sshed.command."""

from __future__ import annotations

import os
import shlex
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from sshed.command import MASK, CommandBuilder, quote_path
from sshed.config import Settings
from sshed.errors import NotFoundError
from sshed.executor import run_capture
from sshed.keychain import Keychain, Record
from sshed.sshconfig import Host, SSHConfig

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="runs sh -c")

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

HOSTS = textwrap.dedent("""\
    Host target
        HostName target.example.com
        User alice
        Port 2200
        ProxyJump jump

    Host jump
        HostName jump.example.com
        User bob

    Host lonely
        HostName lonely.example.com
        ProxyJump ghost

    Host plain
        HostName plain.example.com
        User carol
        ServerAliveInterval 30

    Host keyed
        HostName keyed.example.com
        User dave
        IdentityFile /keys/keyed
""")

ARGS_SCRIPT = "#!/bin/sh\nfor arg in \"$@\"; do printf '%s\\n' \"$arg\"; done\n"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    config = tmp_path / "config"
    config.write_text(HOSTS)
    return Settings(
        keychain=tmp_path / "keychain",
        config=config,
        backup_dir=tmp_path / "backup",
    )


@pytest.fixture()
def keychain(settings: Settings) -> Keychain:
    return Keychain.open(settings.keychain)


@pytest.fixture()
def builder(settings: Settings, keychain: Keychain) -> CommandBuilder:
    return CommandBuilder(SSHConfig.parse(settings.config), keychain, settings)


@pytest.fixture()
def args_script(tmp_path: Path) -> Path:
    script = tmp_path / "bin" / "print-args"
    script.parent.mkdir()
    script.write_text(ARGS_SCRIPT)
    script.chmod(0o755)
    return script


def _option_value(line: str, prefix: str) -> str:
    tokens = shlex.split(line)
    for i, token in enumerate(tokens):
        if token == "-o" and tokens[i + 1].startswith(prefix):
            return tokens[i + 1][len(prefix):]
    raise AssertionError(f"no -o {prefix} in {line}")


# ---------------------------------------------------------------------------
# Tests: quoting
# ---------------------------------------------------------------------------


class TestQuotePath:
    def test_plain(self):
        assert quote_path("/tmp/file", remote=True) == "'/tmp/file'"

    def test_normalizes(self):
        assert quote_path("a/../b//c/./d", remote=True) == "'b/c/d'"

    def test_dash_prefixed(self):
        assert quote_path("-rf /", remote=True) == "'./-rf '"

    def test_single_quote(self):
        assert quote_path("it's", remote=True) == "'it'\"'\"'s'"
        assert shlex.split(quote_path("it's", remote=True)) == ["it's"]


# ---------------------------------------------------------------------------
# Tests: ssh
# ---------------------------------------------------------------------------


class TestSSH:
    def test_unknown_host(self, builder: CommandBuilder):
        with pytest.raises(NotFoundError, match="host not found"):
            with builder.ssh("nope"):
                pytest.fail("nothing should be built")

    def test_unknown_jump_host(self, builder: CommandBuilder):
        with pytest.raises(NotFoundError, match="jumphost not found"):
            with builder.ssh("lonely"):
                pytest.fail("nothing should be built")

    def test_basic_shape(self, builder: CommandBuilder, settings: Settings):
        with builder.ssh("plain") as inv:
            tokens = shlex.split(inv.command_line)
        assert tokens == [
            "ssh", "-F", str(settings.config), "-p", "22",
            "-o", "ServerAliveInterval=30", "carol@plain.example.com",
        ]
        assert inv.argv[-1] == inv.command_line

    def test_no_config_flag_without_file(self, settings: Settings, keychain: Keychain, tmp_path: Path):
        registry = SSHConfig.from_text(HOSTS, path=tmp_path / "absent")
        builder = CommandBuilder(registry, keychain, settings)
        with builder.ssh("target") as inv:
            tokens = shlex.split(inv.command_line)
        assert "-F" not in tokens
        assert tokens[tokens.index("-J") + 1] == "jump"

    def test_native_proxy_jump(self, builder: CommandBuilder):
        with builder.ssh("target") as inv:
            tokens = shlex.split(inv.command_line)
        assert tokens[tokens.index("-J") + 1] == "jump"
        assert "sshpass" not in inv.command_line
        assert "ProxyCommand" not in inv.command_line

    def test_relay_for_password_jump_host(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("jump", Record(password="s3cret"))
        with builder.ssh("target") as inv:
            relay = _option_value(inv.command_line, "ProxyCommand=")
        assert "-J" not in shlex.split(inv.command_line)
        assert shlex.split(relay) == [
            "sshpass", "-p", "s3cret", "ssh", "-W", "%h:%p", "-p", "22", "bob@jump.example.com",
        ]

    def test_relay_escapes_percent(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("jump", Record(password="50%off"))
        with builder.ssh("target") as inv:
            relay = _option_value(inv.command_line, "ProxyCommand=")
        assert "50%%off" in relay

    def test_target_password_prefix(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("plain", Record(password="it's secret"))
        with builder.ssh("plain") as inv:
            tokens = shlex.split(inv.command_line)
        assert tokens[:4] == ["sshpass", "-p", "it's secret", "ssh"]

    def test_display_masks_secrets(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("target", Record(password="outer-pw"))
        keychain.put("jump", Record(password="inner-pw"))
        with builder.ssh("target") as inv:
            assert "outer-pw" in inv.command_line
            assert "inner-pw" in inv.command_line
            assert "outer-pw" not in inv.display
            assert "inner-pw" not in inv.display
            assert inv.display.count(MASK) == 2

    def test_active_user_when_empty(self, builder: CommandBuilder, monkeypatch):
        monkeypatch.setattr("sshed.command.getpass.getuser", lambda: "localuser")
        builder.registry.add(Host(alias="anon", hostname="anon.example.com"))
        with builder.ssh("anon") as inv:
            assert shlex.split(inv.command_line)[-1] == "localuser@anon.example.com"

    def test_remote_command_is_one_argument(self, builder: CommandBuilder):
        with builder.ssh("plain", "uptime && df -h; echo 'x'", verbose=True) as inv:
            tokens = shlex.split(inv.command_line)
        assert tokens[-1] == "uptime && df -h; echo 'x'"
        assert tokens[-2] == "carol@plain.example.com"
        assert "-v" in tokens

    def test_identity_file_path(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("keyed", Record(private_key="INLINE"))
        with builder.ssh("keyed") as inv:
            tokens = shlex.split(inv.command_line)
        assert tokens[tokens.index("-i") + 1] == "/keys/keyed"
        assert inv.identity_file == "/keys/keyed"


class TestInlineKey:
    @posix_only
    def test_materialized_owner_only_and_removed(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("plain", Record(private_key="-----BEGIN KEY-----\nabc"))
        with builder.ssh("plain") as inv:
            key_path = inv.identity_file
            assert key_path is not None
            assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
            assert Path(key_path).read_text() == "-----BEGIN KEY-----\nabc\n"
            tokens = shlex.split(inv.command_line)
            assert tokens[tokens.index("-i") + 1] == key_path
        assert not os.path.exists(key_path)

    def test_removed_on_failure(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("plain", Record(private_key="KEY\n"))
        seen: list[str] = []
        with pytest.raises(RuntimeError):
            with builder.ssh("plain") as inv:
                seen.append(inv.identity_file)
                raise RuntimeError("subprocess blew up")
        assert seen and not os.path.exists(seen[0])

    def test_not_created_when_jump_missing(self, builder: CommandBuilder, keychain: Keychain, monkeypatch):
        keychain.put("lonely", Record(private_key="KEY\n"))

        def no_temp_files(*args, **kwargs):
            raise AssertionError("temporary key created")

        monkeypatch.setattr("sshed.command.tempfile.mkstemp", no_temp_files)
        with pytest.raises(NotFoundError):
            with builder.ssh("lonely"):
                pass


# ---------------------------------------------------------------------------
# Tests: transfer
# ---------------------------------------------------------------------------


class TestTransfer:
    def test_missing_upload_source(self, builder: CommandBuilder, tmp_path: Path):
        with pytest.raises(NotFoundError, match="source file does not exist"):
            with builder.transfer("plain", str(tmp_path / "absent"), "/srv", upload=True):
                pass

    def test_upload_shape(self, builder: CommandBuilder, tmp_path: Path):
        src = tmp_path / "report.txt"
        src.write_text("data")
        with builder.transfer("target", str(src), "/srv/in", upload=True, recursive=True) as inv:
            tokens = shlex.split(inv.command_line)
        assert tokens[0] == "scp"
        assert "-r" in tokens
        assert tokens[tokens.index("-P") + 1] == "2200"
        assert _option_value(inv.command_line, "ProxyJump=") == "jump"
        assert tokens[-2:] == [str(src), "alice@target.example.com:/srv/in"]

    def test_download_dash_destination(self, builder: CommandBuilder):
        with builder.transfer("plain", "/var/log/syslog", "-rf /", upload=False) as inv:
            tokens = shlex.split(inv.command_line)
        assert tokens[-1] == "./-rf "
        assert not any(t.startswith("-rf") for t in tokens)

    def test_relay_for_password_jump_host(self, builder: CommandBuilder, keychain: Keychain):
        keychain.put("jump", Record(password="pw"))
        with builder.transfer("target", "/remote", "local", upload=False) as inv:
            relay = _option_value(inv.command_line, "ProxyCommand=")
        assert "ProxyJump" not in inv.command_line
        assert shlex.split(relay)[:3] == ["sshpass", "-p", "pw"]

    @posix_only
    def test_executed_paths_are_literal(
        self, builder: CommandBuilder, settings: Settings, args_script: Path, tmp_path: Path
    ):
        builder.settings = Settings(
            keychain=settings.keychain,
            config=settings.config,
            backup_dir=settings.backup_dir,
            scp_path=str(args_script),
        )
        destination = tmp_path / "it's here"
        with builder.transfer("plain", "/remote/it's $HOME", str(destination), upload=False) as inv:
            code, output = run_capture(inv)
        assert code == 0
        lines = output.splitlines()
        assert lines[-2] == "carol@plain.example.com:/remote/it's $HOME"
        assert lines[-1] == str(destination)

    @posix_only
    def test_executed_dash_path_is_not_a_flag(
        self, builder: CommandBuilder, settings: Settings, args_script: Path
    ):
        builder.settings = Settings(
            keychain=settings.keychain,
            config=settings.config,
            backup_dir=settings.backup_dir,
            scp_path=str(args_script),
        )
        with builder.transfer("plain", "/etc/hosts", "-rf /", upload=False) as inv:
            code, output = run_capture(inv)
        assert code == 0
        assert output.splitlines()[-1] == "./-rf "
