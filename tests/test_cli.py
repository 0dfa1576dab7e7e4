"""End-to-end runs of the sshed CLI through Typer's CliRunner."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from sshed import __version__
from sshed.cli import app
from sshed.keychain import Keychain
from sshed.sshconfig import SSHConfig

runner = CliRunner()

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="runs sh -c")

# Stands in for ssh: echoes the destination, then exits with $FAKE_EXIT.
FAKE_SSH = textwrap.dedent("""\
    #!/bin/sh
    for arg in "$@"; do
        case "$arg" in
            *@*) echo "connected to $arg" ;;
        esac
    done
    exit "${FAKE_EXIT:-0}"
""")

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def invoke(workdir: Path):
    """Run the CLI against config and keychain files under *workdir*."""

    def _invoke(*args: str, env: dict[str, str] | None = None):
        base = [
            "--config", str(workdir / "ssh_config"),
            "--keychain", str(workdir / "keychain"),
            "--backup-dir", str(workdir / "backups"),
        ]
        run_env = {"SSHED_SETTINGS": str(workdir / "no-settings.yaml")}
        run_env.update(env or {})
        return runner.invoke(app, [*base, *args], env=run_env)

    return _invoke


@pytest.fixture()
def fake_ssh(workdir: Path) -> Path:
    script = workdir / "fake-ssh"
    script.write_text(FAKE_SSH)
    script.chmod(0o755)
    return script


def _add_web(invoke) -> None:
    result = invoke(
        "add", "web",
        "--hostname", "web.example.com",
        "--port", "2222",
        "--user", "deploy",
        "-o", "ForwardAgent=yes",
        "--password", "pw",
    )
    assert result.exit_code == 0, result.output


# ---------------------------------------------------------------------------
# Tests: global options
# ---------------------------------------------------------------------------


class TestGlobal:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_config_shows_resolved_paths(self, invoke, workdir: Path):
        result = invoke("--ssh-path", "/opt/ssh", "config")
        assert result.exit_code == 0
        assert "/opt/ssh" in result.output
        assert "sshpass" in result.output

    def test_invalid_settings_file(self, invoke, workdir: Path):
        bad = workdir / "settings.yaml"
        bad.write_text("- not\n- a mapping\n")
        result = invoke("list", env={"SSHED_SETTINGS": str(bad)})
        assert result.exit_code == 1
        assert "mapping" in result.output


# ---------------------------------------------------------------------------
# Tests: add / list / show / remove
# ---------------------------------------------------------------------------


class TestHosts:
    def test_list_empty(self, invoke):
        result = invoke("list")
        assert result.exit_code == 0
        assert "No hosts" in result.output

    def test_add_creates_keychain_and_host(self, invoke, workdir: Path):
        _add_web(invoke)

        host = SSHConfig.parse(workdir / "ssh_config").get("web")
        assert host.hostname == "web.example.com"
        assert host.port == "2222"
        assert host.user == "deploy"
        assert host.options == {"ForwardAgent": "yes"}
        assert Keychain.open(workdir / "keychain").get("web").password == "pw"

    def test_first_run_announces_keychain(self, invoke):
        result = invoke("add", "a", "--hostname", "a.example.com")
        assert result.exit_code == 0
        assert "Creating keychain" in result.output

    def test_list_and_show(self, invoke):
        _add_web(invoke)

        listed = invoke("list")
        assert listed.exit_code == 0
        assert "web" in listed.output
        assert "web.example.com" in listed.output

        shown = invoke("show", "web")
        assert shown.exit_code == 0
        assert "2222" in shown.output
        assert "stored" in shown.output
        assert "ForwardAgent" in shown.output

    def test_show_unknown(self, invoke):
        result = invoke("show", "ghost")
        assert result.exit_code == 1
        assert "host not found" in result.output

    def test_add_rejects_bad_port(self, invoke):
        result = invoke("add", "web", "--hostname", "h", "--port", "abc")
        assert result.exit_code == 2

    def test_add_rejects_modeled_option(self, invoke):
        result = invoke("add", "web", "--hostname", "h", "-o", "Port=22")
        assert result.exit_code == 2

    @pytest.mark.parametrize(
        "option",
        ["Host=evil", "Match=all", "ProxyCommand=nc %h %p\nHost evil"],
    )
    def test_add_rejects_block_injection(self, invoke, workdir: Path, option: str):
        result = invoke("add", "x", "--hostname", "h", "-o", option)
        assert result.exit_code == 2
        assert SSHConfig.parse(workdir / "ssh_config").hosts == []
        assert Keychain.open(workdir / "keychain").find("x") is None

    def test_add_rejects_bad_alias(self, invoke, workdir: Path):
        result = invoke("add", "two words", "--hostname", "h", "--password", "pw")
        assert result.exit_code == 2
        assert Keychain.open(workdir / "keychain").find("two words") is None

    def test_add_unreadable_key_file(self, invoke, workdir: Path):
        result = invoke("add", "x", "--hostname", "h", "--key-content-file", str(workdir / "absent"))
        assert result.exit_code == 1
        assert "Cannot read key file" in result.output

    def test_remove(self, invoke, workdir: Path):
        _add_web(invoke)
        result = invoke("remove", "web")
        assert result.exit_code == 0
        assert SSHConfig.parse(workdir / "ssh_config").get("web") is None
        assert Keychain.open(workdir / "keychain").find("web") is None

    def test_remove_unknown(self, invoke):
        result = invoke("rm", "ghost")
        assert result.exit_code == 1
        assert "host not found" in result.output


# ---------------------------------------------------------------------------
# Tests: to / at / transfer
# ---------------------------------------------------------------------------


@posix_only
class TestRemote:
    def test_to_passes_exit_code_through(self, invoke, fake_ssh: Path):
        invoke("add", "a", "--hostname", "a.example.com", "--user", "u")
        result = invoke("--ssh-path", str(fake_ssh), "to", "a", env={"FAKE_EXIT": "7"})
        assert result.exit_code == 7

    def test_at_runs_on_every_host(self, invoke, fake_ssh: Path):
        invoke("add", "a", "--hostname", "a.example.com", "--user", "u")
        invoke("add", "b", "--hostname", "b.example.com", "--user", "u")
        result = invoke("--ssh-path", str(fake_ssh), "at", "a", "b", "-c", "uptime")
        assert result.exit_code == 0, result.output
        assert "connected to u@a.example.com" in result.output
        assert "connected to u@b.example.com" in result.output

    def test_at_reports_missing_host(self, invoke, fake_ssh: Path):
        invoke("add", "a", "--hostname", "a.example.com", "--user", "u")
        result = invoke("--ssh-path", str(fake_ssh), "at", "a", "ghost", "-c", "uptime")
        assert result.exit_code == 1
        assert "connected to u@a.example.com" in result.output
        assert "host not found" in result.output


class TestTransferFlags:
    def test_neither_direction(self, invoke):
        result = invoke("transfer", "web", "src", "dst")
        assert result.exit_code == 2
        assert "--upload or --download" in result.output

    def test_both_directions(self, invoke):
        result = invoke("transfer", "web", "src", "dst", "-u", "-d")
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# Tests: backup / restore
# ---------------------------------------------------------------------------


class TestBackup:
    def test_backup_then_restore(self, invoke, workdir: Path):
        _add_web(invoke)
        result = invoke("backup")
        assert result.exit_code == 0, result.output
        [archive] = (workdir / "backups").glob("sshed_backup_*.tgz")

        invoke("remove", "web")
        result = invoke("restore", str(archive))
        assert result.exit_code == 0, result.output
        assert SSHConfig.parse(workdir / "ssh_config").get("web").hostname == "web.example.com"
        assert (workdir / "ssh_config.bak").exists()

    def test_backup_without_files(self, invoke):
        result = invoke("backup")
        assert result.exit_code == 1

    def test_restore_missing_archive(self, invoke, workdir: Path):
        result = invoke("restore", str(workdir / "nope.tgz"))
        assert result.exit_code == 1
        assert "backup file does not exist" in result.output
