"""Tests for the koda CLI."""
from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
import yaml
from typer.testing import CliRunner

from conftest import ARCHIVE_URL, build_tarball
from kodactl import __version__
from kodactl.cli import app
from kodactl.providers import ArchiveFetcher

runner = CliRunner()

PNPM_STUB = """#!/bin/sh
case "$1" in
  --version) echo 9.1.0; exit 0 ;;
  install)
    mkdir -p node_modules
    touch node_modules/.installed
    if [ -f .env ]; then echo present >> "{marker}"; else echo absent >> "{marker}"; fi
    exit 0 ;;
esac
exit 1
"""

PM2_STUB = """#!/bin/sh
echo "$@" >> "{log}"
case "$1" in
  --version) echo 5.3.1; exit 0 ;;
  start)
    pwd >> "{log}"
    echo "$4" > "{state}"
    exit 0 ;;
  stop|delete)
    if [ ! -f "{state}" ]; then
      echo "[PM2][ERROR] Process or Namespace $2 not found" >&2
      exit 1
    fi
    if [ "$1" = delete ]; then rm -f "{state}"; fi
    exit 0 ;;
esac
exit 1
"""


def _write_stub(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
    return path


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
    with_pm2: bool = True,
) -> dict[str, str]:
    bin_dir = tmp_path / "bin"
    pnpm = _write_stub(bin_dir / "pnpm", PNPM_STUB.format(marker=tmp_path / "pnpm-env.log"))
    pm2 = bin_dir / "pm2"
    if with_pm2:
        _write_stub(
            pm2,
            PM2_STUB.format(log=tmp_path / "pm2-calls.log", state=tmp_path / "pm2-state"),
        )

    config: dict[str, object] = {
        "install_dir": str(tmp_path / "koda"),
        "logs_dir": str(tmp_path / "logs"),
        "archive_url": ARCHIVE_URL,
        "package_manager": {"bin": str(pnpm)},
        "pm2": {"bin": str(pm2)},
    }
    if config_overrides:
        config.update(config_overrides)

    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"KODACTL_CONFIG_FILE": str(config_path)}


def _serve_archive(
    monkeypatch: pytest.MonkeyPatch,
    payloads: list[bytes],
    *,
    status_code: int = 200,
) -> list[str]:
    """Route archive downloads to an in-memory transport serving *payloads* in turn."""
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if status_code != 200:
            return httpx.Response(status_code)
        index = min(len(requested), len(payloads)) - 1
        return httpx.Response(200, content=payloads[index])

    def fake_client(self: ArchiveFetcher) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            follow_redirects=True,
            transport=httpx.MockTransport(handler),
        )

    monkeypatch.setattr(ArchiveFetcher, "_client", fake_client)
    return requested


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _pm2_calls(tmp_path: Path) -> list[str]:
    log = tmp_path / "pm2-calls.log"
    if not log.exists():
        return []
    return [
        line
        for line in log.read_text(encoding="utf-8").splitlines()
        if not line.startswith("--version")
    ]


def test_version_option() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"kodactl {__version__}" in result.stdout


def test_help_lists_commands(tmp_path: Path) -> None:
    """Running without a command shows the available commands."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, [], env=env)

    assert result.exit_code == 0
    for command in ("setup", "install", "start", "stop", "update", "uninstall", "clear"):
        assert command in result.stdout


def test_install_start_update_cycle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A full install/start/update cycle keeps the env file and one pm2 entry."""
    env = _prepare_environment(tmp_path)
    requested = _serve_archive(
        monkeypatch,
        [
            build_tarball({"main.js": b"// v1\n", "package.json": b"{}\n"}),
            build_tarball({"main.js": b"// v2\n", "package.json": b"{}\n"}),
        ],
    )
    install_dir = tmp_path / "koda"

    result = runner.invoke(app, ["install"], env=env)
    assert result.exit_code == 0, result.stdout
    assert "installed successfully" in result.stdout
    assert (install_dir / "main.js").read_bytes() == b"// v1\n"
    assert (install_dir / "node_modules" / ".installed").exists()

    env_bytes = b"OPENAI_API_KEY=sk-test\nPORT=3000\n"
    (install_dir / ".env").write_bytes(env_bytes)

    result = runner.invoke(app, ["start"], env=env)
    assert result.exit_code == 0, result.stdout
    assert "started successfully" in result.stdout

    result = runner.invoke(app, ["update"], env=env)
    assert result.exit_code == 0, result.stdout
    assert "updated and restarted successfully" in result.stdout

    assert requested == [ARCHIVE_URL, ARCHIVE_URL]
    assert (install_dir / "main.js").read_bytes() == b"// v2\n"
    assert (install_dir / ".env").read_bytes() == env_bytes
    assert (tmp_path / "pnpm-env.log").read_text(encoding="utf-8").split() == [
        "absent",
        "present",
    ]
    assert (tmp_path / "pm2-state").read_text(encoding="utf-8").strip() == "koda-backend"

    calls = _pm2_calls(tmp_path)
    assert calls[0] == "delete koda-backend"
    assert calls[1] == "start main.js --name koda-backend --interpreter node"
    assert calls[2] == str(install_dir)
    assert calls[3:] == [
        "stop koda-backend",
        "delete koda-backend",
        "start main.js --name koda-backend --interpreter node",
        str(install_dir),
    ]

    records = _operations(tmp_path)
    assert [record["command"] for record in records] == ["install", "start", "update"]
    update_result = records[-1]["result"]
    assert isinstance(update_result, dict)
    assert update_result["status"] == "success"
    assert update_result["context"] == {"env_preserved": True}


def test_missing_dependency_exits_before_changes(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A missing pm2 aborts install with a hint to run setup."""
    env = _prepare_environment(tmp_path, with_pm2=False)
    requested = _serve_archive(monkeypatch, [build_tarball({"main.js": b"x"})])

    result = runner.invoke(app, ["install"], env=env)

    assert result.exit_code == 3
    assert "Missing dependencies" in result.stdout
    assert "koda setup" in result.stdout
    assert requested == []
    assert not (tmp_path / "koda").exists()

    (record,) = _operations(tmp_path)
    record_result = record["result"]
    assert isinstance(record_result, dict)
    assert record_result["status"] == "error"
    assert record_result["errors"] == [f"missing:{tmp_path / 'bin' / 'pm2'}"]


def test_start_requires_install(tmp_path: Path) -> None:
    """Starting before install is a validation error."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["start"], env=env)

    assert result.exit_code == 2
    assert "is not installed" in result.stdout
    assert _pm2_calls(tmp_path) == []


def test_stop_when_not_running(tmp_path: Path) -> None:
    """Stopping an unknown process is informational and exits zero."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["stop"], env=env)

    assert result.exit_code == 0
    assert "was not running" in result.stdout


def test_stop_after_start(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A running process is stopped successfully."""
    env = _prepare_environment(tmp_path)
    _serve_archive(monkeypatch, [build_tarball({"main.js": b"x"})])
    assert runner.invoke(app, ["install"], env=env).exit_code == 0
    assert runner.invoke(app, ["start"], env=env).exit_code == 0

    result = runner.invoke(app, ["stop"], env=env)

    assert result.exit_code == 0
    assert "stopped successfully" in result.stdout


def test_clear_outputs(tmp_path: Path) -> None:
    """``clear`` empties outputs and reports a missing directory."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["clear"], env=env)
    assert result.exit_code == 0
    assert "does not exist" in result.stdout

    outputs = tmp_path / "koda" / "outputs"
    (outputs / "job").mkdir(parents=True)
    (outputs / "job" / "out.csv").write_text("a,b\n", encoding="utf-8")
    (tmp_path / "koda" / "main.js").write_text("x", encoding="utf-8")

    result = runner.invoke(app, ["clear"], env=env)
    assert result.exit_code == 0
    assert "cleared successfully" in result.stdout
    assert outputs.is_dir()
    assert list(outputs.iterdir()) == []
    assert (tmp_path / "koda" / "main.js").exists()


def test_uninstall_removes_everything(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Uninstall deletes the pm2 entry and the install directory."""
    env = _prepare_environment(tmp_path)
    _serve_archive(monkeypatch, [build_tarball({"main.js": b"x"})])
    assert runner.invoke(app, ["install"], env=env).exit_code == 0
    assert runner.invoke(app, ["start"], env=env).exit_code == 0

    result = runner.invoke(app, ["uninstall"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "uninstalled successfully" in result.stdout
    assert not (tmp_path / "koda").exists()
    assert not (tmp_path / "pm2-state").exists()


def test_fetch_failure_exits_with_provider_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An HTTP error while downloading is reported with exit code 4."""
    env = _prepare_environment(tmp_path)
    _serve_archive(monkeypatch, [], status_code=404)

    result = runner.invoke(app, ["install"], env=env)

    assert result.exit_code == 4
    assert "Failed to install" in result.stdout
    assert not (tmp_path / "koda").exists()


def test_config_show_json(tmp_path: Path) -> None:
    """``config show --json`` emits the resolved configuration."""
    env = _prepare_environment(tmp_path, config_overrides={"app_name": "koda-staging"})

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["app_name"] == "koda-staging"
    assert payload["install_dir"] == str(tmp_path / "koda")
    assert payload["archive_url"] == ARCHIVE_URL


def test_config_show_table(tmp_path: Path) -> None:
    """The default rendering is a table of flattened keys."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "app_name" in result.stdout
    assert "pm2.bin" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown configuration keys are rejected before any command runs."""
    env = _prepare_environment(tmp_path, config_overrides={"instances": []})

    result = runner.invoke(app, ["stop"], env=env)

    assert result.exit_code == 2
    assert "Unknown configuration keys" in result.stdout
