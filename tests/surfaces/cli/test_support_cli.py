from __future__ import annotations

from pathlib import Path
from typing import Any

from typer.testing import CliRunner

from support_relay import __version__
from support_relay import cli as cli_module


def test_version_flag_prints_version() -> None:
    result = CliRunner().invoke(cli_module.app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.strip() == f"support-relay {__version__}"


def test_check_config_prints_summary(tmp_path: Path, write_config) -> None:
    path = write_config({"server": {"port": 4100}})

    result = CliRunner().invoke(cli_module.app, ["check-config", "--config", str(path)])

    assert result.exit_code == 0
    assert f"root: {tmp_path.resolve()}" in result.stdout
    assert "server: 127.0.0.1:4100" in result.stdout
    assert "discord.enabled: False" in result.stdout


def test_check_config_rejects_invalid_values(write_config) -> None:
    path = write_config({"relay": {"max_connections": 0}})

    result = CliRunner().invoke(cli_module.app, ["check-config", "--config", str(path)])

    assert result.exit_code == 1


def test_serve_runs_uvicorn_with_overrides(
    tmp_path: Path, write_config, monkeypatch
) -> None:
    path = write_config({"server": {"port": 4100}})
    built: list[Any] = []
    calls: list[dict[str, Any]] = []

    def fake_create_app(config: Any) -> str:
        built.append(config)
        return "asgi-app"

    def fake_run(app: Any, **kwargs: Any) -> None:
        calls.append({"app": app, **kwargs})

    monkeypatch.setattr(cli_module, "create_app", fake_create_app)
    monkeypatch.setattr(cli_module.uvicorn, "run", fake_run)

    result = CliRunner().invoke(
        cli_module.app, ["serve", "--config", str(path), "--port", "4200"]
    )

    assert result.exit_code == 0
    assert built[0].server.port == 4100
    assert calls == [{"app": "asgi-app", "host": "127.0.0.1", "port": 4200}]
