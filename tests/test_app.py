"""CLI entry point: configured log level reaches logging setup."""

from __future__ import annotations

import sys

import pytest

import devserve.app as app
from devserve.engine.config import DevServerConfig


@pytest.fixture
def captured(monkeypatch, tmp_path):
    """Run main() against a fake worktree with logging and the run loop stubbed."""
    calls: dict = {}

    def fake_configure_logging(level_name, log_file):
        calls["level"] = level_name
        calls["log_file"] = log_file

    async def fake_run_single(config, worktree, project):
        calls["config"] = config
        return 0

    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DEVSERVE_LOG_LEVEL", raising=False)
    monkeypatch.setattr(app, "_configure_logging", fake_configure_logging)
    monkeypatch.setattr(app, "_run_single", fake_run_single)
    (tmp_path / "wt").mkdir()
    return calls


def _run_main(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["devserve", *argv])
    with pytest.raises(SystemExit) as exc_info:
        app.main()
    assert exc_info.value.code == 0


def test_yaml_logging_level_is_applied(monkeypatch, tmp_path, captured):
    config_file = tmp_path / "devserve.yaml"
    config_file.write_text("logging:\n  level: debug\n", encoding="utf-8")

    _run_main(monkeypatch, "wt", "--config", str(config_file))

    assert captured["level"] == "DEBUG"
    assert captured["config"].log_level == "DEBUG"
    assert captured["log_file"] is None


def test_env_log_level_is_applied(monkeypatch, captured):
    monkeypatch.setenv("DEVSERVE_LOG_LEVEL", "WARNING")

    _run_main(monkeypatch, "wt")

    assert captured["level"] == "WARNING"


def test_verbose_flag_overrides_configured_level(monkeypatch, tmp_path, captured):
    config_file = tmp_path / "devserve.yaml"
    config_file.write_text("logging:\n  level: error\n", encoding="utf-8")

    _run_main(monkeypatch, "wt", "--config", str(config_file), "-v")

    assert captured["level"] == "DEBUG"


def test_log_level_defaults_to_config():
    assert app._log_level(DevServerConfig(), verbose=False) == "INFO"
    assert app._log_level(DevServerConfig(log_level="ERROR"), verbose=False) == "ERROR"
    assert app._log_level(DevServerConfig(log_level="ERROR"), verbose=True) == "DEBUG"
