"""Environment and YAML configuration."""

from __future__ import annotations

import pytest

from devserve.engine.config import DevServerConfig
from devserve.engine.yaml_config import load_yaml_config


def test_defaults():
    config = DevServerConfig()

    assert (config.base_port, config.max_port) == (3001, 3099)
    assert config.auxiliary_ports == (35729, 35730, 35731)
    assert config.scrollback_limit == 50_000
    assert config.output_batch_size == 4096
    assert config.output_throttle_seconds == pytest.approx(0.004)
    assert config.startup_grace_seconds == pytest.approx(0.5)
    assert config.hostname == "localhost"
    assert config.force_reclaim is True


def test_inverted_port_range_rejected():
    with pytest.raises(ValueError, match="max_port"):
        DevServerConfig(base_port=4000, max_port=3000)


def test_from_env_reads_devserve_vars(monkeypatch):
    monkeypatch.setenv("DEVSERVE_BASE_PORT", "5001")
    monkeypatch.setenv("DEVSERVE_MAX_PORT", "5010")
    monkeypatch.setenv("DEVSERVE_AUX_PORTS", "35729, 9229")
    monkeypatch.setenv("DEVSERVE_GRACE_MS", "1500")
    monkeypatch.setenv("DEVSERVE_THROTTLE_MS", "16")
    monkeypatch.setenv("DEVSERVE_FORCE_RECLAIM", "false")
    monkeypatch.setenv("DEVSERVE_HOSTNAME", "127.0.0.1")

    config = DevServerConfig.from_env()

    assert (config.base_port, config.max_port) == (5001, 5010)
    assert config.auxiliary_ports == (35729, 9229)
    assert config.startup_grace_seconds == pytest.approx(1.5)
    assert config.output_throttle_seconds == pytest.approx(0.016)
    assert config.force_reclaim is False
    assert config.hostname == "127.0.0.1"


def test_yaml_overrides_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DEVSERVE_BASE_PORT", "5001")
    path = tmp_path / "devserve.yaml"
    path.write_text(
        "ports:\n"
        "  max: 5050\n"
        "  auxiliary: []\n"
        "output:\n"
        "  scrollback_chars: 1000\n"
        "process:\n"
        "  grace_period_ms: 250\n"
        "  env:\n"
        "    BROWSER: none\n"
        "logging:\n"
        "  level: debug\n",
        encoding="utf-8",
    )

    config = load_yaml_config(path)

    assert config.base_port == 5001
    assert config.max_port == 5050
    assert config.auxiliary_ports == ()
    assert config.scrollback_limit == 1000
    assert config.startup_grace_seconds == pytest.approx(0.25)
    assert config.extra_env == {"BROWSER": "none"}
    assert config.log_level == "DEBUG"


def test_yaml_unknown_keys_are_ignored(tmp_path, caplog):
    path = tmp_path / "devserve.yaml"
    path.write_text("ports:\n  bogus: 1\nmystery:\n  x: 2\n", encoding="utf-8")

    config = load_yaml_config(path, base=DevServerConfig())

    assert config == DevServerConfig()
    assert "ports.bogus" in caplog.text
    assert "mystery" in caplog.text


def test_yaml_invalid_range_rejected(tmp_path):
    path = tmp_path / "devserve.yaml"
    path.write_text("ports:\n  base: 4000\n  max: 3000\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_yaml_config(path, base=DevServerConfig())


def test_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml")


def test_yaml_non_mapping_rejected(tmp_path):
    path = tmp_path / "devserve.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        load_yaml_config(path, base=DevServerConfig())
