"""Tests for tether config models and parser."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from tether.config.models import ClientConfig, ListenConfig, TetherConfig
from tether.config.parser import ConfigError, load_config
from tether.constants import DEFAULT_DATA_DIR, DEFAULT_PORT

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: Any) -> Path:
    """Write *data* as YAML and return the file path."""
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


# ===================================================================
# Model validation tests
# ===================================================================


class TestDefaults:
    def test_empty_config(self) -> None:
        cfg = TetherConfig()
        assert cfg.version == "1"
        assert cfg.listen.port == DEFAULT_PORT
        assert cfg.agent.permission_mode == "acceptEdits"
        assert cfg.sessions.output_buffer_cap == 1000
        assert cfg.client.call_timeout == 30.0
        assert cfg.client.max_reconnect_attempts == 10

    def test_integer_version_accepted(self) -> None:
        assert TetherConfig.model_validate({"version": 1}).version == "1"


class TestValidation:
    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TetherConfig.model_validate({"surprise": True})

    def test_port_range(self) -> None:
        ListenConfig(port=0)
        with pytest.raises(ValidationError):
            ListenConfig(port=70_000)

    def test_permission_mode_checked(self) -> None:
        with pytest.raises(ValidationError):
            TetherConfig.model_validate({"agent": {"permission_mode": "yolo"}})

    def test_buffer_cap_minimum(self) -> None:
        with pytest.raises(ValidationError):
            TetherConfig.model_validate({"sessions": {"output_buffer_cap": 1}})

    def test_reconnect_delays_ordered(self) -> None:
        with pytest.raises(ValidationError, match="reconnect_max_delay"):
            ClientConfig(reconnect_base_delay=10, reconnect_max_delay=5)


class TestDirectories:
    def test_data_dir_from_config(self, tmp_path: Path) -> None:
        cfg = TetherConfig(data_dir=str(tmp_path))
        assert cfg.resolved_data_dir() == tmp_path

    def test_data_dir_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TETHER_DATA_DIR", str(tmp_path))
        assert TetherConfig().resolved_data_dir() == tmp_path

    def test_data_dir_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TETHER_DATA_DIR", raising=False)
        assert TetherConfig().resolved_data_dir() == DEFAULT_DATA_DIR

    def test_root_dir_resolved(self, tmp_path: Path) -> None:
        cfg = TetherConfig(root_dir=str(tmp_path / "a" / ".." / "b"))
        assert cfg.resolved_root_dir() == (tmp_path / "b").resolve()

    def test_no_root_dir(self) -> None:
        assert TetherConfig().resolved_root_dir() is None


class TestOverrides:
    def test_overrides_applied(self) -> None:
        cfg = TetherConfig().with_overrides(
            root_dir="/srv", host="0.0.0.0", port=9000, data_dir="/var/tether"
        )
        assert cfg.root_dir == "/srv"
        assert cfg.listen.host == "0.0.0.0"
        assert cfg.listen.port == 9000
        assert cfg.data_dir == "/var/tether"

    def test_none_keeps_file_values(self) -> None:
        base = TetherConfig.model_validate({"root_dir": "/srv", "listen": {"port": 1234}})
        cfg = base.with_overrides()
        assert cfg.root_dir == "/srv"
        assert cfg.listen.port == 1234


# ===================================================================
# Parser tests
# ===================================================================


class TestLoadConfig:
    def test_explicit_file(self, tmp_path: Path) -> None:
        path = _write_yaml(
            tmp_path / "tether.yaml",
            {"version": "1", "root_dir": "/srv", "listen": {"port": 9100}},
        )
        cfg = load_config(path)
        assert cfg.root_dir == "/srv"
        assert cfg.listen.port == 9100

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "nope.yaml")

    def test_no_default_file_gives_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        assert load_config() == TetherConfig()

    def test_default_file_in_cwd(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        _write_yaml(tmp_path / "tether.yaml", {"listen": {"port": 9200}})
        monkeypatch.chdir(tmp_path)
        assert load_config().listen.port == 9200

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "tether.yaml"
        path.write_text("")
        assert load_config(path) == TetherConfig()

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "tether.yaml"
        path.write_text("listen: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML in tether.yaml"):
            load_config(path)

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "tether.yaml", ["a", "b"])
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_config(path)

    def test_validation_errors_are_readable(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "tether.yaml", {"listen": {"prot": 1}})
        with pytest.raises(ConfigError) as excinfo:
            load_config(path)
        message = str(excinfo.value)
        assert "Config validation failed" in message
        assert "listen → prot: Unknown setting" in message

    def test_env_file_loaded(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TETHER_DATA_DIR", raising=False)
        data_dir = tmp_path / "from-env"
        (tmp_path / ".env").write_text(f"TETHER_DATA_DIR={data_dir}\n")
        path = _write_yaml(tmp_path / "tether.yaml", {"version": "1"})

        cfg = load_config(path)

        assert cfg.resolved_data_dir() == data_dir
        monkeypatch.delenv("TETHER_DATA_DIR", raising=False)
