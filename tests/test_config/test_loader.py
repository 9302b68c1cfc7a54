"""Tests for config loading."""
from __future__ import annotations

import logging
from pathlib import Path

import pytest

from binsql.config.defaults import DEFAULT_CONFIG_YAML
from binsql.config.loader import load_config
from binsql.config.schema import BinsqlConfig


def test_load_default_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    config = load_config(None)
    assert isinstance(config, BinsqlConfig)
    assert config.backend.type == "snapshot"
    assert config.engine.decompile_udf_limit == 64
    assert config.server.bind == "127.0.0.1"
    assert config.server.token is None
    assert config.output.format == "table"


def test_load_from_yaml(sample_config_path: Path) -> None:
    config = load_config(sample_config_path)
    assert config.engine.per_row_udf_limit == 5000
    assert config.engine.decompile_udf_limit == 8
    assert config.server.bind == "0.0.0.0"
    assert config.server.tcp_port == 13337
    assert config.server.read_timeout_s == 2.5
    assert config.output.format == "json"
    assert config.logging.level == "INFO"


def test_default_template_matches_defaults(tmp_path: Path) -> None:
    path = tmp_path / "binsql.yaml"
    path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    assert load_config(path) == BinsqlConfig.create_default()


def test_default_path_in_working_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "binsql.yaml").write_text("output:\n  format: json\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    assert load_config(None).output.format == "json"


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_non_mapping_yaml(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        load_config(path)


def test_cli_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    config = load_config(None, cli_overrides={"server.token": "s3cret", "engine.udf_warn_rows": "10", "output.format": None})
    assert config.server.token == "s3cret"
    assert config.engine.udf_warn_rows == 10
    assert config.output.format == "table"


def test_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BINSQL_SERVER_TOKEN", "from-env")
    monkeypatch.setenv("BINSQL_SERVER_HTTP_PORT", "8081")
    monkeypatch.setenv("BINSQL_LOG_LEVEL", "DEBUG")
    config = load_config(None)
    assert config.server.token == "from-env"
    assert config.server.http_port == 8081
    assert config.logging.level == "DEBUG"


def test_cli_beats_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BINSQL_SERVER_BIND", "0.0.0.0")
    assert load_config(None, cli_overrides={"server.bind": "::1"}).server.bind == "::1"


def test_unknown_key_warns(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "binsql.yaml"
    path.write_text("engine:\n  turbo: true\n", encoding="utf-8")
    with caplog.at_level(logging.WARNING):
        config = load_config(path)
    assert config.engine == BinsqlConfig.create_default().engine
    assert "Unknown config key 'turbo'" in caplog.text
