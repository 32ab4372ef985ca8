import json
from pathlib import Path

import pytest

from engram.config import (
    EngramConfig,
    get_config_path,
    load_config,
    read_config_file,
    validate_config,
    write_config_file,
)
from engram.errors import ConfigurationError


def test_defaults_without_config_file() -> None:
    cfg = load_config()
    assert cfg.checkpoint_interval == 20
    assert cfg.topic_low_threshold == 0.4
    assert cfg.topic_high_threshold == 0.75
    assert cfg.keyword_weight == 0.5
    assert cfg.vector_weight == 0.5
    assert cfg.coverage_penalty == 0.8


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ConfigurationError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_rejects_non_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        read_config_file(config_path)


def test_config_path_follows_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    target = tmp_path / "custom.json"
    monkeypatch.setenv("ENGRAM_CONFIG", str(target))
    assert get_config_path() == target


def test_file_values_then_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    write_config_file(
        {"checkpoint_interval": 5, "topic_high_threshold": 0.9, "embedding_model": "m"},
        config_path,
    )
    monkeypatch.setenv("ENGRAM_CHECKPOINT_INTERVAL", "12")
    monkeypatch.setenv("ENGRAM_EMBEDDING_DISABLED", "yes")

    cfg = load_config(config_path)

    assert cfg.checkpoint_interval == 12
    assert cfg.topic_high_threshold == 0.9
    assert cfg.embedding_model == "m"
    assert cfg.embedding_disabled is True
    assert json.loads(config_path.read_text())["checkpoint_interval"] == 5


def test_invalid_env_value_warns_and_keeps_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENGRAM_TOPIC_WINDOW", "lots")
    with pytest.warns(RuntimeWarning, match="topic_window"):
        cfg = load_config()
    assert cfg.topic_window == 10


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    write_config_file({"observer_model": "x", "coverage_penalty": 0.7}, config_path)
    cfg = load_config(config_path)
    assert cfg.coverage_penalty == 0.7
    assert not hasattr(cfg, "observer_model")


@pytest.mark.parametrize(
    "overrides",
    [
        {"topic_low_threshold": 0.8, "topic_high_threshold": 0.5},
        {"topic_high_threshold": 1.5},
        {"keyword_weight": -0.1},
        {"keyword_weight": 0.0, "vector_weight": 0.0},
        {"coverage_penalty": 1.0},
        {"checkpoint_interval": 0},
        {"topic_window": 0},
        {"topic_timeout_s": 0.0},
    ],
)
def test_validate_config_rejects_out_of_range(overrides: dict) -> None:
    cfg = EngramConfig(**overrides)
    with pytest.raises(ConfigurationError):
        validate_config(cfg)
