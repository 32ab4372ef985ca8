from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("~/.config/engram/config.json").expanduser()
DEFAULT_DB_PATH = Path.home() / ".engram.sqlite"

CONFIG_ENV_OVERRIDES = {
    "db_path": "ENGRAM_DB",
    "checkpoint_interval": "ENGRAM_CHECKPOINT_INTERVAL",
    "topic_low_threshold": "ENGRAM_TOPIC_LOW_THRESHOLD",
    "topic_high_threshold": "ENGRAM_TOPIC_HIGH_THRESHOLD",
    "topic_window": "ENGRAM_TOPIC_WINDOW",
    "topic_timeout_s": "ENGRAM_TOPIC_TIMEOUT_S",
    "topic_label_max_chars": "ENGRAM_TOPIC_LABEL_MAX_CHARS",
    "keyword_weight": "ENGRAM_KEYWORD_WEIGHT",
    "vector_weight": "ENGRAM_VECTOR_WEIGHT",
    "coverage_penalty": "ENGRAM_COVERAGE_PENALTY",
    "search_candidate_limit": "ENGRAM_SEARCH_CANDIDATE_LIMIT",
    "embedding_model": "ENGRAM_EMBEDDING_MODEL",
    "embedding_disabled": "ENGRAM_EMBEDDING_DISABLED",
}

_INT_KEYS = {
    "checkpoint_interval",
    "topic_window",
    "topic_label_max_chars",
    "search_candidate_limit",
}
_FLOAT_KEYS = {
    "topic_low_threshold",
    "topic_high_threshold",
    "topic_timeout_s",
    "keyword_weight",
    "vector_weight",
    "coverage_penalty",
}
_BOOL_KEYS = {"embedding_disabled"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("ENGRAM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError("invalid config json", {"path": str(config_path)}) from exc
    if not isinstance(data, dict):
        raise ConfigurationError("config must be an object", {"path": str(config_path)})
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


@dataclass
class EngramConfig:
    db_path: str = str(DEFAULT_DB_PATH)

    # Buffered observations that trigger an automatic flush.
    checkpoint_interval: int = 20

    # Topic-shift thresholds: score >= high is the same topic, score < low is a new one.
    topic_low_threshold: float = 0.4
    topic_high_threshold: float = 0.75
    # Number of recent prompts the running topic centroid averages over.
    topic_window: int = 10
    topic_timeout_s: float = 2.0
    topic_label_max_chars: int = 60

    # Hybrid ranking: weights for dual-signal hits, penalty for single-signal hits.
    keyword_weight: float = 0.5
    vector_weight: float = 0.5
    coverage_penalty: float = 0.8
    search_candidate_limit: int = 50

    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_disabled: bool = False


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _coerce(cfg: EngramConfig, key: str, value: object) -> None:
    if key in _INT_KEYS:
        setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
    elif key in _FLOAT_KEYS:
        setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
    elif key in _BOOL_KEYS:
        setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
    elif isinstance(value, str):
        setattr(cfg, key, value)
    else:
        warnings.warn(f"Invalid string for {key}: {value!r}", RuntimeWarning, stacklevel=2)


def _apply_dict(cfg: EngramConfig, data: dict[str, Any]) -> EngramConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        _coerce(cfg, key, value)
    return cfg


def _apply_env(cfg: EngramConfig) -> EngramConfig:
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        _coerce(cfg, key, value)
    return cfg


def validate_config(cfg: EngramConfig) -> EngramConfig:
    if cfg.checkpoint_interval < 1:
        raise ConfigurationError(
            "checkpoint_interval must be >= 1", {"value": cfg.checkpoint_interval}
        )
    if not 0.0 <= cfg.topic_low_threshold < cfg.topic_high_threshold <= 1.0:
        raise ConfigurationError(
            "topic thresholds must satisfy 0 <= low < high <= 1",
            {"low": cfg.topic_low_threshold, "high": cfg.topic_high_threshold},
        )
    if cfg.topic_window < 1:
        raise ConfigurationError("topic_window must be >= 1", {"value": cfg.topic_window})
    if cfg.topic_timeout_s <= 0:
        raise ConfigurationError("topic_timeout_s must be > 0", {"value": cfg.topic_timeout_s})
    if cfg.topic_label_max_chars < 8:
        raise ConfigurationError(
            "topic_label_max_chars must be >= 8", {"value": cfg.topic_label_max_chars}
        )
    if cfg.keyword_weight < 0 or cfg.vector_weight < 0:
        raise ConfigurationError(
            "search weights must be non-negative",
            {"keyword": cfg.keyword_weight, "vector": cfg.vector_weight},
        )
    if cfg.keyword_weight + cfg.vector_weight <= 0:
        raise ConfigurationError("at least one search weight must be positive")
    if not 0.0 < cfg.coverage_penalty < 1.0:
        raise ConfigurationError(
            "coverage_penalty must be in (0, 1)", {"value": cfg.coverage_penalty}
        )
    if cfg.search_candidate_limit < 1:
        raise ConfigurationError(
            "search_candidate_limit must be >= 1", {"value": cfg.search_candidate_limit}
        )
    return cfg


def load_config(path: Path | None = None) -> EngramConfig:
    cfg = _apply_dict(EngramConfig(), read_config_file(path))
    cfg = _apply_env(cfg)
    return validate_config(cfg)
