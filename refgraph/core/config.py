"""Configuration loader and merger for refgraph. Used by load_settings to build runtime config from TOML and environment variables."""

from __future__ import annotations

import hashlib
import json
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping

from platformdirs import user_data_dir

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.toml"
APP_NAME = "refgraph"
CACHE_DIR_NAME = "refgraph-cache"

DEFAULT_API_BASE = "https://inspirehep.net/api"

ENRICH_BATCH_RANGE = (25, 200)
ENRICH_PARALLEL_RANGE = (1, 5)


def default_cache_dir() -> Path:
    """Return the platform data directory used when no custom directory is configured."""
    return Path(user_data_dir(APP_NAME, appauthor=False)) / CACHE_DIR_NAME


def load_config(path: Path | None) -> Dict[str, Any]:
    """Load a TOML config file and return the refgraph section or top-level dict."""
    if not path or not path.exists():
        return {}
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and "refgraph" in data and isinstance(data["refgraph"], dict):
        return data["refgraph"]
    return data or {}


def hash_config_dict(config: Mapping[str, Any]) -> str:
    """Return a stable SHA-256 hash of a config mapping."""
    payload = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _env_or_config(env: Mapping[str, str], config: Mapping[str, Any], env_key: str, config_key: str, default: Any) -> Any:
    if env_key in env and env[env_key] != "":
        return env[env_key]
    if config_key in config:
        return config[config_key]
    return default


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off", ""}:
        return False
    return default


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


def build_effective_config(
    config: Mapping[str, Any],
    env: Mapping[str, str],
) -> Dict[str, Any]:
    """Build the effective config with env overrides applied."""
    cache_dir_val = _env_or_config(env, config, "REFGRAPH_CACHE_DIR", "cache_dir", "")
    cache_dir = str(cache_dir_val or "").strip()

    ttl_hours = _coerce_float(_env_or_config(env, config, "REFGRAPH_CACHE_TTL_HOURS", "cache_ttl_hours", 24), 24.0)
    if ttl_hours <= 0:
        ttl_hours = 24.0

    effective = {
        "api_base": str(_env_or_config(env, config, "REFGRAPH_API_BASE", "api_base", DEFAULT_API_BASE)).rstrip("/"),
        "cache_enabled": _coerce_bool(_env_or_config(env, config, "REFGRAPH_CACHE_ENABLED", "cache_enabled", True), True),
        "cache_ttl_hours": ttl_hours,
        "cache_compression": _coerce_bool(
            _env_or_config(env, config, "REFGRAPH_CACHE_COMPRESSION", "cache_compression", True), True
        ),
        "cache_dir": cache_dir,
        "cache_split_threshold": max(
            1,
            _coerce_int(_env_or_config(env, config, "REFGRAPH_CACHE_SPLIT_THRESHOLD", "cache_split_threshold", 10000), 10000),
        ),
        "cache_purge_delay_seconds": max(
            0.0,
            _coerce_float(
                _env_or_config(env, config, "REFGRAPH_CACHE_PURGE_DELAY_SECONDS", "cache_purge_delay_seconds", 30), 30.0
            ),
        ),
        "cache_write_debounce_seconds": max(
            0.0,
            _coerce_float(
                _env_or_config(env, config, "REFGRAPH_CACHE_WRITE_DEBOUNCE_SECONDS", "cache_write_debounce_seconds", 0.5),
                0.5,
            ),
        ),
        "enrich_batch_size": _clamp(
            _coerce_int(_env_or_config(env, config, "REFGRAPH_ENRICH_BATCH_SIZE", "enrich_batch_size", 100), 100),
            ENRICH_BATCH_RANGE,
        ),
        "enrich_parallelism": _clamp(
            _coerce_int(_env_or_config(env, config, "REFGRAPH_ENRICH_PARALLELISM", "enrich_parallelism", 4), 4),
            ENRICH_PARALLEL_RANGE,
        ),
        "related_max_anchors": max(
            1, _coerce_int(_env_or_config(env, config, "REFGRAPH_RELATED_MAX_ANCHORS", "related_max_anchors", 15), 15)
        ),
        "related_per_anchor": max(
            1, _coerce_int(_env_or_config(env, config, "REFGRAPH_RELATED_PER_ANCHOR", "related_per_anchor", 25), 25)
        ),
        "related_max_results": max(
            1, _coerce_int(_env_or_config(env, config, "REFGRAPH_RELATED_MAX_RESULTS", "related_max_results", 50), 50)
        ),
        "related_exclude_reviews": _coerce_bool(
            _env_or_config(env, config, "REFGRAPH_RELATED_EXCLUDE_REVIEWS", "related_exclude_reviews", True), True
        ),
        "related_concurrency": max(
            1, _coerce_int(_env_or_config(env, config, "REFGRAPH_RELATED_CONCURRENCY", "related_concurrency", 2), 2)
        ),
        "rate_limit_max_requests": max(
            1,
            _coerce_int(_env_or_config(env, config, "REFGRAPH_RATE_LIMIT_MAX_REQUESTS", "rate_limit_max_requests", 15), 15),
        ),
        "rate_limit_window_seconds": max(
            0.0,
            _coerce_float(
                _env_or_config(env, config, "REFGRAPH_RATE_LIMIT_WINDOW_SECONDS", "rate_limit_window_seconds", 5), 5.0
            ),
        ),
        "rate_limit_max_concurrent": max(
            1,
            _coerce_int(
                _env_or_config(env, config, "REFGRAPH_RATE_LIMIT_MAX_CONCURRENT", "rate_limit_max_concurrent", 6), 6
            ),
        ),
        "rate_limit_max_retries": max(
            0,
            _coerce_int(_env_or_config(env, config, "REFGRAPH_RATE_LIMIT_MAX_RETRIES", "rate_limit_max_retries", 3), 3),
        ),
        "request_timeout_seconds": max(
            1.0,
            _coerce_float(
                _env_or_config(env, config, "REFGRAPH_REQUEST_TIMEOUT_SECONDS", "request_timeout_seconds", 30), 30.0
            ),
        ),
    }
    return effective
