"""Runtime settings for the reference-graph client. Shared by the CLI and the service facade."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from refgraph.core.config import (
    DEFAULT_CONFIG_PATH,
    PROJECT_ROOT,
    build_effective_config,
    default_cache_dir,
    hash_config_dict,
    load_config,
)

DOTENV_PATH = PROJECT_ROOT / ".env"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for fetching, caching, enrichment, and ranking.

    Attributes:
        api_base: Base URL of the bibliographic API.
        cache_enabled: Whether the persistent cache is used at all.
        cache_ttl_hours: Default lifetime of persistent cache entries.
        cache_compression: Whether new cache files are gzip-compressed.
        cache_dir: Directory holding persistent cache files.
        enrich_batch_size: Records requested per metadata batch.
        enrich_parallelism: Concurrent metadata batches.
        config_effective: Effective config dict used for hashing.
    """

    api_base: str
    cache_enabled: bool
    cache_ttl_hours: float
    cache_compression: bool
    cache_dir: Path
    cache_split_threshold: int = 10000
    cache_purge_delay_seconds: float = 30.0
    cache_write_debounce_seconds: float = 0.5
    enrich_batch_size: int = 100
    enrich_parallelism: int = 4
    related_max_anchors: int = 15
    related_per_anchor: int = 25
    related_max_results: int = 50
    related_exclude_reviews: bool = True
    related_concurrency: int = 2
    rate_limit_max_requests: int = 15
    rate_limit_window_seconds: float = 5.0
    rate_limit_max_concurrent: int = 6
    rate_limit_max_retries: int = 3
    request_timeout_seconds: float = 30.0
    config_path: Path | None = None
    config_hash: str | None = None
    config_effective: Dict[str, Any] | None = None


def load_env(path: Path) -> None:
    """Load environment variables from a .env-style file.

    Existing environment variables win over values in the file.

    Args:
        path (Path): Filesystem path value.
    """
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def load_settings(config_path: Path | None = None) -> Settings:
    """Load runtime settings from config file, environment variables, and defaults.

    Args:
        config_path (Path | None): Path to the configuration file.

    Returns:
        Settings: Frozen settings instance.
    """
    load_env(DOTENV_PATH)
    cfg_path = config_path or Path(os.getenv("REFGRAPH_CONFIG", DEFAULT_CONFIG_PATH))
    cfg = load_config(cfg_path)
    effective = build_effective_config(cfg, os.environ)
    cache_dir = Path(effective["cache_dir"]).expanduser() if effective["cache_dir"] else default_cache_dir()
    return Settings(
        api_base=str(effective["api_base"]),
        cache_enabled=bool(effective["cache_enabled"]),
        cache_ttl_hours=float(effective["cache_ttl_hours"]),
        cache_compression=bool(effective["cache_compression"]),
        cache_dir=cache_dir,
        cache_split_threshold=int(effective["cache_split_threshold"]),
        cache_purge_delay_seconds=float(effective["cache_purge_delay_seconds"]),
        cache_write_debounce_seconds=float(effective["cache_write_debounce_seconds"]),
        enrich_batch_size=int(effective["enrich_batch_size"]),
        enrich_parallelism=int(effective["enrich_parallelism"]),
        related_max_anchors=int(effective["related_max_anchors"]),
        related_per_anchor=int(effective["related_per_anchor"]),
        related_max_results=int(effective["related_max_results"]),
        related_exclude_reviews=bool(effective["related_exclude_reviews"]),
        related_concurrency=int(effective["related_concurrency"]),
        rate_limit_max_requests=int(effective["rate_limit_max_requests"]),
        rate_limit_window_seconds=float(effective["rate_limit_window_seconds"]),
        rate_limit_max_concurrent=int(effective["rate_limit_max_concurrent"]),
        rate_limit_max_retries=int(effective["rate_limit_max_retries"]),
        request_timeout_seconds=float(effective["request_timeout_seconds"]),
        config_path=cfg_path if cfg_path.exists() else None,
        config_hash=hash_config_dict(effective),
        config_effective=effective,
    )
