"""Configuration for the memory intelligence layer.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``MEMORY_INTEL_*`` prefix.
    Install-wide tunables (scoring weights, dedup policy, regression
    thresholds) live in the database ``settings`` table instead, see
    :class:`memory_intel.storage.MemoryStorage.get_setting`.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class Config:
    """Process configuration shared by all sub-systems."""

    # OpenRouter embedding
    openrouter_api_key: str = ""
    embedding_model: str = "qwen/qwen3-embedding-8b"
    embedding_dimensions: int = 4096
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Storage
    db_path: str = ""  # resolved in load_config()
    busy_timeout_ms: int = 5000

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8787

    # Default search weights; overridden per install by scoring.* settings
    weight_semantic: float = 0.50
    weight_keyword: float = 0.25
    weight_recency: float = 0.15
    weight_frequency: float = 0.10

    # Batch bounds
    backfill_limit: int = 10000
    densify_limit: int = 500

    # Embedding retry
    embed_max_retries: int = 3
    embed_cache_size: int = 1024

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if not self.openrouter_api_key:
            errors.append("OPENROUTER_API_KEY is required for semantic retrieval")
        if self.embedding_dimensions < 1:
            errors.append("MEMORY_INTEL_DIMENSIONS must be >= 1")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("MEMORY_INTEL_PORT must be 1-65535")
        if self.busy_timeout_ms < 0:
            errors.append("MEMORY_INTEL_BUSY_TIMEOUT_MS must be >= 0")
        return errors


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        OPENROUTER_API_KEY
        OPENROUTER_BASE_URL
        MEMORY_INTEL_DB
        MEMORY_INTEL_MODEL
        MEMORY_INTEL_DIMENSIONS
        MEMORY_INTEL_HOST
        MEMORY_INTEL_PORT
        MEMORY_INTEL_BUSY_TIMEOUT_MS
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("MEMORY_INTEL_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if hasattr(cfg, key):
                expected_type = type(getattr(cfg, key))
                try:
                    setattr(cfg, key, expected_type(val))
                except (ValueError, TypeError):
                    pass  # skip bad values

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "OPENROUTER_API_KEY": ("openrouter_api_key", str),
        "OPENROUTER_BASE_URL": ("openrouter_base_url", str),
        "MEMORY_INTEL_DB": ("db_path", str),
        "MEMORY_INTEL_MODEL": ("embedding_model", str),
        "MEMORY_INTEL_DIMENSIONS": ("embedding_dimensions", int),
        "MEMORY_INTEL_HOST": ("api_host", str),
        "MEMORY_INTEL_PORT": ("api_port", int),
        "MEMORY_INTEL_BUSY_TIMEOUT_MS": ("busy_timeout_ms", int),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                pass

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".memory-intel" / "memory.sqlite")

    return cfg
