"""
Configuration helpers for the intelligent cache.

The cache takes the same kind of plain nested configuration dictionary the
rest of the application uses. Everything cache-specific lives under the
``caching`` section; adaptive sizing reads ``hardware_limits``.

Example::

    config = {
        "caching": {
            "capacity": 1000,
            "eviction_batch_size": 100,
            "snapshot_path": "~/.local/share/ai-bible-app/cache.json",
        }
    }
"""

import copy
import logging
import os
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)

# Environment variables take precedence over the configuration dictionary
ENV_SNAPSHOT_PATH = "ICACHE_SNAPSHOT_PATH"
ENV_CAPACITY = "ICACHE_CAPACITY"

DEFAULT_CACHING_CONFIG: Dict[str, Any] = {
    "capacity": 1000,
    "eviction_batch_size": 100,
    "default_ttl": 24 * 3600,
    "restore_ttl": 24 * 3600,
    "similarity_threshold": 0.85,
    "enable_similarity": True,
    "keyword_memo_size": 4096,
    "sweep_interval": 300,
    "snapshot_interval": 600,
    "snapshot_path": None,
    "snapshot_backend": "json",
    "load_on_start": True,
    "persist_on_close": True,
    "lock_timeout": 10.0,
}

SNAPSHOT_BACKENDS = ("json", "diskcache")


def calculate_optimal_capacity(config: Dict[str, Any], base_capacity: int = 1000) -> int:
    """
    Calculate a cache capacity (in entries) from available memory.

    Args:
        config: The full configuration dictionary
        base_capacity: Lower bound used when memory is plentiful

    Returns:
        int: The calculated capacity
    """
    limits = config.get("hardware_limits", {})
    scaling_factor = limits.get("memory_scaling_factor", 0.3)
    max_capacity = config.get("caching", {}).get("max_capacity", base_capacity * 10)
    minimum_free_mb = limits.get("minimum_free_mb", 500)

    try:
        available_mb = psutil.virtual_memory().available / (1024 * 1024)
    except Exception as e:
        logger.warning(f"Error reading available memory, using base capacity: {e}")
        return base_capacity

    if available_mb < minimum_free_mb * 2:
        # Low memory situation, be conservative
        return max(100, base_capacity // 2)

    # Entries are roughly 1 KiB each; scale the number kept per free MB
    dynamic_capacity = int(available_mb / scaling_factor) if scaling_factor else 0
    return max(base_capacity, min(dynamic_capacity, max_capacity))


def get_caching_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Merge the ``caching`` section of ``config`` over the defaults and validate it.

    Args:
        config: The full configuration dictionary (may be None)

    Returns:
        Dict[str, Any]: A new, fully populated caching configuration

    Raises:
        ValueError: If a setting is out of range
    """
    config = config or {}
    merged = copy.deepcopy(DEFAULT_CACHING_CONFIG)
    merged.update(config.get("caching", {}))

    env_path = os.environ.get(ENV_SNAPSHOT_PATH)
    if env_path:
        merged["snapshot_path"] = env_path

    env_capacity = os.environ.get(ENV_CAPACITY)
    if env_capacity:
        merged["capacity"] = env_capacity if env_capacity == "auto" else int(env_capacity)

    if merged["capacity"] == "auto":
        merged["capacity"] = calculate_optimal_capacity(config)
        logger.info(f"Adaptive cache capacity set to {merged['capacity']} entries")

    _validate(merged)

    if merged["snapshot_path"]:
        merged["snapshot_path"] = os.path.expanduser(merged["snapshot_path"])

    return merged


def _validate(caching: Dict[str, Any]) -> None:
    if not isinstance(caching["capacity"], int) or caching["capacity"] < 1:
        raise ValueError("capacity must be a positive integer or 'auto'")
    if not isinstance(caching["eviction_batch_size"], int) or caching["eviction_batch_size"] < 1:
        raise ValueError("eviction_batch_size must be a positive integer")
    if not 0.0 < float(caching["similarity_threshold"]) <= 1.0:
        raise ValueError("similarity_threshold must be in (0, 1]")
    for key in ("default_ttl", "restore_ttl"):
        if caching[key] is not None and caching[key] <= 0:
            raise ValueError(f"{key} must be positive or None")
    for key in ("sweep_interval", "snapshot_interval", "lock_timeout"):
        if caching[key] <= 0:
            raise ValueError(f"{key} must be positive")
    if caching["snapshot_backend"] not in SNAPSHOT_BACKENDS:
        raise ValueError(
            f"snapshot_backend must be one of {SNAPSHOT_BACKENDS}, "
            f"got {caching['snapshot_backend']!r}"
        )
