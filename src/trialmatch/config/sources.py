"""Upstream source configuration loader.

Loads per-source rate limits, timeouts and cache TTLs from the bundled
YAML file. Unknown sources fall back to conservative defaults rather than
failing, so a new client can be added before its YAML entry.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

DEFAULT_REQUESTS_PER_SECOND = 3
DEFAULT_TIMEOUT = 10.0
DEFAULT_CACHE_TTL = 3600.0


@dataclass(frozen=True)
class SourceConfig:
    """Rate class, timeout and cache TTL for one upstream source."""

    name: str
    base_url: str
    requests_per_second: int = DEFAULT_REQUESTS_PER_SECOND
    timeout: float = DEFAULT_TIMEOUT
    cache_ttl: float = DEFAULT_CACHE_TTL

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "SourceConfig":
        return cls(
            name=name,
            base_url=data.get("base_url", ""),
            requests_per_second=int(data.get("requests_per_second", DEFAULT_REQUESTS_PER_SECOND)),
            timeout=float(data.get("timeout", DEFAULT_TIMEOUT)),
            cache_ttl=float(data.get("cache_ttl", DEFAULT_CACHE_TTL)),
        )


@lru_cache(maxsize=1)
def load_source_configs() -> dict[str, SourceConfig]:
    """Load source configuration from YAML file.

    Returns:
        Mapping of source key to SourceConfig.
    """
    config_path = Path(__file__).parent / "sources.yaml"

    if not config_path.exists():
        return {}

    with open(config_path) as f:
        config = yaml.safe_load(f)

    return {
        name: SourceConfig.from_dict(name, data or {})
        for name, data in (config or {}).items()
    }


def get_source_config(name: str) -> SourceConfig:
    """Get configuration for a single source, with defaults for unknown keys."""
    configs = load_source_configs()
    if name in configs:
        return configs[name]
    return SourceConfig(name=name, base_url="")
