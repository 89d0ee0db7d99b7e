"""Configuration loaders for discovery runs."""

from telemetry_codex.config.discovery_config import (
    DEFAULT_ENTITY_CANDIDATES,
    DiscoveryConfig,
    load_discovery_config,
)

__all__ = [
    "DEFAULT_ENTITY_CANDIDATES",
    "DiscoveryConfig",
    "load_discovery_config",
]
