"""
Discovery configuration loader.

Builds a :class:`DiscoveryConfig` from three layers, later layers winning:

    1. Dataclass defaults (the values below)
    2. [tool.telemetry-codex.discovery] in pyproject.toml (dash-case keys)
    3. TELEMETRY_CODEX_<FIELD> environment variables
    4. Explicit keyword overrides (CLI options)

Credentials are resolved from the environment through
:mod:`telemetry_codex.settings`.  :meth:`DiscoveryConfig.validate` turns an
unusable configuration into a :class:`FatalConfigError` before any query is
issued.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from telemetry_codex import settings
from telemetry_codex.discovery.errors import FatalConfigError

logger = logging.getLogger(__name__)

# Record kinds probed by the volume query in the entities phase.
DEFAULT_ENTITY_CANDIDATES: tuple[str, ...] = (
    "Transaction",
    "SystemSample",
    "ProcessSample",
    "NetworkSample",
    "ContainerSample",
    "ApplicationSample",
    "BrowserInteraction",
    "PageView",
    "SyntheticCheck",
    "SyntheticRequest",
    "KafkaBrokerSample",
    "KafkaTopicSample",
    "QueueSample",
    "InfrastructureEvent",
    "K8sNodeSample",
    "K8sPodSample",
    "LoadBalancerSample",
    "Lambda",
    "Span",
    "Log",
    "Metric",
)


@dataclass
class DiscoveryConfig:
    """Every tunable of a discovery run."""

    # Remote API
    api_key: str | None = None
    account_id: int | None = None
    endpoint: str = "https://api.newrelic.com/graphql"

    # Rate limiting
    queries_per_minute: int = 2500
    """Stays under the remote 3000/minute ceiling"""
    max_concurrent: int = 10
    query_timeout: float = 30.0
    """Seconds allowed for a single remote call"""

    # Retry policy
    transient_retries: int = 3
    max_degrade_attempts: int = 5
    retry_backoff: float = 1.0
    """Initial backoff in seconds between transient retries (doubles)"""
    max_retry_backoff: float = 60.0

    # Query shaping
    sample_size: int = 1000
    high_volume_threshold: int = 1_000_000
    medium_volume_threshold: int = 100_000

    # Exploration bounds
    max_entities: int = 50
    max_additional_entities: int = 10
    max_attributes_per_entity: int = 100
    max_metrics_per_group: int = 10
    sample_attributes: int = 10
    sample_rows: int = 10
    entity_candidates: list[str] = field(
        default_factory=lambda: list(DEFAULT_ENTITY_CANDIDATES)
    )

    # Phase toggles
    discover_metrics: bool = True
    analyze_relationships: bool = True
    collect_samples: bool = True

    # Query cache
    enable_cache: bool = True
    cache_size: int = 1000
    cache_ttl: float = 300.0

    # Progress persistence
    save_progress: bool = True
    progress_file: Path | None = None
    checkpoint_interval: float = 60.0
    max_checkpoint_age: float = 24 * 60 * 60
    max_backups: int = 3

    def resolved_progress_file(self) -> Path:
        """Checkpoint path, defaulting to one file per account."""
        if self.progress_file is not None:
            return Path(self.progress_file)
        return settings.get_progress_file(self.account_id)

    def validate(self, *, require_credentials: bool = True) -> None:
        """Reject configurations that cannot produce a working session.

        Raises:
            FatalConfigError: On missing credentials or non-positive limits.
        """
        if require_credentials:
            if not self.api_key:
                raise FatalConfigError(
                    "Missing API key. Set NEW_RELIC_API_KEY or UKEY in the "
                    "environment or pass --api-key"
                )
            if not self.account_id:
                raise FatalConfigError(
                    "Missing account ID. Set NEW_RELIC_ACCOUNT_ID or ACC in the "
                    "environment or pass --account-id"
                )
        positive = (
            "queries_per_minute",
            "max_concurrent",
            "query_timeout",
            "checkpoint_interval",
            "max_checkpoint_age",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise FatalConfigError(f"{name} must be positive, got {getattr(self, name)}")
        non_negative = ("transient_retries", "max_degrade_attempts", "max_backups")
        for name in non_negative:
            if getattr(self, name) < 0:
                raise FatalConfigError(f"{name} must not be negative, got {getattr(self, name)}")


def _coerce(value: Any, default: Any, name: str) -> Any:
    """Convert a raw setting (often a string from the environment) to the
    type of the field default."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)
    if name == "progress_file":
        return Path(value).expanduser()
    if name == "account_id":
        return int(value)
    return value


def load_discovery_config(**overrides: Any) -> DiscoveryConfig:
    """Assemble a DiscoveryConfig from pyproject, environment and overrides.

    ``None`` overrides are ignored so CLI options without a value fall
    through to the lower layers.

    Raises:
        FatalConfigError: If a configured value cannot be converted.
    """
    config = DiscoveryConfig(
        api_key=settings.get_api_key(),
        account_id=settings.get_account_id(),
        endpoint=settings.get_api_endpoint(),
    )
    defaults = {f.name: getattr(config, f.name) for f in dataclasses.fields(config)}

    file_settings = {
        key.replace("-", "_"): value
        for key, value in settings.get_discovery_settings().items()
    }
    env_settings = {
        name: os.environ[f"TELEMETRY_CODEX_{name.upper()}"]
        for name in defaults
        if f"TELEMETRY_CODEX_{name.upper()}" in os.environ
    }
    explicit = {key: value for key, value in overrides.items() if value is not None}

    for layer_name, layer in (
        ("pyproject", file_settings),
        ("environment", env_settings),
        ("overrides", explicit),
    ):
        for name, value in layer.items():
            if name not in defaults:
                logger.warning("Ignoring unknown discovery setting %r (%s)", name, layer_name)
                continue
            try:
                setattr(config, name, _coerce(value, defaults[name], name))
            except (TypeError, ValueError) as e:
                raise FatalConfigError(
                    f"Invalid value for {name} from {layer_name}: {value!r}"
                ) from e

    return config
