"""Project settings loaded from pyproject.toml [tool.telemetry-codex] section.

Configuration is organized into subsections:
  [tool.telemetry-codex]          : general settings (progress-dir)
  [tool.telemetry-codex.api]      : remote query API endpoint, region, timeout
  [tool.telemetry-codex.discovery]: rate limits, retry ceilings, sampling

All settings support environment variable overrides (TELEMETRY_CODEX_* prefix).
Credentials are never read from pyproject.toml; they come from the
environment (NEW_RELIC_API_KEY / NEW_RELIC_ACCOUNT_ID, with the short
UKEY / ACC aliases), usually via a .env file loaded by the CLI.
"""

import os
from functools import cache
from pathlib import Path

import tomllib


@cache
def _load_pyproject_settings() -> dict:
    """Load settings from pyproject.toml [tool.telemetry-codex] section.

    Walks up from this file (development checkout) and from the current
    working directory (project using an installed package).

    Returns:
        Dictionary of settings from pyproject.toml, empty dict if not found.
    """
    starts = [Path(__file__).resolve().parent, Path.cwd().resolve()]
    for start in starts:
        current = start
        while current != current.parent:
            candidate = current / "pyproject.toml"
            if candidate.is_file():
                try:
                    data = tomllib.loads(candidate.read_text())
                except (OSError, tomllib.TOMLDecodeError):
                    return {}
                section = data.get("tool", {}).get("telemetry-codex")
                if section is not None:
                    return section
                break
            current = current.parent
    return {}


def _get_section(section: str) -> dict:
    """Get a subsection from [tool.telemetry-codex.{section}]."""
    return _load_pyproject_settings().get(section, {})


def get_discovery_settings() -> dict:
    """Raw [tool.telemetry-codex.discovery] table (keys use dashes)."""
    return dict(_get_section("discovery"))


# ─── API settings ──────────────────────────────────────────────────────────

_REGION_ENDPOINTS: dict[str, str] = {
    "US": "https://api.newrelic.com/graphql",
    "EU": "https://api.eu.newrelic.com/graphql",
}


def get_region() -> str:
    """Get the API region.

    Priority: NEW_RELIC_REGION env → [api].region → 'US'.
    """
    if env := os.getenv("NEW_RELIC_REGION"):
        return env.upper()
    return str(_get_section("api").get("region", "US")).upper()


def get_api_endpoint() -> str:
    """Get the GraphQL endpoint URL.

    Priority: TELEMETRY_CODEX_API_ENDPOINT env → [api].endpoint → region default.
    """
    if env := os.getenv("TELEMETRY_CODEX_API_ENDPOINT"):
        return env
    if endpoint := _get_section("api").get("endpoint"):
        return str(endpoint)
    return _REGION_ENDPOINTS.get(get_region(), _REGION_ENDPOINTS["US"])


def get_api_key() -> str | None:
    """Get the API key from the environment (NEW_RELIC_API_KEY or UKEY)."""
    return os.getenv("NEW_RELIC_API_KEY") or os.getenv("UKEY")


def get_account_id() -> int | None:
    """Get the account ID from the environment (NEW_RELIC_ACCOUNT_ID or ACC).

    Returns None when unset or not an integer.
    """
    raw = os.getenv("NEW_RELIC_ACCOUNT_ID") or os.getenv("ACC")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# ─── Progress storage ──────────────────────────────────────────────────────

PROGRESS_DIR = Path.home() / ".local" / "share" / "telemetry-codex" / "progress"


def get_progress_dir() -> Path:
    """Directory holding checkpoints, backups and snapshots.

    Priority: TELEMETRY_CODEX_PROGRESS_DIR env → [tool.telemetry-codex].progress-dir
              → ~/.local/share/telemetry-codex/progress.
    """
    if env := os.getenv("TELEMETRY_CODEX_PROGRESS_DIR"):
        return Path(env).expanduser()
    if configured := _load_pyproject_settings().get("progress-dir"):
        return Path(str(configured)).expanduser()
    return PROGRESS_DIR


def get_progress_file(account_id: int | str | None) -> Path:
    """Canonical checkpoint path for an account."""
    return get_progress_dir() / f"discovery-progress-{account_id or 'unknown'}.json"
