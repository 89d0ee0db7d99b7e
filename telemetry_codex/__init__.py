"""Telemetry Codex - rate-limited discovery of remote telemetry stores."""

__version__ = "0.4.0"
