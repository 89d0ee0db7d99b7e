"""Choosing between the live discovery display and plain log lines.

``discover run`` shows a Rich live panel when it owns an interactive
terminal, and otherwise streams log records so long unattended runs
(cron, CI, ``| tee``) leave a readable transcript.

The ``TELEMETRY_CODEX_RICH`` variable wins over everything else, then the
``NO_COLOR`` convention, then ``CI``, a ``dumb`` terminal and finally
whether the output stream is a TTY.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

from rich.console import Console

logger = logging.getLogger(__name__)

RICH_ENV_VAR = "TELEMETRY_CODEX_RICH"

_ENABLE = frozenset({"1", "true", "yes", "on"})
_DISABLE = frozenset({"0", "false", "no", "off"})


def rich_override() -> bool | None:
    """Explicit choice from ``TELEMETRY_CODEX_RICH``, or None when unset."""
    raw = os.environ.get(RICH_ENV_VAR, "").strip().lower()
    if not raw:
        return None
    if raw in _ENABLE:
        return True
    if raw in _DISABLE:
        return False
    logger.warning("Ignoring unrecognised %s=%r", RICH_ENV_VAR, raw)
    return None


def should_use_rich(stream: TextIO | None = None) -> bool:
    """True when ``stream`` (default stdout) can host the live display."""
    override = rich_override()
    if override is not None:
        return override

    # https://no-color.org/
    if os.environ.get("NO_COLOR") is not None:
        return False
    if os.environ.get("CI"):
        return False
    if os.environ.get("TERM") == "dumb":
        return False

    stream = stream if stream is not None else sys.stdout
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        # Closed or replaced streams
        return False


def make_console(stream: TextIO | None = None) -> Console | None:
    """Console for the live display, or None to fall back to log lines."""
    if not should_use_rich(stream):
        logger.debug("Rich output disabled, using plain log lines")
        return None
    if stream is None:
        return Console()
    # Honour an explicit TELEMETRY_CODEX_RICH=1 on a non-terminal stream
    return Console(file=stream, force_terminal=rich_override() or None)
