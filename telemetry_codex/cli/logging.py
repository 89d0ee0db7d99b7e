"""CLI logging configuration with file output.

Provides ``configure_cli_logging`` which sets up file logging (and
optionally a Rich console handler) for CLI commands.  Log files live under
``~/.local/share/telemetry-codex/logs/``, one per command and account:

    <command>_<account>.log   # e.g. discover_1234567.log
    <command>.log             # fallback when no account is known

Follow a running discovery with::

    tail -f ~/.local/share/telemetry-codex/logs/discover_1234567.log
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Standard log directory follows XDG convention
LOG_DIR = Path.home() / ".local" / "share" / "telemetry-codex" / "logs"

PACKAGE_LOGGER = "telemetry_codex"


def get_log_dir() -> Path:
    """Return the CLI log directory, creating it if needed."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    return LOG_DIR


def get_log_file(command: str, account: str | int | None = None) -> Path:
    """Return the log file path for a CLI command and account.

    Args:
        command: CLI command name (e.g., "discover").
        account: Optional account ID.  When provided the file is named
            ``<command>_<account>.log`` so parallel runs against different
            accounts don't interleave.
    """
    stem = f"{command}_{account}" if account else command
    return get_log_dir() / f"{stem}.log"


def configure_cli_logging(
    command: str,
    *,
    account: str | int | None = None,
    verbose: bool = False,
    console: Console | None = None,
    console_level: int | None = None,
    file_level: int = logging.DEBUG,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 3,
) -> Path:
    """Configure logging for a CLI command with file output.

    Sets up:
    - File handler: DEBUG-level rotating log at
      ``~/.local/share/telemetry-codex/logs/<command>_<account>.log``
    - Console handler (only when ``console`` is given): Rich handler at
      WARNING, or INFO when ``verbose``

    Returns:
        Path to the log file
    """
    log_file = get_log_file(command, account=account)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger(PACKAGE_LOGGER)

    # Remove handlers from earlier calls to avoid duplicates
    for handler in package_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler | RichHandler):
            package_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    package_logger.addHandler(file_handler)

    if console is not None:
        level = console_level
        if level is None:
            level = logging.INFO if verbose else logging.WARNING
        rich_handler = RichHandler(console=console, show_path=False, markup=False)
        rich_handler.setLevel(level)
        package_logger.addHandler(rich_handler)

    # NOTSET means "inherit from root", which defaults to WARNING
    if package_logger.level == logging.NOTSET or package_logger.level > file_level:
        package_logger.setLevel(file_level)

    return log_file
