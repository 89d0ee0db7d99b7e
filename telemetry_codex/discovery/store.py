"""
Checkpoint persistence for discovery sessions.

A :class:`ProgressStore` owns one canonical checkpoint file plus its
rotating backups and a ``snapshots/`` directory beside it:

    progress/
        discovery-progress-1234.json                       # canonical
        discovery-progress-1234.backup-1718000000123456.json
        snapshots/
            before-upgrade-2024-06-10T08-00-00-000000+00-00.json

Writes go to ``<name>.tmp`` which is fsynced and then renamed over the
canonical path, so a reader sees either the previous checkpoint or the new
one, never a partial file.  A crash between write and rename leaves a stale
``.tmp`` behind which :meth:`ProgressStore.load` ignores.

The store is the only writer of the canonical path.  Other processes (the
``status`` command) only read it and tolerate staleness.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from telemetry_codex.discovery.errors import PersistenceError
from telemetry_codex.discovery.models import (
    CHECKPOINT_VERSION,
    PHASE_ORDER,
    Checkpoint,
    DiscoveryPhase,
    DiscoverySession,
    ProgressEstimate,
    SessionStatus,
    SnapshotInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 24 * 60 * 60  # Staleness ceiling (seconds)
DEFAULT_MAX_BACKUPS = 3
MAX_POLL_INTERVAL = 30.0  # Auto-save checks at least this often

# Share of the progress bar credited to each phase.
PHASE_WEIGHTS: dict[DiscoveryPhase, int] = {
    DiscoveryPhase.entities: 40,
    DiscoveryPhase.metadata: 20,
    DiscoveryPhase.metrics: 20,
    DiscoveryPhase.relationships: 10,
    DiscoveryPhase.samples: 10,
}

_PHASE_MESSAGES: dict[DiscoveryPhase, str] = {
    DiscoveryPhase.entities: "Discovering record kinds",
    DiscoveryPhase.metadata: "Collecting metadata",
    DiscoveryPhase.metrics: "Analyzing metrics",
    DiscoveryPhase.relationships: "Finding relationships",
    DiscoveryPhase.samples: "Collecting samples",
}

_BACKUP_RE = re.compile(r"\.backup-(\d+)\.json$")


class ProgressStore:
    """Atomic checkpoints, backups, snapshots and auto-save for one session.

    Args:
        path: Canonical checkpoint file
        max_age: Checkpoints older than this many seconds are discarded on load
        max_backups: Number of timestamped backups kept beside the checkpoint
        on_saved: Called with the path and byte size after every save
        on_checkpoint: Called with the session after every checkpoint
            (auto-save or engine phase boundary)
        clock: Wall-clock time source (epoch seconds)
    """

    def __init__(
        self,
        path: Path | str,
        *,
        max_age: float = DEFAULT_MAX_AGE,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        on_saved: Callable[[Path, int], None] | None = None,
        on_checkpoint: Callable[[DiscoverySession], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.max_age = max_age
        self.max_backups = max_backups
        self.on_saved = on_saved
        self.on_checkpoint = on_checkpoint
        self._clock = clock

        self._auto_save_task: asyncio.Task | None = None
        self._saved_revision: int | None = None
        self._last_save: float | None = None
        self.saves = 0

    @property
    def snapshot_dir(self) -> Path:
        return self.path.parent / "snapshots"

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> Checkpoint | None:
        """Read the canonical checkpoint.

        Returns None when the file is missing, unreadable, from an
        incompatible version, or older than ``max_age``.  A failed load is
        never an error: the caller starts a fresh session.
        """
        if not self.path.exists():
            logger.debug("No checkpoint at %s", self.path)
            return None
        try:
            checkpoint = Checkpoint.model_validate_json(self.path.read_bytes())
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.path, e)
            return None

        if checkpoint.version.split(".")[0] != CHECKPOINT_VERSION.split(".")[0]:
            logger.warning(
                "Ignoring checkpoint %s with incompatible version %s",
                self.path,
                checkpoint.version,
            )
            return None

        age = checkpoint.age(self._clock())
        if age > self.max_age:
            logger.info(
                "Discarding stale checkpoint %s (%.1fh old, limit %.1fh)",
                self.path,
                age / 3600,
                self.max_age / 3600,
            )
            return None

        logger.info(
            "Loaded checkpoint %s (%.0fs old, %d record kinds)",
            self.path,
            age,
            len(checkpoint.session.entities),
        )
        return checkpoint

    def save(self, session: DiscoverySession) -> Path:
        """Write ``session`` as the canonical checkpoint.

        The previous checkpoint is first copied to a timestamped backup and
        old backups are pruned.

        Raises:
            PersistenceError: If the checkpoint could not be written.  The
                previous canonical file is left untouched.
        """
        checkpoint = Checkpoint(timestamp=self._clock(), session=session)
        payload = checkpoint.model_dump_json(indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                self._backup()
            self._write_atomic(self.path, payload)
            size = self.path.stat().st_size
        except OSError as e:
            raise PersistenceError(f"Failed to save checkpoint {self.path}: {e}") from e

        self._saved_revision = session.revision
        self._last_save = self._clock()
        self.saves += 1
        logger.debug("Saved checkpoint %s (%d bytes, revision %d)", self.path, size, session.revision)
        if self.on_saved:
            try:
                self.on_saved(self.path, size)
            except Exception as e:
                logger.warning("Save callback failed: %s", e)
        return self.path

    def checkpoint(self, session: DiscoverySession) -> Path:
        """Save and notify ``on_checkpoint`` listeners."""
        path = self.save(session)
        if self.on_checkpoint:
            try:
                self.on_checkpoint(session)
            except Exception as e:
                logger.warning("Checkpoint callback failed: %s", e)
        return path

    def is_dirty(self, session: DiscoverySession) -> bool:
        return session.revision != self._saved_revision

    def _write_atomic(self, target: Path, payload: str) -> None:
        tmp = target.with_name(target.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backups(self) -> list[Path]:
        """Backup files for this checkpoint, newest first."""
        if not self.path.parent.exists():
            return []
        found: list[tuple[int, Path]] = []
        for candidate in self.path.parent.glob(f"{self.path.stem}.backup-*.json"):
            match = _BACKUP_RE.search(candidate.name)
            if match:
                found.append((int(match.group(1)), candidate))
        return [p for _, p in sorted(found, reverse=True)]

    def _backup(self) -> None:
        stamp = int(self._clock() * 1_000_000)
        backup = self.path.with_name(f"{self.path.stem}.backup-{stamp}.json")
        while backup.exists():
            stamp += 1
            backup = self.path.with_name(f"{self.path.stem}.backup-{stamp}.json")
        shutil.copy2(self.path, backup)
        self._prune_backups()

    def _prune_backups(self) -> None:
        for old in self.backups()[self.max_backups :]:
            try:
                old.unlink()
                logger.debug("Deleted old backup %s", old.name)
            except OSError as e:
                logger.debug("Failed to delete backup %s: %s", old, e)

    # ------------------------------------------------------------------
    # Auto-save
    # ------------------------------------------------------------------

    def start_auto_save(self, session: DiscoverySession, interval: float = 60.0) -> None:
        """Save ``session`` in the background while it changes.

        A save happens when the session revision moved since the last save,
        or unconditionally once per ``interval``.  Must be called from a
        running event loop.  Restarting replaces the previous task.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self._auto_save_task is not None and not self._auto_save_task.done():
            self._auto_save_task.cancel()
        self._auto_save_task = asyncio.create_task(
            self._auto_save_loop(session, interval), name="progress-auto-save"
        )

    async def stop(self) -> None:
        """Stop the auto-save task, if any."""
        task, self._auto_save_task = self._auto_save_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def auto_saving(self) -> bool:
        return self._auto_save_task is not None and not self._auto_save_task.done()

    async def _auto_save_loop(self, session: DiscoverySession, interval: float) -> None:
        poll = min(interval, MAX_POLL_INTERVAL)
        if self._last_save is None:
            self._last_save = self._clock()
        while True:
            await asyncio.sleep(poll)
            due = self._clock() - (self._last_save or 0.0) >= interval
            if not (self.is_dirty(session) or due):
                continue
            try:
                self.checkpoint(session)
            except PersistenceError as e:
                logger.warning("Auto-save failed, continuing in memory: %s", e)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self, session: DiscoverySession, label: str) -> Path:
        """Write a permanently retained copy of ``session``.

        Raises:
            PersistenceError: If the snapshot could not be written.
        """
        now = self._clock()
        stamp = datetime.fromtimestamp(now, UTC).isoformat()
        stamp = stamp.replace(":", "-").replace(".", "-")
        safe_label = re.sub(r"[^A-Za-z0-9_-]+", "-", label).strip("-") or "snapshot"
        target = self.snapshot_dir / f"{safe_label}-{stamp}.json"

        checkpoint = Checkpoint(timestamp=now, session=session, label=label)
        try:
            self.snapshot_dir.mkdir(parents=True, exist_ok=True)
            self._write_atomic(target, checkpoint.model_dump_json(indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to write snapshot {target}: {e}") from e
        logger.info("Created snapshot %r at %s", label, target)
        return target

    def list_snapshots(self) -> list[SnapshotInfo]:
        """Snapshots beside this checkpoint, newest first.

        Unreadable files are skipped with a warning.
        """
        if not self.snapshot_dir.exists():
            return []
        infos: list[SnapshotInfo] = []
        for candidate in self.snapshot_dir.glob("*.json"):
            try:
                checkpoint = Checkpoint.model_validate_json(candidate.read_bytes())
                size = candidate.stat().st_size
            except (OSError, UnicodeDecodeError, ValidationError) as e:
                logger.warning("Skipping unreadable snapshot %s: %s", candidate, e)
                continue
            infos.append(
                SnapshotInfo(
                    label=checkpoint.label or candidate.stem,
                    path=str(candidate),
                    timestamp=checkpoint.timestamp,
                    size=size,
                    entities=len(checkpoint.session.entities),
                    queries_executed=checkpoint.session.statistics.queries_executed,
                )
            )
        infos.sort(key=lambda info: info.timestamp, reverse=True)
        return infos

    def load_snapshot(self, path: Path | str) -> Checkpoint:
        """Read a snapshot regardless of its age.

        Raises:
            PersistenceError: If the file is missing or invalid.
        """
        try:
            return Checkpoint.model_validate_json(Path(path).read_bytes())
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            raise PersistenceError(f"Failed to load snapshot {path}: {e}") from e

    # ------------------------------------------------------------------
    # Progress estimate
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_progress(session: DiscoverySession) -> ProgressEstimate:
        """Heuristic percentage from which phases have produced results.

        A phase counts once it is completed or has contributed at least one
        result, so the estimate never goes backwards as the session grows.
        """
        details = {
            "entities": len(session.entities),
            "attributes": sum(len(e.attributes) for e in session.entities),
            "metric_groups": len(session.metric_groups),
            "relationships": len(session.relationships),
            "queries_executed": session.statistics.queries_executed,
            "abandoned": session.statistics.queries_abandoned,
            "completed_phases": [p.value for p in session.completed_phases],
        }
        if session.status is SessionStatus.completed:
            return ProgressEstimate(percentage=100, message="Discovery complete", details=details)

        produced = {
            DiscoveryPhase.entities: bool(session.entities),
            DiscoveryPhase.metadata: any(not e.metadata.is_empty for e in session.entities),
            DiscoveryPhase.metrics: bool(session.metric_groups),
            DiscoveryPhase.relationships: bool(session.relationships),
            DiscoveryPhase.samples: any(e.sample_data for e in session.entities),
        }
        percentage = 0
        current: DiscoveryPhase | None = None
        for phase in PHASE_ORDER:
            if session.phase_done(phase) or produced[phase]:
                percentage += PHASE_WEIGHTS[phase]
            if current is None and not session.phase_done(phase):
                current = phase

        if session.status is SessionStatus.failed:
            message = f"Discovery failed: {session.error or 'unknown error'}"
        elif current is None:
            message = "Finalizing"
        else:
            message = _PHASE_MESSAGES[current]
        return ProgressEstimate(percentage=min(percentage, 99), message=message, details=details)
