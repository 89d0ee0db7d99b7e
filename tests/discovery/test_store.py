"""Tests for ProgressStore checkpoints, backups, snapshots and auto-save."""

from __future__ import annotations

import asyncio
import itertools
import json
import os
from unittest.mock import MagicMock

import pytest

from telemetry_codex.discovery import store as store_module
from telemetry_codex.discovery.errors import PersistenceError
from telemetry_codex.discovery.models import (
    CHECKPOINT_VERSION,
    Checkpoint,
    DiscoveryPhase,
    DiscoverySession,
    EntityDescriptor,
    EntityMetadata,
    MetricGroup,
    SessionStatus,
)
from telemetry_codex.discovery.store import ProgressStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def session() -> DiscoverySession:
    s = DiscoverySession()
    s.add_entity(EntityDescriptor(name="Transaction", volume=1234))
    s.add_entity(EntityDescriptor(name="SystemSample", volume=99))
    s.touch()
    return s


@pytest.fixture
def path(tmp_path):
    return tmp_path / "progress" / "discovery-progress-42.json"


class TestLoadSave:
    def test_round_trip(self, path, session):
        store = ProgressStore(path)
        store.save(session)

        checkpoint = store.load()
        assert checkpoint is not None
        assert checkpoint.version == CHECKPOINT_VERSION
        assert checkpoint.session.id == session.id
        assert [e.name for e in checkpoint.session.entities] == ["Transaction", "SystemSample"]
        assert checkpoint.session.get_entity("Transaction").volume == 1234

    def test_file_layout(self, path, session):
        ProgressStore(path).save(session)
        data = json.loads(path.read_text())
        assert set(data) >= {"version", "timestamp", "session"}

    def test_missing_file_loads_none(self, path):
        assert ProgressStore(path).load() is None

    def test_corrupt_file_loads_none(self, path):
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert ProgressStore(path).load() is None

    def test_binary_garbage_loads_none(self, path):
        path.parent.mkdir(parents=True)
        path.write_bytes(b"\xff\xfe\x00garbage\x80")
        assert ProgressStore(path).load() is None

    def test_incompatible_version_loads_none(self, path, session):
        store = ProgressStore(path)
        store.save(session)
        data = json.loads(path.read_text())
        data["version"] = "2.0.0"
        path.write_text(json.dumps(data))
        assert store.load() is None

    def test_stale_checkpoint_discarded(self, path, session):
        clock = FakeClock()
        store = ProgressStore(path, max_age=24 * 3600, clock=clock)
        store.save(session)

        clock.now += 23 * 3600
        assert store.load() is not None

        clock.now += 2 * 3600
        assert store.load() is None

    def test_interrupted_write_leaves_previous_checkpoint(self, path, session):
        store = ProgressStore(path)
        store.save(session)

        # A crash mid-write leaves a partial temp file behind
        store.temp_path.write_text('{"version": "1.0.0", "sess')

        checkpoint = store.load()
        assert checkpoint is not None
        assert checkpoint.session.id == session.id

    def test_failed_rename_raises_and_keeps_last_good(self, path, session, monkeypatch):
        store = ProgressStore(path)
        store.save(session)
        before = path.read_text()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(store_module.os, "replace", broken_replace)
        session.add_entity(EntityDescriptor(name="Log", volume=5))
        session.touch()

        with pytest.raises(PersistenceError):
            store.save(session)

        assert path.read_text() == before
        assert not store.temp_path.exists()

    def test_on_saved_callback(self, path, session):
        on_saved = MagicMock()
        store = ProgressStore(path, on_saved=on_saved)
        store.save(session)
        saved_path, size = on_saved.call_args[0]
        assert saved_path == path
        assert size == os.path.getsize(path)

    def test_checkpoint_notifies(self, path, session):
        on_checkpoint = MagicMock()
        store = ProgressStore(path, on_checkpoint=on_checkpoint)
        store.checkpoint(session)
        on_checkpoint.assert_called_once_with(session)

    def test_dirty_tracking(self, path, session):
        store = ProgressStore(path)
        assert store.is_dirty(session)
        store.save(session)
        assert not store.is_dirty(session)
        session.touch()
        assert store.is_dirty(session)


class TestBackups:
    def test_rotation_keeps_newest_three(self, path, session):
        ticks = itertools.count(1_700_000_000.0, 1.0)
        store = ProgressStore(path, max_backups=3, clock=lambda: next(ticks))

        for _ in range(6):
            session.touch()
            store.save(session)

        backups = store.backups()
        assert len(backups) == 3
        revisions = [
            Checkpoint.model_validate_json(b.read_text()).session.revision for b in backups
        ]
        current = Checkpoint.model_validate_json(path.read_text()).session.revision
        assert revisions == [current - 1, current - 2, current - 3]

    def test_backup_names(self, path, session):
        store = ProgressStore(path)
        store.save(session)
        store.save(session)
        (backup,) = store.backups()
        assert backup.name.startswith("discovery-progress-42.backup-")
        assert backup.suffix == ".json"

    def test_same_instant_backups_do_not_collide(self, path, session):
        store = ProgressStore(path, clock=FakeClock())
        for _ in range(4):
            store.save(session)
        assert len(store.backups()) == 3


class TestSnapshots:
    def test_snapshot_and_list(self, path, session):
        clock = FakeClock()
        store = ProgressStore(path, clock=clock)

        first = store.snapshot(session, "before upgrade")
        clock.now += 60
        second = store.snapshot(session, "after")

        assert first.parent == path.parent / "snapshots"
        assert first.name.startswith("before-upgrade-")
        assert ":" not in first.name

        infos = store.list_snapshots()
        assert [i.label for i in infos] == ["after", "before upgrade"]
        assert infos[0].path == str(second)
        assert infos[0].entities == 2

    def test_snapshots_ignore_staleness(self, path, session):
        clock = FakeClock()
        store = ProgressStore(path, max_age=10, clock=clock)
        snap = store.snapshot(session, "old")
        clock.now += 10_000
        assert store.load_snapshot(snap).session.id == session.id

    def test_load_missing_snapshot_raises(self, path):
        with pytest.raises(PersistenceError):
            ProgressStore(path).load_snapshot(path.parent / "snapshots" / "nope.json")

    def test_list_skips_unreadable(self, path, session):
        store = ProgressStore(path)
        store.snapshot(session, "good")
        (store.snapshot_dir / "broken.json").write_text("nope")
        (store.snapshot_dir / "binary.json").write_bytes(b"\xff\xfe\x80")
        assert [i.label for i in store.list_snapshots()] == ["good"]

    def test_load_binary_snapshot_raises(self, path):
        store = ProgressStore(path)
        store.snapshot_dir.mkdir(parents=True)
        garbage = store.snapshot_dir / "garbage.json"
        garbage.write_bytes(b"\xff\xfe\x00\x80")
        with pytest.raises(PersistenceError):
            store.load_snapshot(garbage)

    def test_list_without_directory(self, path):
        assert ProgressStore(path).list_snapshots() == []


class TestAutoSave:
    @pytest.mark.asyncio
    async def test_saves_in_background(self, path, session):
        on_checkpoint = MagicMock()
        store = ProgressStore(path, on_checkpoint=on_checkpoint)

        store.start_auto_save(session, interval=0.02)
        assert store.auto_saving
        session.touch()
        await asyncio.sleep(0.15)
        await store.stop()

        assert not store.auto_saving
        assert path.exists()
        assert on_checkpoint.called
        assert store.load().session.revision == session.revision

    @pytest.mark.asyncio
    async def test_stop_without_start(self, path):
        await ProgressStore(path).stop()

    @pytest.mark.asyncio
    async def test_rejects_non_positive_interval(self, path, session):
        with pytest.raises(ValueError):
            ProgressStore(path).start_auto_save(session, interval=0)


class TestEstimateProgress:
    def test_progress_is_monotonic_across_phases(self):
        session = DiscoverySession()
        seen = [ProgressStore.estimate_progress(session).percentage]

        session.add_entity(EntityDescriptor(name="Transaction", volume=10))
        seen.append(ProgressStore.estimate_progress(session).percentage)

        session.mark_phase_done(DiscoveryPhase.entities)
        session.entities[0].metadata = EntityMetadata(entity_count=2)
        seen.append(ProgressStore.estimate_progress(session).percentage)

        session.mark_phase_done(DiscoveryPhase.metadata)
        session.metric_groups.append(MetricGroup(name="kafka"))
        seen.append(ProgressStore.estimate_progress(session).percentage)

        for phase in (DiscoveryPhase.metrics, DiscoveryPhase.relationships):
            session.mark_phase_done(phase)
            seen.append(ProgressStore.estimate_progress(session).percentage)

        session.status = SessionStatus.completed
        seen.append(ProgressStore.estimate_progress(session).percentage)

        assert seen == sorted(seen)
        assert seen[0] == 0
        assert seen[1] == 40
        assert seen[2] == 60
        assert seen[-1] == 100

    def test_message_names_current_phase(self):
        session = DiscoverySession()
        session.mark_phase_done(DiscoveryPhase.entities)
        estimate = ProgressStore.estimate_progress(session)
        assert estimate.message == "Collecting metadata"
        assert estimate.details["completed_phases"] == ["entities"]

    def test_failed_session_keeps_percentage(self):
        session = DiscoverySession()
        session.add_entity(EntityDescriptor(name="Log", volume=1))
        session.status = SessionStatus.failed
        session.error = "bad key"
        estimate = ProgressStore.estimate_progress(session)
        assert estimate.percentage == 40
        assert "bad key" in estimate.message
