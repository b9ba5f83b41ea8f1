"""
Tests for SyncEngine lifecycle and per-operation decisions.

Live tests run a real watchdog observer against temporary directories and
poll for the expected outcome. Decision tests call process() directly on an
engine whose watcher is stubbed out, so no notifications race with them.
"""

import asyncio
import errno
import os
import re
import time
import pytest
import pytest_asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

from core.errors import RetryError, WatchError
from core.models.config import SyncSettings
from core.sync.engine import SyncEngine
from core.sync.events import EngineState, OperationOutcome, SyncOperation
from core.sync.retry import RetryableIO
from core.sync.watcher import SourceTreeWatcher

WAIT_TIMEOUT = 10.0


async def wait_until(predicate, timeout: float = WAIT_TIMEOUT, interval: float = 0.05) -> bool:
    """Poll a predicate until it holds or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class SinkRecorder:
    """Collects everything the engine reports."""

    def __init__(self):
        self.logs = []
        self.statuses = []
        self.alerts = []

    def has_log(self, fragment: str) -> bool:
        return any(fragment in line for line in self.logs)


@pytest.fixture
def dirs(tmp_path):
    source = tmp_path / "src"
    target = tmp_path / "dst"
    source.mkdir()
    target.mkdir()
    return source.resolve(), target.resolve()


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        debounce_ms=50,
        retry_base_delay_ms=1,
        supervise_interval_s=0.2,
        config_dir=tmp_path / "cfg"
    )


@pytest.fixture
def sinks():
    return SinkRecorder()


def make_engine(sinks: SinkRecorder, settings: SyncSettings, io=None) -> SyncEngine:
    return SyncEngine(
        log_sink=sinks.logs.append,
        status_sink=sinks.statuses.append,
        alert_sink=sinks.alerts.append,
        settings=settings,
        io=io
    )


def options(source: Path, target: Path, **extra):
    opts = {
        "sourceDir": str(source),
        "targetDir": str(target),
        "extensions": [".gd", ".tscn"],
        "allowDeletion": False,
    }
    opts.update(extra)
    return opts


@pytest_asyncio.fixture
async def engine(sinks, settings):
    engine = make_engine(sinks, settings)
    try:
        yield engine
    finally:
        if engine.state != EngineState.STOPPED:
            await engine.stop()


@pytest_asyncio.fixture
async def quiet_engine(sinks, settings, dirs):
    """A started engine without filesystem notifications."""
    source, target = dirs
    engine = make_engine(sinks, settings)
    with patch.object(SourceTreeWatcher, "start_monitoring", new=AsyncMock()), \
            patch.object(SourceTreeWatcher, "stop_monitoring", new=AsyncMock()):
        assert engine.start(options(source, target, allowDeletion=True, extensions=".gd,.tscn,.import"))
        assert await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)
        await wait_until(lambda: sinks.has_log("Initial sync queued"))
        assert await engine.queue.join(timeout=WAIT_TIMEOUT)
        try:
            yield engine
        finally:
            if engine.state != EngineState.STOPPED:
                await engine.stop()


class TestEngineLifecycle:
    """Start, stop and fatal error handling."""

    @pytest.mark.asyncio
    async def test_start_reports_running(self, engine, sinks, dirs):
        source, target = dirs

        assert engine.start(options(source, target)) is True
        assert engine.state == EngineState.STARTING
        assert await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)

        assert engine.is_running()
        assert sinks.statuses == [True]
        assert sinks.has_log(f"Starting watcher on: {source}")
        assert sinks.has_log(f"Target directory: {target}")
        assert sinks.has_log("Watching extensions: .gd, .tscn")
        assert sinks.has_log("File deletion is DISABLED.")
        assert sinks.has_log("Watcher ready.")

    @pytest.mark.asyncio
    async def test_log_lines_are_timestamped(self, engine, sinks, dirs):
        source, target = dirs
        engine.start(options(source, target))
        await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)

        assert sinks.logs
        assert all(re.match(r"^\[\d{2}:\d{2}:\d{2}\] ", line) for line in sinks.logs)

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, engine, sinks, dirs):
        source, target = dirs
        assert engine.start(options(source, target)) is True

        assert engine.start(options(source, target)) is False
        assert sinks.has_log("Sync service is already running.")

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, engine, sinks, dirs):
        source, target = dirs
        engine.start(options(source, target))
        await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)

        await engine.stop()
        assert engine.state == EngineState.STOPPED
        assert sinks.has_log("Stopping watcher...")
        assert sinks.has_log("Watcher stopped.")

        await engine.stop()
        assert sinks.has_log("Watcher already stopped.")
        assert sinks.statuses[-2:] == [False, False]
        assert engine.config is None

    @pytest.mark.asyncio
    async def test_stop_while_starting(self, engine, dirs):
        source, target = dirs
        engine.start(options(source, target))

        await engine.stop()

        assert engine.state == EngineState.STOPPED
        assert not engine.is_running()

    @pytest.mark.asyncio
    async def test_stop_discards_queue_before_watcher_shutdown(self, quiet_engine, sinks, dirs):
        source, target = dirs
        names = [f"q{i:02d}.gd" for i in range(50)]
        for name in names:
            (source / name).write_text(name)

        async def slow_stop_monitoring(watcher):
            await asyncio.sleep(0.5)

        copied_before = quiet_engine.metrics.files_copied
        with patch.object(SourceTreeWatcher, "stop_monitoring", new=slow_stop_monitoring):
            for name in names:
                quiet_engine.queue.enqueue(SyncOperation.created(source / name))
            await quiet_engine.stop()

        assert quiet_engine.metrics.files_copied - copied_before <= 1
        assert sum(1 for name in names if (target / name).exists()) <= 1
        assert any(re.search(r"Discarded (49|50) pending operation\(s\)\.", line) for line in sinks.logs)

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, engine, dirs):
        source, target = dirs
        engine.start(options(source, target))
        await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)
        await engine.stop()

        (source / "again.gd").write_text("again")
        assert engine.start(options(source, target)) is True
        assert await wait_until(lambda: (target / "again.gd").exists())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("layout", ["same", "target_inside_source", "source_inside_target"])
    async def test_overlapping_roots_are_rejected(self, engine, sinks, tmp_path, layout):
        outer = tmp_path / "outer"
        inner = outer / "inner"
        inner.mkdir(parents=True)
        if layout == "same":
            opts = options(outer, outer)
        elif layout == "target_inside_source":
            opts = options(outer, inner)
        else:
            opts = options(inner, outer)

        assert engine.start(opts) is False

        assert engine.state == EngineState.STOPPED
        assert engine.get_status()["watcher"] is None
        assert len(sinks.alerts) == 1
        assert sinks.has_log("Source and Target must not overlap or be the same directory")

    @pytest.mark.asyncio
    async def test_missing_directory_is_rejected(self, engine, sinks, tmp_path, dirs):
        _, target = dirs

        assert engine.start(options(tmp_path / "nope", target)) is False
        assert len(sinks.alerts) == 1
        assert sinks.has_log("Error: invalid configuration")

    @pytest.mark.asyncio
    async def test_empty_extensions_are_rejected(self, engine, sinks, dirs):
        source, target = dirs

        assert engine.start(options(source, target, extensions=" , ")) is False
        assert len(sinks.alerts) == 1

    @pytest.mark.asyncio
    async def test_watch_error_alerts_and_stops(self, engine, sinks, dirs):
        source, target = dirs
        engine.start(options(source, target))
        await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)

        engine.handle_watch_error(WatchError("inotify limit reached"))

        assert not engine.is_running()
        assert await engine.wait_for_state(EngineState.STOPPED, timeout=WAIT_TIMEOUT)
        assert len(sinks.alerts) == 1
        assert "inotify limit reached" in sinks.alerts[0]
        assert sinks.has_log("Watcher error: inotify limit reached")
        assert sinks.statuses[-1] is False
        assert engine.last_fatal_error == "inotify limit reached"

    @pytest.mark.asyncio
    async def test_watcher_start_failure_alerts_and_stops(self, engine, sinks, dirs):
        source, target = dirs
        failing = AsyncMock(side_effect=WatchError("cannot watch"))

        with patch.object(SourceTreeWatcher, "start_monitoring", new=failing):
            assert engine.start(options(source, target)) is True
            assert await engine.wait_for_state(EngineState.STOPPED, timeout=WAIT_TIMEOUT)

        assert sinks.has_log("Error starting watcher: cannot watch")
        assert len(sinks.alerts) == 1
        assert True not in sinks.statuses

    @pytest.mark.asyncio
    async def test_scan_failure_is_fatal(self, engine, sinks, dirs):
        source, target = dirs

        with patch("core.sync.engine.InitialScanner.scan", new=AsyncMock(side_effect=PermissionError(13, "denied"))):
            engine.start(options(source, target))
            assert await engine.wait_for_state(EngineState.STOPPED, timeout=WAIT_TIMEOUT)

        assert sinks.statuses == [True, False]
        assert sinks.has_log("Error during initial sync")
        assert len(sinks.alerts) == 1


class TestLiveSync:
    """End-to-end behavior with a real observer."""

    @pytest.mark.asyncio
    async def test_initial_sync_copies_eligible_files(self, engine, sinks, dirs):
        source, target = dirs
        (source / "sub").mkdir()
        (source / "a.gd").write_text("print('a')")
        (source / "sub" / "b.tscn").write_text("[gd_scene]")
        (source / "ignore.txt").write_text("nope")

        engine.start(options(source, target))

        assert await wait_until(lambda: (target / "sub" / "b.tscn").exists() and (target / "a.gd").exists())
        assert (target / "a.gd").read_text() == "print('a')"
        assert not (target / "ignore.txt").exists()
        assert sinks.has_log("Starting initial sync...")
        assert sinks.has_log("Initial sync queued (2 files).")

    @pytest.mark.asyncio
    async def test_add_change_and_delete(self, engine, sinks, dirs):
        source, target = dirs
        engine.start(options(source, target, allowDeletion=True))
        await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)

        (source / "live.gd").write_text("v1")
        assert await wait_until(lambda: (target / "live.gd").exists())
        assert sinks.has_log("File deletion is ENABLED.")

        # Make the new source mtime strictly newer than the first copy
        await asyncio.sleep(0.05)
        (source / "live.gd").write_text("v2")
        future = time.time() + 2
        os.utime(source / "live.gd", (future, future))
        assert await wait_until(lambda: (target / "live.gd").read_text() == "v2")

        (source / "live.gd").unlink()
        assert await wait_until(lambda: not (target / "live.gd").exists())
        assert sinks.has_log("Deleted: live.gd")

    @pytest.mark.asyncio
    async def test_deletion_disabled_keeps_target(self, engine, sinks, dirs):
        source, target = dirs
        (source / "keep.gd").write_text("keep")
        engine.start(options(source, target))
        assert await wait_until(lambda: (target / "keep.gd").exists())

        (source / "keep.gd").unlink()

        assert await wait_until(lambda: sinks.has_log("Deletion skipped (disabled): keep.gd"))
        assert (target / "keep.gd").exists()

    @pytest.mark.asyncio
    async def test_destination_newer_is_not_overwritten(self, engine, sinks, dirs):
        source, target = dirs
        (source / "n.gd").write_text("old")
        engine.start(options(source, target))
        assert await wait_until(lambda: (target / "n.gd").exists())

        future = time.time() + 300
        os.utime(target / "n.gd", (future, future))
        (source / "n.gd").write_text("new")

        assert await wait_until(lambda: sinks.has_log("Skipped (destination is newer): n.gd"))
        assert (target / "n.gd").read_text() == "old"

    @pytest.mark.asyncio
    async def test_hidden_files_ignored_by_default(self, engine, dirs):
        source, target = dirs
        (source / ".secret").mkdir()
        (source / ".secret" / "x.gd").write_text("x")
        (source / ".h.gd").write_text("h")
        (source / "visible.gd").write_text("v")

        engine.start(options(source, target))

        assert await wait_until(lambda: (target / "visible.gd").exists())
        await engine.queue.join(timeout=WAIT_TIMEOUT)
        assert not (target / ".h.gd").exists()
        assert not (target / ".secret").exists()

    @pytest.mark.asyncio
    async def test_reserved_directories_ignored_even_with_hidden(self, engine, dirs):
        source, target = dirs
        (source / ".godot").mkdir()
        (source / ".godot" / "cache.gd").write_text("cache")
        (source / ".import").mkdir()
        (source / ".import" / "meta.gd").write_text("meta")
        (source / ".config").mkdir()
        (source / ".config" / "c.gd").write_text("c")
        (source / "scene.tscn.import").write_text("[remap]")

        engine.start(options(source, target, includeHidden=True, extensions=".gd,.tscn,.import"))

        assert await wait_until(lambda: (target / "scene.tscn.import").exists())
        assert await wait_until(lambda: (target / ".config" / "c.gd").exists())
        await engine.queue.join(timeout=WAIT_TIMEOUT)
        assert not (target / ".godot").exists()
        assert not (target / ".import").exists()

    @pytest.mark.asyncio
    async def test_resync_of_unchanged_tree_writes_nothing(self, engine, sinks, dirs):
        source, target = dirs
        (source / "sub").mkdir()
        files = ["a.gd", os.path.join("sub", "b.tscn"), "c.gd"]
        for relative in files:
            (source / relative).write_text(relative)

        engine.start(options(source, target))
        assert await wait_until(lambda: all((target / r).exists() for r in files))
        assert await engine.queue.join(timeout=WAIT_TIMEOUT)
        await engine.stop()

        mtimes = {r: (target / r).stat().st_mtime_ns for r in files}
        copied = engine.metrics.files_copied
        sinks.logs.clear()

        engine.start(options(source, target))
        assert await wait_until(lambda: sinks.has_log("Initial sync queued (3 files)."))
        assert await engine.queue.join(timeout=WAIT_TIMEOUT)

        assert engine.metrics.files_copied == copied
        for relative in files:
            assert sinks.has_log(f"Skipped (destination is newer): {relative}")
        assert not sinks.has_log("Copied:")
        assert {r: (target / r).stat().st_mtime_ns for r in files} == mtimes

    @pytest.mark.asyncio
    async def test_no_sync_after_stop(self, engine, dirs):
        source, target = dirs
        engine.start(options(source, target))
        await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)
        await engine.stop()

        (source / "late.gd").write_text("late")
        await asyncio.sleep(0.5)

        assert not (target / "late.gd").exists()

    @pytest.mark.asyncio
    async def test_many_files(self, engine, dirs):
        source, target = dirs
        engine.start(options(source, target))
        await engine.wait_for_state(EngineState.RUNNING, timeout=WAIT_TIMEOUT)

        for i in range(60):
            (source / f"f{i:02d}.gd").write_text(f"file {i}")

        assert await wait_until(
            lambda: sum(1 for p in target.glob("*.gd")) == 60,
            timeout=20.0
        )
        assert (target / "f42.gd").read_text() == "file 42"
        assert not [p for p in target.iterdir() if RetryableIO.TEMP_MARKER in p.name]


class TestProcess:
    """Per-operation decisions, without notifications."""

    @pytest.mark.asyncio
    async def test_copy_creates_parent_directories(self, quiet_engine, dirs):
        source, target = dirs
        (source / "a" / "b").mkdir(parents=True)
        (source / "a" / "b" / "deep.gd").write_text("deep")

        result = await quiet_engine.process(SyncOperation.created(source / "a" / "b" / "deep.gd"))

        assert result.outcome == OperationOutcome.COPIED
        assert result.relative_path == os.path.join("a", "b", "deep.gd")
        assert (target / "a" / "b" / "deep.gd").read_text() == "deep"

    @pytest.mark.asyncio
    async def test_ineligible_path_is_filtered(self, quiet_engine, sinks, dirs):
        source, _ = dirs
        (source / "notes.txt").write_text("n")
        lines_before = len(sinks.logs)

        result = await quiet_engine.process(SyncOperation.created(source / "notes.txt"))

        assert result.outcome == OperationOutcome.FILTERED
        assert len(sinks.logs) == lines_before

    @pytest.mark.asyncio
    async def test_equal_mtime_counts_as_in_sync(self, quiet_engine, sinks, dirs):
        source, target = dirs
        (source / "same.gd").write_text("source")
        (target / "same.gd").write_text("target")
        stamp = time.time_ns()
        os.utime(source / "same.gd", ns=(stamp, stamp))
        os.utime(target / "same.gd", ns=(stamp, stamp))

        result = await quiet_engine.process(SyncOperation.modified(source / "same.gd"))

        assert result.outcome == OperationOutcome.SKIPPED_NEWER
        assert (target / "same.gd").read_text() == "target"
        assert sinks.has_log("Skipped (destination is newer): same.gd")

    @pytest.mark.asyncio
    async def test_source_gone(self, quiet_engine, sinks, dirs):
        source, _ = dirs

        result = await quiet_engine.process(SyncOperation.created(source / "vanished.gd"))

        assert result.outcome == OperationOutcome.SKIPPED_SOURCE_GONE
        assert sinks.has_log("Skipped (source file gone): vanished.gd")

    @pytest.mark.asyncio
    async def test_traversal_is_blocked(self, quiet_engine, sinks, dirs, tmp_path):
        source, target = dirs
        (tmp_path / "escape.gd").unlink(missing_ok=True)
        escaping = Path(str(source) + os.sep + ".." + os.sep + "escape.gd")

        result = await quiet_engine.process(SyncOperation.created(escaping))

        assert result.outcome == OperationOutcome.BLOCKED
        assert sinks.has_log("Security block: Attempted to write outside target root")
        assert not (target.parent / "escape.gd").exists()
        assert sinks.alerts == []

    @pytest.mark.asyncio
    async def test_delete_absent_target(self, quiet_engine, dirs):
        source, _ = dirs

        result = await quiet_engine.process(SyncOperation.removed(source / "never.gd"))

        assert result.outcome == OperationOutcome.ALREADY_ABSENT

    @pytest.mark.asyncio
    async def test_delete_existing_target(self, quiet_engine, sinks, dirs):
        source, target = dirs
        (target / "old.gd").write_text("old")

        result = await quiet_engine.process(SyncOperation.removed(source / "old.gd"))

        assert result.outcome == OperationOutcome.DELETED
        assert not (target / "old.gd").exists()
        assert sinks.has_log("Deleted: old.gd")

    @pytest.mark.asyncio
    async def test_copy_failure_is_logged_not_alerted(self, quiet_engine, sinks, dirs):
        source, target = dirs
        (source / "broken.gd").write_text("b")
        failure = RetryError("copyFile(tmp)", OSError(errno.EIO, "I/O error"), 1)

        with patch.object(quiet_engine.io, "atomic_copy", new=AsyncMock(side_effect=failure)):
            result = await quiet_engine.process(SyncOperation.created(source / "broken.gd"))

        assert result.outcome == OperationOutcome.FAILED
        assert sinks.has_log("Error processing file broken.gd")
        assert sinks.alerts == []
        assert quiet_engine.is_running()

    @pytest.mark.asyncio
    async def test_retry_recovers_from_busy_file(self, quiet_engine, dirs):
        source, target = dirs
        (source / "locked.gd").write_text("locked")
        io = quiet_engine.io
        original = io._copy_contents
        attempts = []

        async def busy_twice(source_path, temp_path):
            attempts.append(temp_path)
            if len(attempts) <= 2:
                raise OSError(errno.EBUSY, "Device or resource busy")
            await original(source_path, temp_path)

        with patch.object(io, "_copy_contents", side_effect=busy_twice):
            result = await quiet_engine.process(SyncOperation.created(source / "locked.gd"))

        assert result.outcome == OperationOutcome.COPIED
        assert len(attempts) >= 3
        assert (target / "locked.gd").read_text() == "locked"

    @pytest.mark.asyncio
    async def test_target_never_shows_partial_content(self, quiet_engine, dirs, tmp_path):
        source, target = dirs
        generations = [b"A" * 300000, b"B" * 300000]
        staging = tmp_path / "staging"
        staging.mkdir()
        seen = set()
        done = asyncio.Event()

        def read_target():
            try:
                return (target / "big.gd").read_bytes()
            except FileNotFoundError:
                return None

        async def reader():
            while not done.is_set():
                content = await asyncio.to_thread(read_target)
                if content is not None:
                    seen.add(content)
                await asyncio.sleep(0)

        reader_task = asyncio.create_task(reader())
        try:
            for i in range(10):
                # Source is replaced atomically so every copy reads one generation
                tmp_file = staging / "big.gd"
                tmp_file.write_bytes(generations[i % 2])
                stamp = time.time_ns() + (i + 1) * 1_000_000_000
                os.utime(tmp_file, ns=(stamp, stamp))
                os.replace(tmp_file, source / "big.gd")

                result = await quiet_engine.process(SyncOperation.modified(source / "big.gd"))
                assert result.outcome == OperationOutcome.COPIED
        finally:
            done.set()
            await reader_task

        assert seen <= set(generations)

    @pytest.mark.asyncio
    async def test_process_after_stop_is_a_no_op(self, quiet_engine, dirs):
        source, target = dirs
        (source / "x.gd").write_text("x")
        await quiet_engine.stop()

        result = await quiet_engine.process(SyncOperation.created(source / "x.gd"))

        assert result.outcome == OperationOutcome.FILTERED
        assert not (target / "x.gd").exists()

    @pytest.mark.asyncio
    async def test_status_snapshot(self, quiet_engine, dirs):
        source, _ = dirs
        (source / "s.gd").write_text("s")
        await quiet_engine.process(SyncOperation.created(source / "s.gd"))

        status = quiet_engine.get_status()

        assert status["state"] == "running"
        assert status["files_copied"] >= 1
        assert status["config"]["sourceDir"] == str(source)
        assert "queue" in status
