"""Tests for the intake queue engine."""

import pytest
import threading
import time
from pathlib import Path

from src.intake.config import IntakeConfig
from src.intake.engine import IntakeEngine
from src.intake.exceptions import (
    InvalidStateForRetryError,
    NoMatchingPatternError,
    QueuedFileNotFoundError,
    ShowNotFoundError,
)
from src.intake.models import FilePattern, FileStatus, PatternType, QueuedFile, ShowProfile
from src.intake.relocator import FileRelocator
from src.intake.shows import SettingsManager, ShowStore
from src.intake.store import QueueStore


def wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_config(tmp_path: Path) -> IntakeConfig:
    return IntakeConfig(
        db_path=tmp_path / "intake.db",
        stability_ms=100,
        poll_interval_ms=20,
        stop_timeout_s=2.0,
        base_dir=tmp_path,
        global_watch_dir=tmp_path / "watch",
        default_output_dir=tmp_path / "default_out",
    )


def add_show(shows: ShowStore, name="S", pattern="MorningShow_*.mp3", output=None, watch_path=None, **kwargs):
    show = ShowProfile(
        name=name,
        output_directory=str(output) if output else "",
        file_patterns=[FilePattern(pattern, watch_path=str(watch_path) if watch_path else None)],
        **kwargs,
    )
    return shows.create_show(show)


def write_file(path: Path, data: bytes = b"audio") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def record_for(engine: IntakeEngine, filename: str):
    for record in engine.get_queue():
        if record.filename == filename:
            return record
    return None


def status_of(engine: IntakeEngine, filename: str):
    record = record_for(engine, filename)
    return record.status if record else None


class RecordingRelocator(FileRelocator):
    """Relocator that records the queue status seen while relocating."""

    def __init__(self, store: QueueStore, config: IntakeConfig):
        super().__init__(config)
        self.store = store
        self.statuses = []

    def relocate(self, source_path, show, now=None):
        record = self.store.find_by_show_and_filename(show.id, Path(source_path).name)
        self.statuses.append(record.status)
        return super().relocate(source_path, show, now)


class GatedRelocator(FileRelocator):
    """Relocator that blocks until released."""

    def __init__(self, config: IntakeConfig):
        super().__init__(config)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def relocate(self, source_path, show, now=None):
        self.calls += 1
        self.entered.set()
        self.release.wait(5.0)
        return super().relocate(source_path, show, now)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def shows(config):
    return ShowStore(config.db_path)


@pytest.fixture
def engine(config, shows):
    engine = IntakeEngine(
        shows,
        QueueStore(config.db_path),
        config=config,
        settings=SettingsManager(config.db_path),
    )
    yield engine
    engine.close()


class TestProcessing:
    """Tests for the per-file state machine."""

    def test_enqueue_then_process(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out" / "S")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")

        queued = engine.enqueue_file(show.id, source, process=False)
        assert queued.status == FileStatus.PENDING

        record = engine.process_file(queued.id)

        assert record.status == FileStatus.COMPLETED
        assert Path(record.output_path) == tmp_path / "out" / "S" / "S.mp3"
        assert Path(record.output_path).read_bytes() == b"audio"
        assert record.processed_at is not None
        assert record.processing_time_ms is not None
        assert record.error is None
        assert record.conflict_resolved is False

    def test_status_is_processing_during_relocation(self, config, shows, tmp_path):
        store = QueueStore(config.db_path)
        relocator = RecordingRelocator(store, config)
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")

        with IntakeEngine(shows, store, relocator=relocator, config=config) as engine:
            record = engine.enqueue_file(show.id, source)

        assert relocator.statuses == [FileStatus.PROCESSING]
        assert record.status == FileStatus.COMPLETED

    def test_failure_is_recorded(self, engine, shows, tmp_path):
        blocker = write_file(tmp_path / "blocked", b"not a directory")
        show = add_show(shows, output=blocker)
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")

        record = engine.enqueue_file(show.id, source)

        assert record.status == FileStatus.FAILED
        assert record.error
        assert record.output_path is None
        assert record.processed_at is not None

    def test_missing_source_fails(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")
        queued = engine.enqueue_file(show.id, source, process=False)
        source.unlink()

        record = engine.process_file(queued.id)

        assert record.status == FileStatus.FAILED
        assert "not found" in record.error

    def test_completed_record_is_not_processed_again(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")
        record = engine.enqueue_file(show.id, source)

        assert engine.process_file(record.id) is None
        assert engine.queue_store.get_file(record.id).status == FileStatus.COMPLETED
        assert not (tmp_path / "out" / "S_1.mp3").exists()

    def test_missing_record(self, engine):
        assert engine.process_file("missing") is None

    def test_missing_show_leaves_record_pending(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")
        queued = engine.enqueue_file(show.id, source, process=False)
        shows.delete_show(show.id)

        assert engine.process_file(queued.id) is None
        assert engine.queue_store.get_file(queued.id).status == FileStatus.PENDING

    def test_concurrent_attempts_for_same_record(self, config, shows, tmp_path):
        relocator = GatedRelocator(config)
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")

        with IntakeEngine(shows, QueueStore(config.db_path), relocator=relocator, config=config) as engine:
            queued = engine.enqueue_file(show.id, source, process=False)
            results = []
            worker = threading.Thread(target=lambda: results.append(engine.process_file(queued.id)))
            worker.start()

            assert relocator.entered.wait(5.0)
            assert engine.process_file(queued.id) is None

            relocator.release.set()
            worker.join(5.0)

        assert relocator.calls == 1
        assert results[0].status == FileStatus.COMPLETED

    def test_conflicting_outputs_get_suffixes(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        first = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3", b"first")
        second = write_file(tmp_path / "incoming" / "MorningShow_Ep2.mp3", b"second")

        r1 = engine.enqueue_file(show.id, first)
        r2 = engine.enqueue_file(show.id, second)

        assert Path(r1.output_path).name == "S.mp3"
        assert Path(r2.output_path).name == "S_1.mp3"
        assert r2.conflict_resolved is True
        assert (tmp_path / "out" / "S.mp3").read_bytes() == b"first"


class TestDeduplication:
    """Tests for (show, filename) deduplication."""

    def test_enqueue_twice_creates_one_record(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")

        assert engine.enqueue_file(show.id, source, process=False) is not None
        assert engine.enqueue_file(show.id, source, process=False) is None
        assert len(engine.get_queue()) == 1

    def test_detected_twice_creates_one_record(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")

        assert engine.handle_file_detected(show.id, source).status == FileStatus.COMPLETED
        assert engine.handle_file_detected(show.id, source) is None
        assert len(engine.get_queue()) == 1
        assert not (tmp_path / "out" / "S_1.mp3").exists()

    def test_same_name_in_other_folder_is_duplicate(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        engine.handle_file_detected(show.id, write_file(tmp_path / "a" / "MorningShow_Ep1.mp3"))

        assert engine.handle_file_detected(show.id, write_file(tmp_path / "b" / "MorningShow_Ep1.mp3")) is None
        assert len(engine.get_queue()) == 1

    def test_same_filename_for_two_shows(self, engine, shows, tmp_path):
        s = add_show(shows, name="S", pattern="*.mp3", output=tmp_path / "out" / "S")
        t = add_show(shows, name="T", pattern="*.mp3", output=tmp_path / "out" / "T")
        source = write_file(tmp_path / "incoming" / "shared.mp3")

        engine.handle_file_detected(s.id, source)
        engine.handle_file_detected(t.id, source)

        assert len(engine.get_queue()) == 2
        assert (tmp_path / "out" / "S" / "S.mp3").exists()
        assert (tmp_path / "out" / "T" / "T.mp3").exists()

    def test_non_matching_file_is_ignored(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "EveningShow_Ep1.mp3")

        assert engine.handle_file_detected(show.id, source) is None
        assert engine.get_queue() == []

    def test_ftp_pattern_does_not_match(self, engine, shows, tmp_path):
        show = shows.create_show(ShowProfile(
            name="S",
            output_directory=str(tmp_path / "out"),
            file_patterns=[FilePattern("*.mp3", type=PatternType.FTP)],
        ))
        source = write_file(tmp_path / "incoming" / "a.mp3")

        assert engine.handle_file_detected(show.id, source) is None

    def test_unknown_show_is_ignored(self, engine, tmp_path):
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")
        assert engine.handle_file_detected("missing", source) is None

    def test_enqueue_unknown_show(self, engine, tmp_path):
        with pytest.raises(ShowNotFoundError):
            engine.enqueue_file("missing", tmp_path / "MorningShow_Ep1.mp3")

    def test_enqueue_non_matching_file(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        with pytest.raises(NoMatchingPatternError):
            engine.enqueue_file(show.id, tmp_path / "notes.mp3")


class TestRetry:
    """Tests for retry_file and process_pending."""

    def test_retry_missing_record(self, engine):
        with pytest.raises(QueuedFileNotFoundError):
            engine.retry_file("missing")

    def test_retry_completed_record(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        record = engine.enqueue_file(show.id, write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3"))

        with pytest.raises(InvalidStateForRetryError):
            engine.retry_file(record.id)
        assert engine.queue_store.get_file(record.id).status == FileStatus.COMPLETED

    def test_retry_pending_record(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        record = engine.enqueue_file(
            show.id, write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3"), process=False
        )

        with pytest.raises(InvalidStateForRetryError):
            engine.retry_file(record.id)

    def test_retry_after_fix(self, engine, shows, tmp_path):
        blocker = write_file(tmp_path / "blocked", b"not a directory")
        show = add_show(shows, output=blocker)
        record = engine.enqueue_file(show.id, write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3"))
        assert record.status == FileStatus.FAILED

        blocker.unlink()
        retried = engine.retry_file(record.id)

        assert retried.status == FileStatus.COMPLETED
        assert retried.error is None
        assert (blocker / "S.mp3").exists()

    def test_retry_that_fails_again(self, engine, shows, tmp_path):
        blocker = write_file(tmp_path / "blocked", b"not a directory")
        show = add_show(shows, output=blocker)
        record = engine.enqueue_file(show.id, write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3"))

        retried = engine.retry_file(record.id)

        assert retried.status == FileStatus.FAILED
        assert retried.error

    def test_retry_recovered_interrupted_record(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")
        stored = engine.queue_store.add_to_queue(QueuedFile(
            filename=source.name,
            show_id=show.id,
            source_path=str(source),
            status=FileStatus.PROCESSING,
        ))

        engine.initialize()
        assert engine.queue_store.get_file(stored.id).error == "Processing interrupted"

        assert engine.retry_file(stored.id).status == FileStatus.COMPLETED

    def test_process_pending_reports_each_file(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        good = write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3")
        gone = write_file(tmp_path / "incoming" / "MorningShow_Ep2.mp3")
        r1 = engine.enqueue_file(show.id, good, process=False)
        r2 = engine.enqueue_file(show.id, gone, process=False)
        gone.unlink()

        outcomes = engine.process_pending()

        by_id = {o.file_id: o for o in outcomes}
        assert len(outcomes) == 2
        assert by_id[r1.id].status == FileStatus.COMPLETED
        assert by_id[r2.id].status == FileStatus.FAILED
        assert by_id[r2.id].error

    def test_process_pending_with_nothing_pending(self, engine):
        assert engine.process_pending() == []


class TestWatchingLifecycle:
    """Tests for starting and stopping watchers."""

    def test_status_before_start(self, engine):
        status = engine.get_status()
        assert status.is_running is False
        assert status.watched_shows == 0
        assert status.active_watchers == []

    def test_start_skips_ineligible_shows(self, engine, shows, tmp_path):
        good = add_show(shows, name="Good", output=tmp_path / "out")
        disabled = add_show(shows, name="Disabled", enabled=False)
        manual = add_show(shows, name="Manual", auto_processing=False)
        no_patterns = shows.create_show(ShowProfile(name="Empty"))

        started = engine.start_watching_shows([good.id, disabled.id, manual.id, no_patterns.id, "missing"])

        assert started == [good.id]
        status = engine.get_status()
        assert status.is_running is True
        assert status.active_watchers == [good.id]

    def test_start_is_idempotent_per_show(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")

        engine.start_watching_shows([show.id])
        engine.start_watching_shows([show.id])

        assert engine.get_status().watched_shows == 1

    def test_initialize_watches_eligible_shows(self, engine, shows, tmp_path):
        good = add_show(shows, name="Good", output=tmp_path / "out")
        add_show(shows, name="Disabled", enabled=False)

        status = engine.initialize()

        assert status.is_running is True
        assert status.active_watchers == [good.id]
        assert (tmp_path / "watch").is_dir()

    def test_stop_watching_twice(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        engine.start_watching_shows([show.id])

        assert engine.stop_watching() == 1
        assert engine.stop_watching() == 0
        assert engine.get_status().is_running is False
        assert engine.get_status().active_watchers == []

    def test_stop_watching_show(self, engine, shows, tmp_path):
        s = add_show(shows, name="S", output=tmp_path / "out")
        t = add_show(shows, name="T", pattern="EveningShow_*.mp3", output=tmp_path / "out")
        engine.start_watching_shows([s.id, t.id])

        assert engine.stop_watching_show(s.id) is True
        assert engine.stop_watching_show(s.id) is False
        assert engine.get_status().active_watchers == [t.id]

    def test_stop_last_show_stops_running(self, engine, shows, tmp_path):
        s = add_show(shows, name="S", output=tmp_path / "out")
        t = add_show(shows, name="T", pattern="EveningShow_*.mp3", output=tmp_path / "out")
        engine.start_watching_shows([s.id, t.id])

        engine.stop_watching_show(s.id)
        assert engine.is_running is True

        engine.stop_watching_show(t.id)
        status = engine.get_status()
        assert status.is_running is False
        assert status.active_watchers == []

    def test_closed_engine_ignores_detection(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        source = write_file(tmp_path / "watch" / "MorningShow_Ep1.mp3")

        engine.close()

        assert engine.handle_file_detected(show.id, source) is None
        assert engine.wait_idle(0) is True

    def test_resolve_watch_directories(self, engine, tmp_path):
        show = ShowProfile(name="S", file_patterns=[
            FilePattern("a*.mp3", watch_path=str(tmp_path / "own")),
            FilePattern("b*.mp3"),
            FilePattern("c*.mp3", watch_path=str(tmp_path / "own")),
            FilePattern("d*.mp3", type=PatternType.FTP, watch_path=str(tmp_path / "ftp")),
        ])

        directories = engine.resolve_watch_directories(show)

        assert directories == [(tmp_path / "own").resolve(), (tmp_path / "watch").resolve()]

    def test_global_watch_setting(self, engine, tmp_path):
        engine.settings.set_global_watch_directory(tmp_path / "configured")
        show = ShowProfile(name="S", file_patterns=[FilePattern("*.mp3")])

        assert engine.resolve_watch_directories(show) == [(tmp_path / "configured").resolve()]

    def test_unwatchable_directory_degrades_one_show(self, engine, shows, tmp_path):
        not_a_dir = write_file(tmp_path / "not_a_dir", b"file")
        bad = add_show(shows, name="Bad", watch_path=not_a_dir, output=tmp_path / "out")
        good = add_show(shows, name="Good", pattern="EveningShow_*.mp3", output=tmp_path / "out" / "good")

        engine.start_watching_shows([bad.id, good.id])

        errors = engine.get_watcher_errors()
        assert list(errors) == [bad.id]
        assert engine.get_status().active_watchers == [bad.id, good.id]

    def test_system_status(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        engine.enqueue_file(show.id, write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3"), process=False)

        status = engine.get_system_status()

        assert status["version"]
        assert status["is_running"] is False
        assert status["queued_files"] == 1
        assert status["status_counts"]["pending"] == 1
        assert status["watcher_errors"] == {}

    def test_remove_and_clear(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out")
        r1 = engine.enqueue_file(show.id, write_file(tmp_path / "incoming" / "MorningShow_Ep1.mp3"), process=False)
        engine.enqueue_file(show.id, write_file(tmp_path / "incoming" / "MorningShow_Ep2.mp3"), process=False)

        assert engine.remove_from_queue(r1.id) is True
        assert engine.remove_from_queue(r1.id) is False
        assert engine.clear_queue() == 1
        assert engine.get_queue() == []


class TestEndToEnd:
    """Watcher-driven scenarios with real filesystem observers."""

    def test_dropped_file_is_relocated(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out" / "S")
        engine.start_watching_shows([show.id])

        write_file(tmp_path / "watch" / "MorningShow_Ep1.mp3")

        assert wait_until(lambda: status_of(engine, "MorningShow_Ep1.mp3") == FileStatus.COMPLETED)
        assert (tmp_path / "out" / "S" / "S.mp3").read_bytes() == b"audio"
        time.sleep(0.3)
        assert len(engine.get_queue()) == 1

    def test_non_matching_drop_is_ignored(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out" / "S")
        engine.start_watching_shows([show.id])

        write_file(tmp_path / "watch" / "notes.txt", b"text")
        write_file(tmp_path / "watch" / "MorningShow_Ep1.mp3")

        assert wait_until(lambda: record_for(engine, "MorningShow_Ep1.mp3") is not None)
        assert record_for(engine, "notes.txt") is None

    def test_existing_file_processed_on_start(self, engine, shows, tmp_path):
        show = add_show(shows, output=tmp_path / "out" / "S")
        write_file(tmp_path / "watch" / "MorningShow_Ep1.mp3")

        engine.start_watching_shows([show.id])

        assert wait_until(lambda: (tmp_path / "out" / "S" / "S.mp3").exists())

    def test_failure_then_retry(self, engine, shows, tmp_path):
        blocker = write_file(tmp_path / "blocked", b"not a directory")
        s = add_show(shows, name="S", watch_path=tmp_path / "watch" / "S", output=blocker)
        t = add_show(
            shows,
            name="T",
            pattern="EveningShow_*.mp3",
            watch_path=tmp_path / "watch" / "T",
            output=tmp_path / "out" / "T",
        )
        engine.start_watching_shows([s.id, t.id])

        write_file(tmp_path / "watch" / "S" / "MorningShow_Ep1.mp3")
        assert wait_until(lambda: status_of(engine, "MorningShow_Ep1.mp3") == FileStatus.FAILED)
        failed = record_for(engine, "MorningShow_Ep1.mp3")
        assert failed.error

        status = engine.get_status()
        assert status.is_running is True
        assert status.active_watchers == [s.id, t.id]

        write_file(tmp_path / "watch" / "T" / "EveningShow_Ep1.mp3")
        assert wait_until(lambda: (tmp_path / "out" / "T" / "T.mp3").exists())
        assert wait_until(lambda: status_of(engine, "EveningShow_Ep1.mp3") == FileStatus.COMPLETED)

        blocker.unlink()
        retried = engine.retry_file(failed.id)

        assert retried.status == FileStatus.COMPLETED
        assert (blocker / "S.mp3").exists()

    def test_copy_in_progress_finishes_after_stop_watching(self, config, shows, tmp_path):
        config.stop_timeout_s = 0.3
        relocator = GatedRelocator(config)
        show = add_show(shows, output=tmp_path / "out" / "S")

        with IntakeEngine(shows, QueueStore(config.db_path), relocator=relocator, config=config) as engine:
            engine.start_watching_shows([show.id])
            write_file(tmp_path / "watch" / "MorningShow_Ep1.mp3")
            assert relocator.entered.wait(5.0)

            engine.stop_watching()
            assert status_of(engine, "MorningShow_Ep1.mp3") == FileStatus.PROCESSING

            relocator.release.set()
            assert wait_until(lambda: status_of(engine, "MorningShow_Ep1.mp3") == FileStatus.COMPLETED)

        assert (tmp_path / "out" / "S" / "S.mp3").read_bytes() == b"audio"

    def test_copy_in_progress_finishes_before_close(self, config, shows, tmp_path):
        config.stop_timeout_s = 0.3
        relocator = GatedRelocator(config)
        show = add_show(shows, output=tmp_path / "out" / "S")
        engine = IntakeEngine(shows, QueueStore(config.db_path), relocator=relocator, config=config)
        engine.start_watching_shows([show.id])

        write_file(tmp_path / "watch" / "MorningShow_Ep1.mp3")
        assert relocator.entered.wait(5.0)

        releaser = threading.Timer(0.6, relocator.release.set)
        releaser.start()
        try:
            engine.close()
        finally:
            releaser.cancel()

        assert relocator.release.is_set()
        with QueueStore(config.db_path) as store:
            records = store.get_queue()
        assert [r.status for r in records] == [FileStatus.COMPLETED]
        assert (tmp_path / "out" / "S" / "S.mp3").read_bytes() == b"audio"
