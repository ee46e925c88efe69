"""Intake queue engine: watch, match, queue, relocate, retry."""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set, Union

from .config import IntakeConfig
from .exceptions import (
    InvalidStateForRetryError,
    NoMatchingPatternError,
    QueuedFileNotFoundError,
    ShowNotFoundError,
    UnknownProcessingError,
)
from .fs_watcher import ShowWatcherPool
from .models import (
    FileStatus,
    ProcessOutcome,
    QueuedFile,
    RelocationResult,
    ShowProfile,
    WatcherStatus,
)
from .patterns import find_matching_pattern
from .relocator import FileRelocator
from .shows import SettingsManager
from .store import QueueStore
from .version import __version__

logger = logging.getLogger(__name__)


class ShowSource(Protocol):
    """Read-only show configuration consumed by the engine."""

    def get_all_shows(self) -> List[ShowProfile]: ...

    def get_show(self, show_id: str) -> Optional[ShowProfile]: ...


class IntakeEngine:
    """
    Main orchestrator for file intake.

    Owns the per-show watchers and drives each queued file through
    pending -> processing -> completed | failed. Failed files return to
    pending only through an explicit retry.

    The engine is constructed explicitly and handed to its callers; its
    lifecycle is controlled with initialize() and stop().
    """

    def __init__(
        self,
        show_source: ShowSource,
        queue_store: QueueStore,
        relocator: Optional[FileRelocator] = None,
        config: Optional[IntakeConfig] = None,
        settings: Optional[SettingsManager] = None,
    ):
        """
        Initialize the engine.

        Args:
            show_source: Show configuration source
            queue_store: Durable queue store
            relocator: File relocator (built from config if omitted)
            config: Intake configuration
            settings: Persisted settings with directory overrides
        """
        self.config = config or IntakeConfig()
        self.show_source = show_source
        self.queue_store = queue_store
        self.relocator = relocator or FileRelocator(self.config, settings)
        self.settings = settings

        self._watcher_pool = ShowWatcherPool(self.handle_file_detected, self.config)
        self._in_flight: Set[str] = set()
        self._active_calls = 0
        self._closing = False
        self._activity = threading.Condition()
        self._running = False
        self._lock = threading.Lock()
        self._started_at = time.time()

    # --- Lifecycle ---

    def initialize(self) -> WatcherStatus:
        """
        Recover interrupted records and watch every eligible show.

        Returns:
            Status after start-up
        """
        logger.info("Initializing intake engine...")
        self.queue_store.recover_interrupted()

        shows = [show for show in self.show_source.get_all_shows() if show.enabled and show.auto_processing]
        self.start_watching_shows([show.id for show in shows])

        logger.info(f"Intake engine initialized with {len(self._watcher_pool)} show(s)")
        return self.get_status()

    def start_watching_shows(self, show_ids: List[str]) -> List[str]:
        """
        Start watching the given shows.

        Unknown, disabled, non-auto-processing and pattern-less shows are
        skipped with a warning. Starting an already watched show replaces
        its watcher.

        Args:
            show_ids: Shows to watch

        Returns:
            Ids of shows that are now watched
        """
        logger.info(f"Starting to watch {len(show_ids)} show(s)")
        started = []

        for show_id in show_ids:
            if self._start_watching_show(show_id):
                started.append(show_id)

        with self._lock:
            self._running = True

        logger.info("File watching started")
        return started

    def _start_watching_show(self, show_id: str) -> bool:
        show = self.show_source.get_show(show_id)
        if show is None:
            logger.warning(f"Show {show_id} not found, skipping")
            return False
        if not show.enabled:
            logger.warning(f"Show {show.name} ({show_id}) is disabled, skipping")
            return False
        if not show.auto_processing:
            logger.warning(f"Show {show.name} ({show_id}) has auto-processing off, skipping")
            return False

        watch_patterns = show.watch_patterns()
        if not watch_patterns:
            logger.warning(f"No watch patterns found for show: {show.name}")
            return False

        directories = self.resolve_watch_directories(show)
        for directory in directories:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create watch directory {directory}: {e}")

        self._watcher_pool.start_watching(show.id, directories)

        pattern_list = ", ".join(p.pattern for p in watch_patterns)
        dir_list = ", ".join(str(d) for d in directories)
        logger.info(f"Started watching {show.name}: patterns [{pattern_list}] in directories [{dir_list}]")
        return True

    def resolve_watch_directories(self, show: ShowProfile) -> List[Path]:
        """
        Directories to observe for a show, one per distinct watch path.

        Patterns without their own watch path use the global watch
        directory (the persisted setting, else the configured default).
        """
        global_dir = None
        if self.settings is not None:
            global_dir = self.settings.get_global_watch_directory()
        global_dir = global_dir or self.config.global_watch_dir

        directories = []
        for pattern in show.watch_patterns():
            directory = Path(pattern.watch_path).expanduser() if pattern.watch_path else global_dir
            if not directory.is_absolute():
                directory = self.config.base_dir / directory
            directory = directory.resolve()
            if directory not in directories:
                directories.append(directory)
        return directories

    def stop_watching(self) -> int:
        """
        Stop and clear all watchers. Safe to call repeatedly.

        Files already being processed finish their attempt.

        Returns:
            Number of watchers stopped
        """
        logger.info("Stopping file watchers...")
        count = self._watcher_pool.stop_all()

        with self._lock:
            self._running = False

        logger.info(f"All file watchers stopped ({count})")
        return count

    def stop_watching_show(self, show_id: str) -> bool:
        """
        Stop watching a single show.

        Watching is reported as stopped once no show is left.

        Returns:
            True if the show was being watched
        """
        stopped = self._watcher_pool.stop_watching(show_id)
        if stopped:
            logger.info(f"Stopped watching show: {show_id}")

        with self._lock:
            if len(self._watcher_pool) == 0:
                self._running = False

        return stopped

    def stop(self) -> None:
        """Stop the engine."""
        self.stop_watching()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no detection or processing attempt is running.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely

        Returns:
            True if the engine is idle
        """
        with self._activity:
            return self._activity.wait_for(lambda: self._active_calls == 0, timeout)

    def close(self) -> None:
        """
        Stop watching and close the queue store.

        New detections are refused from here on. Detections and attempts
        already running finish and record their outcome before the store
        is closed.
        """
        with self._activity:
            self._closing = True

        self.stop()

        if not self.wait_idle(0):
            logger.info("Waiting for in-flight files to finish...")
            self.wait_idle()

        self.queue_store.close()

    def _enter(self) -> bool:
        with self._activity:
            if self._closing:
                return False
            self._active_calls += 1
            return True

    def _leave(self) -> None:
        with self._activity:
            self._active_calls -= 1
            self._activity.notify_all()

    # --- Detection ---

    def handle_file_detected(self, show_id: str, path: Union[str, Path]) -> Optional[QueuedFile]:
        """
        React to a stable file appearing in one of a show's directories.

        Non-matching files and files already queued for the show are
        ignored. New files are queued as pending and processed at once.

        Args:
            show_id: Show whose watcher saw the file
            path: Path of the file

        Returns:
            The processed record, or None if the file was ignored
        """
        path = Path(path)
        filename = path.name

        if not self._enter():
            logger.debug(f"Engine is closing, ignoring {filename}")
            return None

        try:
            return self._handle_detected(show_id, path)
        finally:
            self._leave()

    def _handle_detected(self, show_id: str, path: Path) -> Optional[QueuedFile]:
        filename = path.name

        show = self.show_source.get_show(show_id)
        if show is None:
            logger.error(f"File {filename} detected for unknown show {show_id}")
            return None

        if find_matching_pattern(filename, show.file_patterns) is None:
            logger.debug(f"File {filename} doesn't match any pattern for show {show.name}")
            return None

        record = self.queue_store.add_if_absent(
            QueuedFile(filename=filename, show_id=show.id, source_path=str(path))
        )
        if record is None:
            logger.debug(f"File {filename} already in queue for show {show.name}")
            return None

        logger.info(f"New file detected: {filename} for show: {show.name}")
        return self.process_file(record.id)

    def enqueue_file(self, show_id: str, path: Union[str, Path], process: bool = True) -> Optional[QueuedFile]:
        """
        Queue a file manually.

        Args:
            show_id: Owning show
            path: File to queue
            process: Process the file immediately

        Returns:
            The new record, or None if the (show, filename) pair was
            already queued

        Raises:
            ShowNotFoundError: Unknown show
            NoMatchingPatternError: Filename matches none of the show's watch patterns
        """
        path = Path(path)
        show = self.show_source.get_show(show_id)
        if show is None:
            raise ShowNotFoundError(f"Show not found: {show_id}")

        if find_matching_pattern(path.name, show.file_patterns) is None:
            raise NoMatchingPatternError(f"{path.name} matches no watch pattern of show {show.name}")

        record = self.queue_store.add_if_absent(
            QueuedFile(filename=path.name, show_id=show.id, source_path=str(path.resolve()))
        )
        if record is None:
            logger.info(f"File {path.name} already in queue for show {show.name}")
            return None

        if process:
            return self.process_file(record.id)
        return record

    # --- Processing ---

    def process_file(self, file_id: str) -> Optional[QueuedFile]:
        """
        Run one processing attempt for a pending record.

        The record is claimed with an atomic pending -> processing
        transition before any file I/O. If the record or its show is
        missing, or the claim fails, nothing changes.

        Args:
            file_id: Record to process

        Returns:
            The record after the attempt, or None if no attempt was made
        """
        with self._activity:
            if file_id in self._in_flight:
                logger.warning(f"File {file_id} is already being processed")
                return None
            self._in_flight.add(file_id)
            self._active_calls += 1

        try:
            return self._process(file_id)
        finally:
            with self._activity:
                self._in_flight.discard(file_id)
                self._active_calls -= 1
                self._activity.notify_all()

    def _process(self, file_id: str) -> Optional[QueuedFile]:
        record = self.queue_store.get_file(file_id)
        if record is None:
            logger.error(f"File {file_id} not found in queue")
            return None

        show = self.show_source.get_show(record.show_id)
        if show is None:
            logger.error(f"Show {record.show_id} not found for queued file {record.filename}")
            return None

        if not self.queue_store.transition(file_id, FileStatus.PENDING, FileStatus.PROCESSING):
            current = self.queue_store.get_file(file_id)
            state = current.status.value if current else "removed"
            logger.warning(f"Not processing {record.filename}: status is {state}")
            return None

        logger.info(f"Processing file: {record.filename}")
        start = time.monotonic()

        try:
            result = self.relocator.relocate(record.source_path, show)
        except Exception as e:
            logger.exception(f"Relocator raised for {record.filename}")
            result = RelocationResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                error_code=UnknownProcessingError.code,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)

        if result.success:
            self.queue_store.transition(
                file_id,
                FileStatus.PROCESSING,
                FileStatus.COMPLETED,
                output_path=str(result.output_path),
                error=None,
                processed_at=time.time(),
                processing_time_ms=elapsed_ms,
                conflict_resolved=result.conflict_resolved,
            )
            logger.info(f"Successfully processed: {record.filename} -> {result.output_path}")
        else:
            self.queue_store.transition(
                file_id,
                FileStatus.PROCESSING,
                FileStatus.FAILED,
                error=result.error or "Processing failed",
                processed_at=time.time(),
                processing_time_ms=elapsed_ms,
            )
            logger.error(f"Failed to process {record.filename}: [{result.error_code}] {result.error}")

        return self.queue_store.get_file(file_id)

    def retry_file(self, file_id: str) -> Optional[QueuedFile]:
        """
        Re-open a failed record and process it again.

        Args:
            file_id: Record to retry

        Returns:
            The record after the new attempt

        Raises:
            QueuedFileNotFoundError: No such record
            InvalidStateForRetryError: The record is not in the failed state
        """
        record = self.queue_store.get_file(file_id)
        if record is None:
            raise QueuedFileNotFoundError(f"File {file_id} not found in queue")

        if not self.queue_store.transition(
            file_id,
            FileStatus.FAILED,
            FileStatus.PENDING,
            error=None,
            processed_at=None,
            processing_time_ms=None,
        ):
            current = self.queue_store.get_file(file_id)
            if current is None:
                raise QueuedFileNotFoundError(f"File {file_id} not found in queue")
            raise InvalidStateForRetryError(
                f"File {file_id} is {current.status.value}, only failed files can be retried"
            )

        logger.info(f"Retrying file: {record.filename}")
        return self.process_file(file_id)

    def process_pending(self) -> List[ProcessOutcome]:
        """
        Process every record currently pending.

        Returns:
            One outcome per record; failures are reported per file
        """
        outcomes = []

        for record in self.queue_store.get_by_status(FileStatus.PENDING):
            try:
                result = self.process_file(record.id)
            except Exception as e:
                logger.exception(f"Error processing pending file {record.id}")
                outcomes.append(ProcessOutcome(record.id, None, str(e)))
                continue

            if result is None:
                outcomes.append(ProcessOutcome(record.id, None, "Not processed"))
            else:
                outcomes.append(ProcessOutcome(record.id, result.status, result.error))

        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(f"Processed {len(outcomes)} pending file(s): {succeeded} completed")
        return outcomes

    # --- Queries ---

    def get_status(self) -> WatcherStatus:
        """Report whether watching is active and which shows are watched."""
        with self._lock:
            running = self._running
        watched = self._watcher_pool.get_watched_shows()
        return WatcherStatus(
            is_running=running,
            watched_shows=len(watched),
            active_watchers=watched,
        )

    def get_watcher_errors(self) -> Dict[str, List[str]]:
        """Get recorded watcher errors per watched show."""
        errors = {}
        for show_id in self._watcher_pool.get_watched_shows():
            watcher = self._watcher_pool.get_watcher(show_id)
            if watcher is not None and watcher.is_degraded:
                errors[show_id] = watcher.errors
        return errors

    def get_queue(self) -> List[QueuedFile]:
        return self.queue_store.get_queue()

    def remove_from_queue(self, file_id: str) -> bool:
        return self.queue_store.remove_from_queue(file_id)

    def clear_queue(self) -> int:
        return self.queue_store.clear_queue()

    def get_system_status(self) -> dict:
        """Summary of watching state and queue counts."""
        counts = self.queue_store.count_by_status()
        status = self.get_status()
        return {
            "version": __version__,
            "uptime_s": round(time.time() - self._started_at, 1),
            "is_running": status.is_running,
            "watched_shows": status.watched_shows,
            "active_watchers": status.active_watchers,
            "queued_files": sum(counts.values()),
            "status_counts": counts,
            "watcher_errors": self.get_watcher_errors(),
        }

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
