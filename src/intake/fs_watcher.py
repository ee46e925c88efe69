"""Per-show directory watching using the watchdog library."""

import logging
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from watchdog.observers import Observer
from watchdog.events import (
    FileSystemEventHandler,
    DirDeletedEvent,
    DirMovedEvent,
)

from .config import IntakeConfig
from .exceptions import WatcherError
from .models import FileAppearedEvent
from .stability import StabilityTracker

logger = logging.getLogger(__name__)

_STOP = object()


class FSEventHandler(FileSystemEventHandler):
    """Handler that converts watchdog file events to FileAppearedEvent."""

    def __init__(
        self,
        callback: Callable[[FileAppearedEvent], None],
        config: IntakeConfig,
        show_id: str,
        root: Path,
        on_error: Optional[Callable[[WatcherError], None]] = None,
    ):
        super().__init__()
        self.callback = callback
        self.config = config
        self.show_id = show_id
        self.root = root
        self.on_error = on_error

    def _emit(self, path: Path):
        """Emit a FileAppearedEvent to the callback."""
        if self.config.should_ignore(path, self.root):
            return
        self.callback(FileAppearedEvent(show_id=self.show_id, path=path, timestamp=time.time()))

    def on_created(self, event):
        if not event.is_directory:
            self._emit(Path(event.src_path))

    def on_modified(self, event):
        if not event.is_directory:
            self._emit(Path(event.src_path))

    def on_closed(self, event):
        if not event.is_directory:
            self._emit(Path(event.src_path))

    def on_moved(self, event):
        if isinstance(event, DirMovedEvent):
            if Path(event.src_path) == self.root:
                self._report(f"Watch directory moved away: {self.root}")
            return
        self._emit(Path(event.dest_path))

    def on_deleted(self, event):
        if isinstance(event, DirDeletedEvent) and Path(event.src_path) == self.root:
            self._report(f"Watch directory removed: {self.root}")

    def _report(self, message: str):
        error = WatcherError(message)
        if self.on_error:
            self.on_error(error)
        else:
            logger.error(str(error))


class ShowWatcher:
    """
    Watches every directory of one show with a single observer.

    Observer callbacks only enqueue events; one worker thread per show
    consumes them, waits for each file to become stable, and hands ready
    files to `on_file_ready` in the order they were first seen. Ready
    files are therefore processed one at a time per show.
    """

    def __init__(
        self,
        show_id: str,
        directories: Iterable[Path],
        on_file_ready: Callable[[str, Path], None],
        config: Optional[IntakeConfig] = None,
    ):
        """
        Initialize the show watcher.

        Args:
            show_id: Show this watcher belongs to
            directories: Directories to observe
            on_file_ready: Called with (show_id, path) for each stable file
            config: Intake configuration
        """
        self.show_id = show_id
        self.directories = list(dict.fromkeys(Path(d) for d in directories))
        self.on_file_ready = on_file_ready
        self.config = config or IntakeConfig()

        self._events: "queue.Queue" = queue.Queue()
        self._tracker = StabilityTracker(self.config.stability_ms)
        self._observer: Optional[Observer] = None
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._errors: List[str] = []
        self._errors_lock = threading.Lock()

    def start(self) -> None:
        """
        Start observing and queue files that already exist.

        Directories that cannot be observed are reported as watcher
        errors; the remaining directories are still watched.
        """
        self._stop_event.clear()
        self._worker = threading.Thread(
            target=self._run,
            name=f"ShowWatcher-{self.show_id}",
            daemon=True,
        )
        self._worker.start()

        observer = Observer()
        observer.start()
        self._observer = observer

        for directory in self.directories:
            handler = FSEventHandler(
                self._events.put,
                self.config,
                self.show_id,
                directory,
                on_error=self._record_error,
            )
            try:
                observer.schedule(handler, str(directory), recursive=self.config.recursive)
            except Exception as e:
                self._record_error(WatcherError(f"Cannot watch {directory}: {e}"))
                continue
            logger.debug(f"Show {self.show_id}: observing {directory}")

        self._scan_existing()

    def _scan_existing(self) -> None:
        """Queue every file already present in the watch directories."""
        for directory in self.directories:
            if not directory.is_dir():
                continue
            try:
                entries = directory.rglob("*") if self.config.recursive else directory.iterdir()
                files = sorted(p for p in entries if p.is_file())
            except OSError as e:
                self._record_error(WatcherError(f"Cannot scan {directory}: {e}"))
                continue

            for path in files:
                if not self.config.should_ignore(path, directory):
                    self._events.put(FileAppearedEvent(show_id=self.show_id, path=path))

    def _run(self) -> None:
        """Worker loop: feed the stability tracker and deliver ready files."""
        poll_interval = self.config.poll_interval_ms / 1000.0

        while True:
            try:
                event = self._events.get(timeout=poll_interval)
            except queue.Empty:
                event = None

            if event is _STOP:
                break
            if event is not None:
                self._tracker.observe(event.path, event.timestamp)

            for path in self._tracker.flush(time.time()):
                if self._stop_event.is_set():
                    break
                try:
                    self.on_file_ready(self.show_id, path)
                except Exception:
                    logger.exception(f"Error handling {path} for show {self.show_id}")

        logger.debug(f"Show {self.show_id}: worker stopped")

    def _record_error(self, error: WatcherError) -> None:
        logger.error(f"Watcher error for show {self.show_id}: {error}")
        with self._errors_lock:
            self._errors.append(str(error))

    def signal_stop(self) -> None:
        """Stop producing events without waiting for threads."""
        self._stop_event.set()
        if self._observer is not None:
            self._observer.stop()
        self._events.put(_STOP)

    def join(self, timeout: Optional[float] = None) -> None:
        """
        Wait for the observer and worker to finish.

        A file already being processed is allowed to finish; if that
        takes longer than the timeout it completes in the background.
        """
        if self._observer is not None:
            self._observer.join(timeout=timeout)
        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join(timeout=timeout)
        self._tracker.clear()

    def stop(self) -> None:
        """Stop the watcher and wait for it."""
        self.signal_stop()
        self.join(timeout=self.config.stop_timeout_s)

    @property
    def errors(self) -> List[str]:
        with self._errors_lock:
            return list(self._errors)

    @property
    def is_degraded(self) -> bool:
        """True once any watcher error has been recorded."""
        with self._errors_lock:
            return bool(self._errors)

    @property
    def is_alive(self) -> bool:
        return self._worker is not None and self._worker.is_alive() and not self._stop_event.is_set()


class ShowWatcherPool:
    """
    Manages one ShowWatcher per show.

    Starting a show that is already watched closes the old watcher
    before the new one replaces it; both steps happen under a per-show
    lock so concurrent starts for the same show cannot interleave.
    """

    def __init__(
        self,
        on_file_ready: Callable[[str, Path], None],
        config: Optional[IntakeConfig] = None,
    ):
        """
        Initialize the watcher pool.

        Args:
            on_file_ready: Callback for stable files, called with (show_id, path)
            config: Intake configuration
        """
        self.on_file_ready = on_file_ready
        self.config = config or IntakeConfig()
        self._watchers: Dict[str, ShowWatcher] = {}
        self._show_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _show_lock(self, show_id: str) -> threading.Lock:
        with self._lock:
            return self._show_locks.setdefault(show_id, threading.Lock())

    def start_watching(self, show_id: str, directories: Iterable[Path]) -> ShowWatcher:
        """
        Start (or restart) watching a show's directories.

        Args:
            show_id: Show to watch
            directories: Directories holding the show's incoming files

        Returns:
            The running watcher
        """
        with self._show_lock(show_id):
            with self._lock:
                existing = self._watchers.pop(show_id, None)
            if existing is not None:
                logger.info(f"Replacing existing watcher for show {show_id}")
                existing.stop()

            watcher = ShowWatcher(show_id, directories, self.on_file_ready, self.config)
            watcher.start()

            with self._lock:
                self._watchers[show_id] = watcher
            return watcher

    def stop_watching(self, show_id: str) -> bool:
        """
        Stop watching a show.

        Returns:
            True if watching stopped, False if not watching
        """
        with self._show_lock(show_id):
            with self._lock:
                watcher = self._watchers.pop(show_id, None)
            if watcher is None:
                return False
            watcher.stop()
            return True

    def stop_all(self) -> int:
        """
        Stop all watchers. Safe to call when nothing is running.

        Returns:
            Number of watchers stopped
        """
        with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()

        for watcher in watchers:
            watcher.signal_stop()

        for watcher in watchers:
            watcher.join(timeout=self.config.stop_timeout_s)

        return len(watchers)

    def is_watching(self, show_id: str) -> bool:
        with self._lock:
            return show_id in self._watchers

    def get_watcher(self, show_id: str) -> Optional[ShowWatcher]:
        with self._lock:
            return self._watchers.get(show_id)

    def get_watched_shows(self) -> List[str]:
        """Get ids of shows currently watched, in start order."""
        with self._lock:
            return list(self._watchers.keys())

    def __len__(self) -> int:
        """Return the number of active watchers."""
        with self._lock:
            return len(self._watchers)
