"""Write-completion detection for newly appeared files."""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple


@dataclass
class PendingFile:
    """A file waiting for its size and mtime to settle."""
    path: Path
    size: int
    mtime: float
    stable_since: float


class StabilityTracker:
    """
    Holds back file events until the file has stopped changing.

    A file is ready once its (size, mtime) signature has stayed the
    same for the stability window. Any change restarts the window;
    files that disappear are dropped. Ready files are released in the
    order they were first observed.
    """

    def __init__(self, stability_ms: int = 2000):
        """
        Initialize the tracker.

        Args:
            stability_ms: Quiet period in milliseconds
        """
        self.stability_ms = stability_ms
        self._pending: Dict[Path, PendingFile] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _signature(path: Path) -> Optional[Tuple[int, float]]:
        try:
            stat = path.stat()
        except OSError:
            return None
        return stat.st_size, stat.st_mtime

    def observe(self, path: Path, timestamp: float) -> None:
        """
        Record that a file appeared or changed.

        Args:
            path: File that changed
            timestamp: When the change was seen
        """
        signature = self._signature(path)

        with self._lock:
            if signature is None:
                self._pending.pop(path, None)
                return

            existing = self._pending.get(path)
            if existing is None:
                self._pending[path] = PendingFile(path, signature[0], signature[1], timestamp)
            elif (existing.size, existing.mtime) != signature:
                existing.size, existing.mtime = signature
                existing.stable_since = timestamp

    def flush(self, current_time: float) -> List[Path]:
        """
        Release files whose signature held for the whole window.

        Args:
            current_time: Current timestamp

        Returns:
            Paths that are ready, oldest observation first
        """
        window_sec = self.stability_ms / 1000.0

        with self._lock:
            candidates = list(self._pending.values())

        ready = []
        for pending in candidates:
            signature = self._signature(pending.path)

            with self._lock:
                if self._pending.get(pending.path) is not pending:
                    continue
                if signature is None:
                    del self._pending[pending.path]
                    continue
                if (pending.size, pending.mtime) != signature:
                    pending.size, pending.mtime = signature
                    pending.stable_since = current_time
                    continue
                if (current_time - pending.stable_since) >= window_sec:
                    del self._pending[pending.path]
                    ready.append(pending.path)

        return ready

    def discard(self, path: Path) -> None:
        """Forget a pending file."""
        with self._lock:
            self._pending.pop(path, None)

    def clear(self) -> None:
        """Clear all pending files."""
        with self._lock:
            self._pending.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, path: Path) -> bool:
        with self._lock:
            return path in self._pending
