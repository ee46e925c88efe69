"""
Radio Show File Intake Package

Watches show folders for incoming audio files, queues files that match
a show's naming patterns, and relocates them into the show's output
directory, tracking success and failure per file.

Features:
- One observer and one worker per watched show
- Write-completion detection before a file is queued
- Glob patterns with date placeholders, first match wins
- Conflict-free output naming with numeric suffixes
- Durable SQLite queue with (show, filename) deduplication
- Explicit retry of failed files
"""

from .version import __version__

from .models import (
    FileStatus,
    PatternType,
    FilePattern,
    ShowProfile,
    QueuedFile,
    RelocationResult,
    FileAppearedEvent,
    WatcherStatus,
    ProcessOutcome,
)

from .config import IntakeConfig

from .exceptions import (
    IntakeError,
    PatternError,
    QueueError,
    ShowNotFoundError,
    NoMatchingPatternError,
    QueuedFileNotFoundError,
    InvalidStateForRetryError,
    WatcherError,
    RelocationError,
    SourceNotFoundError,
    UnsupportedExtensionError,
    FileTooLargeError,
    TooManyConflictsError,
    UnknownProcessingError,
)

from .patterns import matches, find_matching_pattern
from .relocator import FileRelocator, sanitize_filename
from .store import QueueStore
from .shows import ShowStore, SettingsManager
from .stability import StabilityTracker
from .fs_watcher import ShowWatcher, ShowWatcherPool, FSEventHandler
from .engine import IntakeEngine


__all__ = [
    # Models
    "FileStatus",
    "PatternType",
    "FilePattern",
    "ShowProfile",
    "QueuedFile",
    "RelocationResult",
    "FileAppearedEvent",
    "WatcherStatus",
    "ProcessOutcome",
    # Config
    "IntakeConfig",
    # Exceptions
    "IntakeError",
    "PatternError",
    "QueueError",
    "ShowNotFoundError",
    "NoMatchingPatternError",
    "QueuedFileNotFoundError",
    "InvalidStateForRetryError",
    "WatcherError",
    "RelocationError",
    "SourceNotFoundError",
    "UnsupportedExtensionError",
    "FileTooLargeError",
    "TooManyConflictsError",
    "UnknownProcessingError",
    # Components
    "matches",
    "find_matching_pattern",
    "FileRelocator",
    "sanitize_filename",
    "QueueStore",
    "ShowStore",
    "SettingsManager",
    "StabilityTracker",
    "ShowWatcher",
    "ShowWatcherPool",
    "FSEventHandler",
    # Engine
    "IntakeEngine",
]
