"""Data models for the intake package."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional
import time
import uuid


class FileStatus(Enum):
    """Lifecycle states of a queued file."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PatternType(Enum):
    """Where files for a pattern come from."""
    WATCH = "watch"
    FTP = "ftp"


def new_id() -> str:
    """Generate a fresh record identifier."""
    return uuid.uuid4().hex


@dataclass
class FilePattern:
    """
    A glob-style rule identifying files that belong to a show.

    Attributes:
        pattern: Glob pattern, `*` and `?` wildcards plus date placeholders
        type: Source kind; only WATCH patterns take part in directory watching
        id: Pattern identifier
        watch_path: Directory to watch for this pattern (global watch dir if None)
        ftp_profile_id: FTP profile reference, stored for FTP patterns only
    """
    pattern: str
    type: PatternType = PatternType.WATCH
    id: str = field(default_factory=new_id)
    watch_path: Optional[str] = None
    ftp_profile_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "type": self.type.value,
            "watch_path": self.watch_path,
            "ftp_profile_id": self.ftp_profile_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FilePattern":
        return cls(
            id=data.get("id") or new_id(),
            pattern=data["pattern"],
            type=PatternType(data.get("type", "watch")),
            watch_path=data.get("watch_path", data.get("watchPath")),
            ftp_profile_id=data.get("ftp_profile_id", data.get("ftpProfileId")),
        )


@dataclass
class ShowProfile:
    """
    Configuration of a scheduled show, read-only to the intake engine.

    Attributes:
        name: Display name, also the default output filename
        output_directory: Where processed files are written
        file_patterns: Ordered patterns; first match wins
        enabled: Disabled shows are never watched
        auto_processing: Shows without auto-processing are never watched
        output_pattern: Optional output filename template
        description: Free text
        id: Show identifier
        created_at: Unix timestamp of creation
        updated_at: Unix timestamp of the last update
    """
    name: str
    output_directory: str = ""
    file_patterns: List[FilePattern] = field(default_factory=list)
    enabled: bool = True
    auto_processing: bool = True
    output_pattern: Optional[str] = None
    description: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def watch_patterns(self) -> List[FilePattern]:
        """Return the watch-type patterns in their configured order."""
        return [p for p in self.file_patterns if p.type == PatternType.WATCH]

    def is_watchable(self) -> bool:
        """True if the show is enabled, auto-processed and has a watch pattern."""
        return self.enabled and self.auto_processing and bool(self.watch_patterns())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "auto_processing": self.auto_processing,
            "file_patterns": [p.to_dict() for p in self.file_patterns],
            "output_directory": self.output_directory,
            "output_pattern": self.output_pattern,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ShowProfile":
        """Create from dictionary; accepts camelCase keys of exported show files."""
        naming = data.get("fileNamingRules") or {}
        now = time.time()
        return cls(
            id=data.get("id") or new_id(),
            name=data["name"],
            description=data.get("description"),
            enabled=data.get("enabled", True),
            auto_processing=data.get("auto_processing", data.get("autoProcessing", True)),
            file_patterns=[
                FilePattern.from_dict(p)
                for p in data.get("file_patterns", data.get("filePatterns", []))
            ],
            output_directory=data.get("output_directory", data.get("outputDirectory", "")),
            output_pattern=data.get("output_pattern", naming.get("outputPattern")),
            created_at=data.get("created_at", now),
            updated_at=data.get("updated_at", now),
        )


@dataclass
class QueuedFile:
    """
    Durable record of one file's journey through the intake queue.

    Attributes:
        filename: Basename of the detected file
        show_id: Owning show
        source_path: Absolute path of the detected file
        status: Current lifecycle state
        id: Record identifier, assigned by the queue store
        output_path: Where the file was written, once completed
        error: Error message of the last failed attempt
        processing_time_ms: Duration of the last attempt
        added_at: Unix timestamp of insertion
        processed_at: Unix timestamp of the last terminal transition
        conflict_resolved: True if the output name needed a numeric suffix
    """
    filename: str
    show_id: str
    source_path: str
    status: FileStatus = FileStatus.PENDING
    id: str = ""
    output_path: Optional[str] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    added_at: float = field(default_factory=time.time)
    processed_at: Optional[float] = None
    conflict_resolved: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "show_id": self.show_id,
            "status": self.status.value,
            "source_path": self.source_path,
            "output_path": self.output_path,
            "error": self.error,
            "processing_time_ms": self.processing_time_ms,
            "added_at": self.added_at,
            "processed_at": self.processed_at,
            "conflict_resolved": self.conflict_resolved,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedFile":
        return cls(
            id=data.get("id", ""),
            filename=data["filename"],
            show_id=data["show_id"],
            status=FileStatus(data.get("status", "pending")),
            source_path=data["source_path"],
            output_path=data.get("output_path"),
            error=data.get("error"),
            processing_time_ms=data.get("processing_time_ms"),
            added_at=data.get("added_at", time.time()),
            processed_at=data.get("processed_at"),
            conflict_resolved=bool(data.get("conflict_resolved", False)),
        )


@dataclass
class RelocationResult:
    """Outcome of relocating one file; failures carry a taxonomy code."""
    success: bool
    output_path: Optional[Path] = None
    bytes_processed: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    conflict_resolved: bool = False


@dataclass
class FileAppearedEvent:
    """
    Raw event from a show's observer before the stability check.

    Attributes:
        show_id: Show whose watcher saw the file
        path: Path of the file
        timestamp: Unix timestamp when the event occurred
    """
    show_id: str
    path: Path
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class WatcherStatus:
    """Snapshot of the engine's watching state."""
    is_running: bool
    watched_shows: int
    active_watchers: List[str]

    def to_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "watched_shows": self.watched_shows,
            "active_watchers": list(self.active_watchers),
        }


@dataclass(frozen=True)
class ProcessOutcome:
    """Per-file result of a bulk processing run."""
    file_id: str
    status: Optional[FileStatus]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == FileStatus.COMPLETED
