"""Configuration for the intake package."""

import fnmatch
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


DEFAULT_EXTENSIONS = [".mp3", ".wav", ".flac", ".aac", ".m4a"]


@dataclass
class IntakeConfig:
    """
    Configuration options for the intake engine.

    Attributes:
        db_path: Path to the SQLite database holding queue, shows and settings
        allowed_extensions: File extensions accepted by the relocator
        stability_ms: Quiet period a file's size/mtime must hold before it is queued
        poll_interval_ms: Interval at which watcher workers re-check pending files
        default_output_dir: Output directory for shows that do not define one
        global_watch_dir: Watch directory for patterns without their own watch path
        base_dir: Directory that relative show output paths are resolved against
        max_conflict_attempts: Numeric suffixes tried before giving up on a name
        max_file_size_bytes: Optional upper bound on source file size
        copy_chunk_size: Buffer size for file copies
        ignore_patterns: Glob patterns for files the watcher never reports
        recursive: Whether to watch directories recursively
        stop_timeout_s: Seconds to wait for a watcher thread when stopping
    """
    db_path: Path = field(default_factory=lambda: Path("intake.db"))
    allowed_extensions: List[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    stability_ms: int = 2000
    poll_interval_ms: int = 100
    default_output_dir: Path = field(default_factory=lambda: Path("Output"))
    global_watch_dir: Path = field(default_factory=lambda: Path("Watch"))
    base_dir: Path = field(default_factory=Path.cwd)
    max_conflict_attempts: int = 1000
    max_file_size_bytes: Optional[int] = None
    copy_chunk_size: int = 1024 * 1024
    ignore_patterns: List[str] = field(default_factory=lambda: [
        "*.tmp",
        "*.part",
        "*.crdownload",
        "*.swp",
        "*~",
        "Thumbs.db",
    ])
    recursive: bool = True
    stop_timeout_s: float = 5.0

    def __post_init__(self):
        if isinstance(self.db_path, str):
            self.db_path = Path(self.db_path)
        if isinstance(self.default_output_dir, str):
            self.default_output_dir = Path(self.default_output_dir)
        if isinstance(self.global_watch_dir, str):
            self.global_watch_dir = Path(self.global_watch_dir)
        if isinstance(self.base_dir, str):
            self.base_dir = Path(self.base_dir)
        self.allowed_extensions = [_normalize_extension(e) for e in self.allowed_extensions if e.strip()]

    @classmethod
    def from_env(cls, **overrides) -> "IntakeConfig":
        """
        Build a configuration from environment variables.

        Recognised variables: INTAKE_DB_PATH, ALLOWED_EXTENSIONS (comma
        separated), STABILITY_MS, OUTPUT_BASE_DIR, GLOBAL_WATCH_DIR and
        MAX_FILE_SIZE_MB. Keyword overrides win over the environment.
        """
        values = {}
        if os.environ.get("INTAKE_DB_PATH"):
            values["db_path"] = Path(os.environ["INTAKE_DB_PATH"])
        if os.environ.get("ALLOWED_EXTENSIONS"):
            values["allowed_extensions"] = os.environ["ALLOWED_EXTENSIONS"].split(",")
        if os.environ.get("STABILITY_MS"):
            values["stability_ms"] = int(os.environ["STABILITY_MS"])
        if os.environ.get("OUTPUT_BASE_DIR"):
            values["default_output_dir"] = Path(os.environ["OUTPUT_BASE_DIR"])
        if os.environ.get("GLOBAL_WATCH_DIR"):
            values["global_watch_dir"] = Path(os.environ["GLOBAL_WATCH_DIR"])
        if os.environ.get("MAX_FILE_SIZE_MB"):
            values["max_file_size_bytes"] = int(os.environ["MAX_FILE_SIZE_MB"]) * 1024 * 1024
        values.update(overrides)
        return cls(**values)

    def should_ignore(self, path: Path, root: Optional[Path] = None) -> bool:
        """
        Check if a path should be ignored by the watcher.

        Hidden files and anything inside a hidden directory are always
        ignored, in addition to the configured ignore patterns.

        Args:
            path: Path to check
            root: Watched directory; only components below it count as hidden

        Returns:
            True if the path should be ignored
        """
        parts = path.parts
        if root is not None:
            try:
                parts = path.relative_to(root).parts
            except ValueError:
                pass

        if any(part.startswith(".") and part not in (".", "..") for part in parts):
            return True

        name = path.name
        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(name, pattern):
                return True

        return False

    def is_supported(self, path: Path) -> bool:
        """Check if the file extension is accepted."""
        if isinstance(path, str):
            path = Path(path)
        return path.suffix.lower() in self.allowed_extensions


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith(".") else f".{ext}"
