"""Relocation of detected audio files into a show's output directory."""

import logging
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple, Union

from .config import IntakeConfig
from .exceptions import (
    FileTooLargeError,
    RelocationError,
    SourceNotFoundError,
    TooManyConflictsError,
    UnknownProcessingError,
    UnsupportedExtensionError,
)
from .models import RelocationResult, ShowProfile
from .shows import SettingsManager

logger = logging.getLogger(__name__)

_RESERVED_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_UNDERSCORES = re.compile(r"_+")
_LEFTOVER_PLACEHOLDER = re.compile(r"\{[^}]*\}")

PathLike = Union[str, Path]


def sanitize_filename(name: str) -> str:
    """
    Make a string safe to use as a filename.

    Reserved filesystem characters become `_`, whitespace runs collapse
    to a single `_`, and repeated underscores are squeezed.
    """
    name = _RESERVED_CHARS.sub("_", name)
    name = _WHITESPACE.sub("_", name)
    name = _UNDERSCORES.sub("_", name)
    return name.strip()


def render_output_name(template: str, show_name: str, original_stem: str, now: Optional[datetime] = None) -> str:
    """
    Substitute naming template placeholders.

    Dates come from the ingestion time, not from the file. Placeholder
    names are case-insensitive and unknown placeholders are removed.
    """
    now = now or datetime.now()
    values = {
        "showname": show_name,
        "originalfilename": original_stem,
        "yyyy": f"{now.year:04d}",
        "mm": f"{now.month:02d}",
        "dd": f"{now.day:02d}",
    }

    def substitute(match: "re.Match") -> str:
        return values.get(match.group(0)[1:-1].lower(), "")

    return _LEFTOVER_PLACEHOLDER.sub(substitute, template)


class FileRelocator:
    """
    Copies a source file into a show's output directory under a
    conflict-free name.

    `relocate` never raises; every failure is returned as a
    RelocationResult carrying the error code and message.
    """

    def __init__(self, config: Optional[IntakeConfig] = None, settings: Optional[SettingsManager] = None):
        """
        Initialize the relocator.

        Args:
            config: Intake configuration (allowed extensions, output defaults)
            settings: Persisted settings; a stored global output directory
                overrides the configured default
        """
        self.config = config or IntakeConfig()
        self.settings = settings

    def relocate(self, source_path: PathLike, show: ShowProfile, now: Optional[datetime] = None) -> RelocationResult:
        """
        Copy a source file into the show's output directory.

        Args:
            source_path: File to relocate
            show: Owning show profile
            now: Timestamp used for date placeholders (defaults to now)

        Returns:
            RelocationResult with the output path and bytes copied on success
        """
        source = Path(source_path)

        try:
            self.validate_source(source)

            output_dir = self.resolve_output_dir(show)
            output_dir.mkdir(parents=True, exist_ok=True)

            destination = output_dir / self.build_output_filename(source.name, show, now)
            output_path, copied, conflicted = self._copy_to_free_name(source, destination)

            if conflicted:
                logger.info(f"File conflict resolved: {destination} -> {output_path}")
            logger.info(f"Relocated {source.name} -> {output_path} ({copied} bytes)")

            return RelocationResult(
                success=True,
                output_path=output_path,
                bytes_processed=copied,
                conflict_resolved=conflicted,
            )

        except RelocationError as e:
            logger.error(f"Failed to relocate {source}: {e}")
            return RelocationResult(success=False, error=str(e), error_code=e.code)
        except OSError as e:
            logger.error(f"Filesystem error relocating {source}: {e}")
            return RelocationResult(
                success=False,
                error=str(e),
                error_code=UnknownProcessingError.code,
            )
        except Exception as e:
            logger.exception(f"Unexpected error relocating {source}")
            return RelocationResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                error_code=UnknownProcessingError.code,
            )

    def validate_source(self, source: Path) -> int:
        """
        Check that a file may be relocated.

        Args:
            source: File to check

        Returns:
            The file size in bytes

        Raises:
            UnsupportedExtensionError: Extension not in the allowed set
            SourceNotFoundError: Missing, or not a regular file
            FileTooLargeError: Larger than the configured limit
        """
        if not self.config.is_supported(source):
            raise UnsupportedExtensionError(f"Unsupported file extension: {source.suffix.lower() or '(none)'}")

        if not source.exists():
            raise SourceNotFoundError(f"Source file not found: {source}")
        if not source.is_file():
            raise SourceNotFoundError(f"Source path is not a file: {source}")

        size = source.stat().st_size
        limit = self.config.max_file_size_bytes
        if limit is not None and size > limit:
            raise FileTooLargeError(f"File too large: {size} bytes (limit {limit})")

        return size

    def resolve_output_dir(self, show: ShowProfile) -> Path:
        """
        Determine the output directory for a show.

        Surrounding quotes are stripped, relative paths are resolved
        against the configured base directory, and shows without an
        output directory fall back to the default output directory.
        """
        raw = (show.output_directory or "").strip().strip("\"'").strip()
        if raw:
            path = Path(raw).expanduser()
        else:
            override = self.settings.get_global_output_directory() if self.settings else None
            path = override or self.config.default_output_dir

        if not path.is_absolute():
            path = self.config.base_dir / path
        return path

    def build_output_filename(self, original_filename: str, show: ShowProfile, now: Optional[datetime] = None) -> str:
        """
        Compute the destination filename, keeping the original extension.

        Args:
            original_filename: Basename of the source file
            show: Show whose naming template (if any) applies
            now: Timestamp used for date placeholders

        Returns:
            Sanitized filename
        """
        original = Path(original_filename)
        ext = original.suffix

        if show.output_pattern:
            name = sanitize_filename(render_output_name(show.output_pattern, show.name, original.stem, now))
        else:
            name = sanitize_filename(show.name)

        if not name.strip("_"):
            name = sanitize_filename(original.stem) or "untitled"

        return f"{name}{ext}"

    def resolve_conflict(self, destination: Path) -> Path:
        """
        Return the first free path among `destination`, `stem_1`, `stem_2`, ...

        This is a point-in-time answer; relocation itself relies on
        exclusive creation rather than on this check.

        Raises:
            TooManyConflictsError: No free name within the attempt bound
        """
        for candidate in self._candidates(destination):
            if not candidate.exists():
                return candidate
        raise TooManyConflictsError(
            f"Too many file conflicts for {destination.name}, unable to resolve"
        )

    def copy_file(self, source: PathLike, destination: PathLike, overwrite: bool = False) -> RelocationResult:
        """
        Copy a file to an explicit destination.

        Args:
            source: File to copy
            destination: Target path; parent directories are created
            overwrite: Replace an existing destination

        Returns:
            RelocationResult describing the copy
        """
        source, destination = Path(source), Path(destination)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            if overwrite:
                shutil.copyfile(source, destination)
                copied = destination.stat().st_size
            else:
                copied = self._copy_exclusive(source, destination)
            return RelocationResult(success=True, output_path=destination, bytes_processed=copied)
        except FileExistsError:
            return RelocationResult(
                success=False,
                error=f"Destination already exists: {destination}",
                error_code=UnknownProcessingError.code,
            )
        except RelocationError as e:
            return RelocationResult(success=False, error=str(e), error_code=e.code)
        except OSError as e:
            return RelocationResult(success=False, error=str(e), error_code=UnknownProcessingError.code)

    def move_file(self, source: PathLike, destination: PathLike, overwrite: bool = False) -> RelocationResult:
        """
        Move a file to an explicit destination.

        Args:
            source: File to move
            destination: Target path; parent directories are created
            overwrite: Replace an existing destination

        Returns:
            RelocationResult describing the move
        """
        source, destination = Path(source), Path(destination)
        try:
            if not source.is_file():
                raise SourceNotFoundError(f"Source file not found: {source}")
            if destination.exists() and not overwrite:
                return RelocationResult(
                    success=False,
                    error=f"Destination already exists: {destination}",
                    error_code=UnknownProcessingError.code,
                )
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(destination))
            return RelocationResult(
                success=True,
                output_path=destination,
                bytes_processed=destination.stat().st_size,
            )
        except RelocationError as e:
            return RelocationResult(success=False, error=str(e), error_code=e.code)
        except OSError as e:
            return RelocationResult(success=False, error=str(e), error_code=UnknownProcessingError.code)

    def delete_file(self, path: PathLike) -> RelocationResult:
        """Delete a file, reporting the bytes freed."""
        path = Path(path)
        try:
            size = path.stat().st_size
            path.unlink()
            return RelocationResult(success=True, output_path=path, bytes_processed=size)
        except FileNotFoundError:
            return RelocationResult(
                success=False,
                error=f"File not found: {path}",
                error_code=SourceNotFoundError.code,
            )
        except OSError as e:
            return RelocationResult(success=False, error=str(e), error_code=UnknownProcessingError.code)

    def _candidates(self, destination: Path):
        yield destination
        stem, suffix = destination.stem, destination.suffix
        for counter in range(1, self.config.max_conflict_attempts + 1):
            yield destination.with_name(f"{stem}_{counter}{suffix}")

    def _copy_to_free_name(self, source: Path, destination: Path) -> Tuple[Path, int, bool]:
        """Copy into the first name that can be exclusively created."""
        for candidate in self._candidates(destination):
            try:
                copied = self._copy_exclusive(source, candidate)
            except FileExistsError:
                continue
            return candidate, copied, candidate != destination

        raise TooManyConflictsError(
            f"Too many file conflicts for {destination.name} "
            f"({self.config.max_conflict_attempts} attempts), unable to resolve"
        )

    def _copy_exclusive(self, source: Path, destination: Path) -> int:
        """
        Copy bytes into a destination that must not exist yet.

        Raises:
            FileExistsError: The destination already exists
            SourceNotFoundError: The source vanished before it could be opened
        """
        try:
            src = open(source, "rb")
        except FileNotFoundError as e:
            raise SourceNotFoundError(f"Source file not found: {source}") from e

        with src:
            dst = open(destination, "xb")
            copied = 0
            try:
                with dst:
                    for chunk in iter(lambda: src.read(self.config.copy_chunk_size), b""):
                        dst.write(chunk)
                        copied += len(chunk)
            except BaseException:
                try:
                    destination.unlink()
                except OSError:
                    logger.warning(f"Could not remove partial output {destination}")
                raise

        return copied
