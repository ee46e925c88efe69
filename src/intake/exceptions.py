"""Custom exceptions for the intake package."""


class IntakeError(Exception):
    """Base exception for all intake errors."""
    code = "IntakeError"


class PatternError(IntakeError):
    """A show file pattern could not be compiled."""
    code = "PatternError"


class QueueError(IntakeError):
    """Error related to the queue store."""
    code = "QueueError"


class ShowNotFoundError(IntakeError):
    """Referenced show does not exist."""
    code = "ShowNotFound"


class NoMatchingPatternError(IntakeError):
    """A filename matched none of the show's watch patterns."""
    code = "NoMatchingPattern"


class QueuedFileNotFoundError(IntakeError):
    """Referenced queue record does not exist."""
    code = "FileNotFound"


class InvalidStateForRetryError(IntakeError):
    """Retry was requested for a record that is not in the failed state."""
    code = "InvalidStateForRetry"


class WatcherError(IntakeError):
    """Observer-level failure, e.g. a watch directory became inaccessible."""
    code = "WatcherError"


class RelocationError(IntakeError):
    """Base class for errors raised while relocating a single file."""
    code = "RelocationError"


class SourceNotFoundError(RelocationError):
    """Source file is missing or is not a regular file."""
    code = "SourceNotFound"


class UnsupportedExtensionError(RelocationError):
    """Source file extension is not in the allowed set."""
    code = "UnsupportedExtension"


class FileTooLargeError(RelocationError):
    """Source file exceeds the configured size limit."""
    code = "FileTooLarge"


class TooManyConflictsError(RelocationError):
    """No free destination name was found within the attempt bound."""
    code = "TooManyConflicts"


class UnknownProcessingError(RelocationError):
    """Catch-all for filesystem failures; keeps the underlying message."""
    code = "UnknownProcessingError"
