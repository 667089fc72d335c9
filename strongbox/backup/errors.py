"""
Exceptions raised by the backup engine.

Usage and structural errors abort an operation and propagate to the
caller. Per-file errors (TransformError, ScanError) are caught by the
engines and recorded in the result details instead.
"""


class BackupError(Exception):
    """Base class for all backup engine errors."""
    pass


class NoSourceProvidedError(BackupError):
    """Raised when the source specification contains no paths."""
    pass


class PreflightError(BackupError):
    """Raised when a source is unreadable or the storage root is unwritable."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(f"Preflight checks failed: {', '.join(self.errors)}")


class BackupNotFoundError(BackupError):
    """Raised when no backup record exists for an id (or owner)."""

    def __init__(self, backup_id):
        self.backup_id = backup_id
        super().__init__(f"Backup not found: {backup_id}")


class RestoreNoFilesError(BackupError):
    """Raised when a manifest has no restorable entries."""
    pass


class ManifestError(BackupError):
    """Raised when a manifest cannot be decoded."""
    pass


class TransformError(BackupError):
    """Raised when sealing or opening an artifact fails."""
    pass


class CorruptArtifactError(TransformError):
    """Raised when a sealed artifact is missing its initialization vector."""
    pass


class ScanError(BackupError):
    """Raised when the malware scanner cannot scan a file."""
    pass
