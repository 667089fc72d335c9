"""
Backup module for Strongbox.

This module handles the core backup functionality including:
- Change detection (new / modified / unchanged files)
- Streaming compression and encryption of artifacts
- Backup orchestration and manifests
- Restore with conflict resolution and hash verification
- Verification and malware scanning
- Listing, deletion and diagnostics
"""

from .errors import (
    BackupError,
    NoSourceProvidedError,
    PreflightError,
    BackupNotFoundError,
    RestoreNoFilesError,
    ManifestError,
    TransformError,
    CorruptArtifactError,
    ScanError
)
from .manifest import Manifest, FileEntry
from .detection import ChangeDetector
from .transform import seal_file, open_file, compute_file_hash
from .keys import EncryptionKeyCache
from .executor import BackupExecutor, BackupOptions
from .restore import RestoreEngine, RestoreOptions
from .verification import VerificationEngine
from .catalog import BackupCatalog
from .service import BackupService, get_backup_service

__all__ = [
    'BackupError',
    'NoSourceProvidedError',
    'PreflightError',
    'BackupNotFoundError',
    'RestoreNoFilesError',
    'ManifestError',
    'TransformError',
    'CorruptArtifactError',
    'ScanError',
    'Manifest',
    'FileEntry',
    'ChangeDetector',
    'seal_file',
    'open_file',
    'compute_file_hash',
    'EncryptionKeyCache',
    'BackupExecutor',
    'BackupOptions',
    'RestoreEngine',
    'RestoreOptions',
    'VerificationEngine',
    'BackupCatalog',
    'BackupService',
    'get_backup_service'
]
