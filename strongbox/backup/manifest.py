"""
Manifest model - describes one backup's file set and metadata.

A manifest is written twice: inline in the backup record and as a
manifest.json sidecar inside the backup directory, so a backup can be
recovered even if its record is lost.
"""

import json
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from .errors import ManifestError

MANIFEST_FILENAME = 'manifest.json'
MANIFEST_VERSION = 1

# Change reason tags
REASON_NEW = 'new'
REASON_MODIFIED = 'modified'
REASON_FULL = 'full'


@dataclass
class FileEntry:
    """One backed-up file (or one failed attempt)."""

    relative_path: str  # Key within its source root
    original_path: str
    size: int
    modified: float  # st_mtime in seconds
    hash: Optional[str] = None  # SHA-256 of the plaintext
    backup_path: Optional[str] = None  # Absolute path of the sealed artifact
    stored_as: Optional[str] = None  # Disambiguated relative path inside the backup directory
    source_root: Optional[str] = None
    reason: str = REASON_FULL
    failed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'FileEntry':
        try:
            return cls(
                relative_path=data['relative_path'],
                original_path=data.get('original_path', ''),
                size=data.get('size', 0),
                modified=data.get('modified', 0),
                hash=data.get('hash'),
                backup_path=data.get('backup_path'),
                stored_as=data.get('stored_as'),
                source_root=data.get('source_root'),
                reason=data.get('reason', REASON_FULL),
                failed=bool(data.get('failed', False)),
                error=data.get('error')
            )
        except (KeyError, TypeError) as e:
            raise ManifestError(f"Invalid file entry: {e}")


@dataclass
class Manifest:
    """A backup run's metadata and ordered file entries. Immutable once written."""

    backup_id: str
    name: str
    source_path: str  # Original (possibly semicolon-joined) source specification
    backup_path: str
    timestamp: float
    encrypted: bool = True
    compressed: bool = True
    incremental: bool = True
    files: List[FileEntry] = field(default_factory=list)
    # Unchanged entries carried over from the baseline of an incremental run
    referenced_files: List[FileEntry] = field(default_factory=list)

    @property
    def restorable_files(self) -> List[FileEntry]:
        """Entries that were sealed successfully."""
        return [entry for entry in self.files if not entry.failed]

    @property
    def failed_files(self) -> List[FileEntry]:
        return [entry for entry in self.files if entry.failed]

    def baseline_entries(self) -> List[FileEntry]:
        """
        Entries a later incremental run compares against.

        Failed entries are left out so that the next run retries them.
        """
        return self.restorable_files + list(self.referenced_files)

    def to_dict(self) -> dict:
        return {
            'version': MANIFEST_VERSION,
            'backup_id': self.backup_id,
            'name': self.name,
            'source_path': self.source_path,
            'backup_path': self.backup_path,
            'timestamp': self.timestamp,
            'encrypted': self.encrypted,
            'compressed': self.compressed,
            'incremental': self.incremental,
            'files': [entry.to_dict() for entry in self.files],
            'referenced_files': [entry.to_dict() for entry in self.referenced_files],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> 'Manifest':
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")

        try:
            return cls(
                backup_id=data['backup_id'],
                name=data.get('name', data['backup_id']),
                source_path=data['source_path'],
                backup_path=data['backup_path'],
                timestamp=data.get('timestamp', 0),
                encrypted=bool(data.get('encrypted', False)),
                compressed=bool(data.get('compressed', False)),
                incremental=bool(data.get('incremental', False)),
                files=[FileEntry.from_dict(item) for item in data.get('files', [])],
                referenced_files=[FileEntry.from_dict(item) for item in data.get('referenced_files', [])]
            )
        except KeyError as e:
            raise ManifestError(f"Manifest is missing required field: {e}")

    @classmethod
    def from_json(cls, text: str) -> 'Manifest':
        if not text:
            raise ManifestError("Manifest is empty")

        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise ManifestError(f"Invalid manifest JSON: {e}")

        return cls.from_dict(data)
