"""
Change detection for incremental backups.

Walks a source path and classifies each regular file as new, modified or
unchanged relative to a prior manifest. Only size and modification time
are compared; content hashes are not, so an edit that keeps both the size
and the mtime is not noticed.
"""

import os
import stat
import logging
from dataclasses import dataclass, field, replace
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional, Dict

from .manifest import Manifest, FileEntry, REASON_NEW, REASON_MODIFIED, REASON_FULL

logger = logging.getLogger(__name__)


@dataclass
class SourceFile:
    """A regular file discovered under a source root."""

    path: str
    relative_path: str
    size: int
    modified: float
    source_root: str
    reason: Optional[str] = None


@dataclass
class ChangeSet:
    """Result of change detection for one source root."""

    source_root: str
    to_backup: List[SourceFile] = field(default_factory=list)
    unchanged: List[SourceFile] = field(default_factory=list)
    # Baseline entries matching the unchanged files
    unchanged_entries: List[FileEntry] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.to_backup) + len(self.unchanged)


class ChangeDetector:
    """
    Discovers files under source roots and compares them with a baseline manifest.
    """

    def __init__(self, exclude_patterns: List[str] = None):
        """
        Initialize change detector.

        Args:
            exclude_patterns: List of glob patterns to exclude (e.g., *.pyc, __pycache__, .venv)
        """
        self.exclude_patterns = exclude_patterns or []

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            path: Path to check

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        if not self.exclude_patterns:
            return False

        path_str = str(path)
        path_name = path.name

        for pattern in self.exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            # Also match against relative path patterns
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def discover(self, source_path: str) -> List[SourceFile]:
        """
        Enumerate regular files under a source path.

        A directory is walked recursively; a single file yields one entry
        keyed by its base name. Symlinks and entries that cannot be read
        are skipped with a warning.

        Args:
            source_path: File or directory path

        Returns:
            List of SourceFile in discovery order
        """
        root = Path(source_path).expanduser().absolute()

        if root.is_file():
            file_stat = self._stat_regular_file(root)
            if file_stat is None or self._should_exclude(root):
                return []
            return [SourceFile(
                path=str(root),
                relative_path=root.name,
                size=file_stat.st_size,
                modified=file_stat.st_mtime,
                source_root=str(root)
            )]

        discovered = []

        def on_walk_error(error):
            logger.warning(f"Skipping unreadable directory {error.filename}: {error.strerror}")

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_walk_error, followlinks=False):
            current = Path(dirpath)

            # Prune excluded and symlinked directories in place
            kept = []
            for name in sorted(dirnames):
                child = current / name
                if child.is_symlink():
                    logger.warning(f"Skipping symlinked directory: {child}")
                elif not self._should_exclude(child):
                    kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                file_path = current / name
                if self._should_exclude(file_path):
                    continue

                file_stat = self._stat_regular_file(file_path)
                if file_stat is None:
                    continue

                discovered.append(SourceFile(
                    path=str(file_path),
                    relative_path=file_path.relative_to(root).as_posix(),
                    size=file_stat.st_size,
                    modified=file_stat.st_mtime,
                    source_root=str(root)
                ))

        return discovered

    def _stat_regular_file(self, path: Path) -> Optional[os.stat_result]:
        """Return the stat of a regular, non-symlink file or None (with a warning)."""
        try:
            file_stat = path.lstat()
        except OSError as e:
            logger.warning(f"Skipping file {path}: {e}")
            return None

        if stat.S_ISLNK(file_stat.st_mode):
            logger.warning(f"Skipping symlink: {path}")
            return None

        if not stat.S_ISREG(file_stat.st_mode):
            return None

        if not os.access(path, os.R_OK):
            logger.warning(f"Skipping file {path}: permission denied")
            return None

        return file_stat

    def detect_changes(self, source_path: str, previous_manifest: Optional[Manifest] = None) -> ChangeSet:
        """
        Classify discovered files against a prior manifest.

        Without a prior manifest every file is backed up as part of a full
        backup. Otherwise a file missing from the baseline is new, a file
        whose size differs or whose mtime is newer is modified, and anything
        else is unchanged.

        Args:
            source_path: File or directory path
            previous_manifest: Baseline manifest, or None for a full backup

        Returns:
            ChangeSet for this source root
        """
        current_files = self.discover(source_path)
        root = str(Path(source_path).expanduser().absolute())
        changes = ChangeSet(source_root=root)

        if previous_manifest is None:
            for source_file in current_files:
                source_file.reason = REASON_FULL
                changes.to_backup.append(source_file)
            return changes

        baseline = self._index_baseline(previous_manifest, root)

        for source_file in current_files:
            previous = baseline.get(source_file.relative_path)

            if previous is None:
                source_file.reason = REASON_NEW
                changes.to_backup.append(source_file)
            elif source_file.size != previous.size or source_file.modified > previous.modified:
                source_file.reason = REASON_MODIFIED
                changes.to_backup.append(source_file)
            else:
                changes.unchanged.append(source_file)
                changes.unchanged_entries.append(replace(previous, source_root=root))

        return changes

    @staticmethod
    def _index_baseline(manifest: Manifest, root: str) -> Dict[str, FileEntry]:
        """
        Map relative path -> baseline entry for one source root.

        Entries without a recorded source root (single-root manifests) match
        any root.
        """
        index = {}
        for entry in manifest.baseline_entries():
            if entry.source_root is None or entry.source_root == root:
                index[entry.relative_path] = entry
        return index
