"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Parse the semicolon-delimited source specification
2. Pre-flight checks (sources readable, storage root writable)
3. Load the previous manifest for this source spec (incremental runs)
4. Detect new/modified files per source root
5. Allocate the backup id and storage directory
6. Hash and seal each file (per-file failures are recorded, not fatal)
7. Write the manifest sidecar, create the backup record, log the outcome
"""

import os
import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Callable, Any

from .catalog import write_log_entry
from .detection import ChangeDetector, SourceFile
from .errors import NoSourceProvidedError, PreflightError, ManifestError
from .manifest import Manifest, FileEntry, MANIFEST_FILENAME
from .transform import seal_file, compute_file_hash, CHUNK_SIZE, ARTIFACT_EXTENSION

logger = logging.getLogger(__name__)

PREFLIGHT_MARKER = '.preflight-check'


@dataclass
class BackupOptions:
    """Options recognized by create_backup."""

    name: Optional[str] = None  # Defaults to Backup_<timestamp>
    encrypt: bool = True
    compress: bool = True
    incremental: bool = True
    exclude_patterns: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'BackupOptions':
        data = data or {}
        return cls(
            name=data.get('name') or None,
            encrypt=parse_flag(data, 'encrypt', True),
            compress=parse_flag(data, 'compress', True),
            incremental=parse_flag(data, 'incremental', True),
            exclude_patterns=list(data.get('exclude_patterns') or [])
        )


def parse_source_spec(source_spec) -> List[str]:
    """
    Split a semicolon-delimited source specification into paths.

    Paths naming the same location (e.g. "src" and "src/") are collapsed,
    keeping the first occurrence.

    Args:
        source_spec: "path1;path2" string (a list of paths is also accepted)

    Returns:
        List of non-empty, stripped, distinct paths

    Raises:
        NoSourceProvidedError: If no path remains after trimming
    """
    if isinstance(source_spec, (list, tuple)):
        parts = source_spec
    else:
        parts = (source_spec or '').split(';')

    sources = []
    seen = set()

    for part in parts:
        source = str(part).strip() if part else ''
        if not source:
            continue

        location = os.path.normpath(os.path.abspath(os.path.expanduser(source)))
        if location in seen:
            logger.warning(f"Ignoring repeated source path: {source}")
            continue

        seen.add(location)
        sources.append(source)

    if not sources:
        raise NoSourceProvidedError("No source path provided")

    return sources


def parse_flag(data: Dict[str, Any], name: str, default: bool) -> bool:
    """
    Read a boolean option, rejecting anything that is not a real boolean.

    Raises:
        ValueError: If the value is present but not True/False
    """
    value = data.get(name)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValueError(f"Option '{name}' must be true or false, got {value!r}")
    return value


def preflight_checks(sources: List[str], store_dir: str) -> List[str]:
    """
    Check that every source is readable and the storage root is writable.

    The storage root is only probed when all sources pass, so a bad source
    never touches the target.

    Args:
        sources: Source paths
        store_dir: Backup storage root

    Returns:
        List of error messages (empty when all checks pass)
    """
    errors = []

    for source in sources:
        path = Path(source).expanduser()

        if not path.exists():
            errors.append(f"Source path does not exist: {source}")
            continue

        try:
            if path.is_dir():
                os.listdir(path)
            else:
                with open(path, 'rb'):
                    pass
        except OSError as e:
            errors.append(f"Source path not accessible: {source} ({e.strerror or e})")

    if errors:
        return errors

    # Probe-write a marker to prove the storage root is writable
    marker = Path(store_dir) / PREFLIGHT_MARKER
    try:
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text('test')
        marker.unlink()
    except OSError as e:
        errors.append(f"Target location not writable: {store_dir} ({e.strerror or e})")

    return errors


def generate_backup_id() -> str:
    """Generate a unique, time-sortable backup id."""
    timestamp = datetime.utcnow().strftime('%Y%m%d_%H%M%S')
    return f"backup_{timestamp}_{uuid.uuid4().hex[:8]}"


def _dedupe(candidate: str, used: set) -> str:
    """Return candidate, or candidate with a numeric suffix if already used."""
    if candidate not in used:
        return candidate

    path = Path(candidate)
    counter = 2
    while True:
        alternative = str(path.with_name(f"{path.stem}_{counter}{path.suffix}").as_posix())
        if alternative not in used:
            return alternative
        counter += 1


class _StoragePathAllocator:
    """
    Maps (source root, relative path) to a unique path inside the backup directory.

    Directory roots are prefixed with their base name (de-duplicated across
    roots); single-file roots are stored under their own name.
    """

    def __init__(self, roots: List[str]):
        self._labels = {}
        self._used_top_level = set()
        self._used_paths = set()

        for root in roots:
            path = Path(root)
            if path.is_dir():
                label = _dedupe(path.name or 'root', self._used_top_level)
                self._used_top_level.add(label)
                self._labels[root] = label
            else:
                self._labels[root] = None

    def allocate(self, source_file: SourceFile) -> str:
        label = self._labels.get(source_file.source_root)

        if label is not None:
            candidate = f"{label}/{source_file.relative_path}"
        else:
            candidate = _dedupe(source_file.relative_path, self._used_top_level)
            self._used_top_level.add(candidate)

        stored_as = _dedupe(candidate, self._used_paths)
        self._used_paths.add(stored_as)
        return stored_as


class BackupExecutor:
    """
    Orchestrates backup runs against one storage root.
    """

    def __init__(self, store, key_cache, store_dir: str, chunk_size: int = CHUNK_SIZE,
                 exclude_patterns: List[str] = None):
        """
        Initialize backup executor.

        Args:
            store: Persistence store (records, settings, log entries)
            key_cache: EncryptionKeyCache for per-owner keys
            store_dir: Backup storage root
            chunk_size: Streaming chunk size in bytes
            exclude_patterns: Glob patterns always skipped during discovery
        """
        self.store = store
        self.key_cache = key_cache
        self.store_dir = str(store_dir)
        self.chunk_size = chunk_size
        self.exclude_patterns = list(exclude_patterns or [])

    def execute(self, source_spec, options: Optional[BackupOptions] = None, owner_id: Optional[str] = None,
                progress_callback: Optional[Callable[[dict], None]] = None) -> Dict[str, Any]:
        """
        Run one backup.

        Args:
            source_spec: Semicolon-delimited source paths
            options: BackupOptions (defaults: encrypted, compressed, incremental)
            owner_id: Opaque owning identity passed through to the store
            progress_callback: Called with dicts whose 'phase' is one of
                detection, backup, complete, error

        Returns:
            Dict with backup_id, backup_path, manifest, files_backed_up,
            files_failed and total_size

        Raises:
            NoSourceProvidedError: If the source spec is empty
            PreflightError: If a source or the storage root fails pre-flight
        """
        options = options or BackupOptions()

        try:
            return self._execute_workflow(source_spec, options, owner_id, progress_callback)

        except Exception as e:
            logger.error(f"Backup failed: {e}")
            self._log_entry(
                f"Backup failed: {e}",
                {'source_path': source_spec, 'error': str(e), 'error_type': type(e).__name__},
                'error',
                owner_id
            )
            self._emit(progress_callback, {
                'phase': 'error',
                'success': False,
                'error': str(e)
            })
            raise

    def _execute_workflow(self, source_spec, options: BackupOptions, owner_id: Optional[str],
                          progress_callback) -> Dict[str, Any]:
        """Execute the main backup workflow steps."""
        # Step 1: Parse sources
        sources = parse_source_spec(source_spec)
        normalized_spec = ';'.join(sources)
        roots = [str(Path(source).expanduser().absolute()) for source in sources]

        # Step 2: Pre-flight (all-or-nothing)
        errors = preflight_checks(sources, self.store_dir)
        if errors:
            raise PreflightError(errors)

        # Step 3: Baseline for incremental runs
        previous_manifest = None
        if options.incremental:
            previous_manifest = self._load_previous_manifest(normalized_spec, owner_id)

        # Step 4: Detect changes per source root
        detector = ChangeDetector(self.exclude_patterns + options.exclude_patterns)
        change_sets = [detector.detect_changes(source, previous_manifest) for source in sources]

        to_backup = [source_file for changes in change_sets for source_file in changes.to_backup]
        unchanged_entries = [entry for changes in change_sets for entry in changes.unchanged_entries]
        total_found = sum(changes.total_files for changes in change_sets)

        logger.info(
            f"Detected {len(to_backup)} files to back up, {len(unchanged_entries)} unchanged "
            f"({total_found} found in {len(sources)} source(s))"
        )
        self._emit(progress_callback, {
            'phase': 'detection',
            'files_found': total_found,
            'files_to_backup': len(to_backup),
            'files_unchanged': len(unchanged_entries)
        })

        key = self.key_cache.get_or_create(owner_id) if options.encrypt else None

        # Step 5: Allocate id and storage directory
        backup_id = generate_backup_id()
        backup_dir = Path(self.store_dir) / backup_id
        backup_dir.mkdir(parents=True, exist_ok=False)

        now = time.time()
        name = options.name or f"Backup_{datetime.fromtimestamp(now).strftime('%Y%m%d_%H%M%S')}"

        manifest = Manifest(
            backup_id=backup_id,
            name=name,
            source_path=normalized_spec,
            backup_path=str(backup_dir),
            timestamp=now,
            encrypted=options.encrypt,
            compressed=options.compress,
            incremental=options.incremental
        )

        # Step 6: Seal files
        allocator = _StoragePathAllocator(roots)
        files_backed_up = 0
        total_size = 0

        for index, source_file in enumerate(to_backup, start=1):
            stored_as = allocator.allocate(source_file)
            entry = self._backup_file(source_file, stored_as, backup_dir, key, options)
            manifest.files.append(entry)

            if not entry.failed:
                files_backed_up += 1
                total_size += entry.size

            self._emit(progress_callback, {
                'phase': 'backup',
                'current': index,
                'total': len(to_backup),
                'current_file': source_file.relative_path,
                'failed': entry.failed,
                'progress': index / len(to_backup) * 100
            })

        if previous_manifest is not None:
            manifest.referenced_files = unchanged_entries

        files_failed = len(manifest.failed_files)

        # Step 7: Persist sidecar, record and log entry
        (backup_dir / MANIFEST_FILENAME).write_text(manifest.to_json())

        self.store.create_backup_record({
            'id': backup_id,
            'name': name,
            'source_path': normalized_spec,
            'backup_path': str(backup_dir),
            'size': total_size,
            'file_count': files_backed_up,
            'encrypted': options.encrypt,
            'manifest': manifest.to_json(indent=None)
        }, owner_id)

        details = {
            'backup_id': backup_id,
            'files_backed_up': files_backed_up,
            'files_failed': files_failed,
            'files_unchanged': len(unchanged_entries),
            'total_size': total_size,
            'incremental': previous_manifest is not None
        }

        total_failure = files_failed > 0 and files_backed_up == 0
        if total_failure:
            logger.error(f"Backup {backup_id}: all {files_failed} files failed")
            self._log_entry(f"Backup failed: {name} (all {files_failed} files failed)", details, 'error', owner_id)
        else:
            logger.info(
                f"Backup {backup_id} created: {files_backed_up} files, "
                f"{total_size / 1024 / 1024:.2f} MB, {files_failed} failed"
            )
            self._log_entry(f"Backup created: {name}", details, 'info', owner_id)

        self._emit(progress_callback, {
            'phase': 'complete',
            'success': not total_failure,
            'backup_id': backup_id,
            'files_backed_up': files_backed_up,
            'files_failed': files_failed,
            'total_size': total_size
        })

        return {
            'success': not total_failure,
            'backup_id': backup_id,
            'backup_path': str(backup_dir),
            'manifest': manifest,
            'files_backed_up': files_backed_up,
            'files_failed': files_failed,
            'total_size': total_size
        }

    def _backup_file(self, source_file: SourceFile, stored_as: str, backup_dir: Path,
                     key: Optional[bytes], options: BackupOptions) -> FileEntry:
        """
        Hash and seal one file.

        Any failure is returned as a failed entry instead of raised.
        """
        artifact_path = backup_dir / f"{stored_as}{ARTIFACT_EXTENSION}"

        try:
            file_hash = compute_file_hash(source_file.path, self.chunk_size)
            seal_file(
                source_file.path,
                str(artifact_path),
                key=key,
                compress=options.compress,
                encrypt=options.encrypt,
                chunk_size=self.chunk_size
            )
        except Exception as e:
            logger.warning(f"Failed to back up {source_file.path}: {e}")
            return FileEntry(
                relative_path=source_file.relative_path,
                original_path=source_file.path,
                size=source_file.size,
                modified=source_file.modified,
                stored_as=stored_as,
                source_root=source_file.source_root,
                reason=source_file.reason,
                failed=True,
                error=str(e)
            )

        return FileEntry(
            relative_path=source_file.relative_path,
            original_path=source_file.path,
            size=source_file.size,
            modified=source_file.modified,
            hash=file_hash,
            backup_path=str(artifact_path),
            stored_as=stored_as,
            source_root=source_file.source_root,
            reason=source_file.reason
        )

    def _load_previous_manifest(self, source_spec: str, owner_id: Optional[str]) -> Optional[Manifest]:
        """
        Load the most recent manifest for this exact source spec.

        Returns None (full backup) when there is no usable previous record.
        """
        records = self.store.get_backup_records({'source_path': source_spec}, 1, owner_id)
        if not records:
            logger.info(f"No previous backup for {source_spec!r} - running full backup")
            return None

        previous = records[0]
        try:
            return Manifest.from_json(previous.manifest)
        except ManifestError as e:
            logger.warning(f"Ignoring unreadable manifest of backup {previous.id}: {e}")
            return None

    def _log_entry(self, message: str, details: dict, level: str, owner_id: Optional[str]):
        write_log_entry(self.store, message, details, level, owner_id)

    @staticmethod
    def _emit(progress_callback, event: dict):
        if progress_callback:
            progress_callback(event)
