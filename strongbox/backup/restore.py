"""
Restore engine - re-materializes files from a backup manifest.

Each restorable entry is opened (decrypted + decompressed) into the
target directory under its disambiguated path. Per-file problems
(missing artifact, decode failure, hash mismatch) are recorded in the
result and never stop the remaining files.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Callable

from .catalog import load_backup, write_log_entry
from .errors import RestoreNoFilesError, TransformError
from .executor import parse_flag
from .manifest import FileEntry
from .transform import open_file, compute_file_hash, CHUNK_SIZE

logger = logging.getLogger(__name__)

CONFLICT_OVERWRITE = 'overwrite'
CONFLICT_RENAME = 'rename'
CONFLICT_SKIP = 'skip'
CONFLICT_STRATEGIES = (CONFLICT_OVERWRITE, CONFLICT_RENAME, CONFLICT_SKIP)


@dataclass
class RestoreOptions:
    """Options recognized by restore_backup."""

    verify: bool = True
    conflict_strategy: str = CONFLICT_RENAME

    def __post_init__(self):
        if self.conflict_strategy not in CONFLICT_STRATEGIES:
            raise ValueError(
                f"Invalid conflict strategy: {self.conflict_strategy}. "
                f"Valid options: {list(CONFLICT_STRATEGIES)}"
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RestoreOptions':
        data = data or {}
        return cls(
            verify=parse_flag(data, 'verify', True),
            conflict_strategy=data.get('conflict_strategy') or CONFLICT_RENAME
        )


def renamed_destination(dest: Path) -> Path:
    """
    Return a free sibling path suffixed with the restoration timestamp.

    notes.txt -> notes_restored_20240115_120000.txt (plus a counter if taken)
    """
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    candidate = dest.with_name(f"{dest.stem}_restored_{timestamp}{dest.suffix}")

    counter = 1
    while candidate.exists():
        candidate = dest.with_name(f"{dest.stem}_restored_{timestamp}_{counter}{dest.suffix}")
        counter += 1

    return candidate


class RestoreEngine:
    """
    Restores backups into a target directory.
    """

    def __init__(self, store, key_cache, chunk_size: int = CHUNK_SIZE):
        """
        Initialize restore engine.

        Args:
            store: Persistence store
            key_cache: EncryptionKeyCache for per-owner keys
            chunk_size: Streaming chunk size in bytes
        """
        self.store = store
        self.key_cache = key_cache
        self.chunk_size = chunk_size

    def restore(self, backup_id: str, target_path: str, options: Optional[RestoreOptions] = None,
                owner_id: Optional[str] = None,
                progress_callback: Optional[Callable[[dict], None]] = None) -> Dict[str, Any]:
        """
        Restore a backup.

        Args:
            backup_id: Backup identifier
            target_path: Directory to restore into (created if missing)
            options: RestoreOptions (defaults: verify, rename on conflict)
            owner_id: Opaque owning identity
            progress_callback: Called with dicts whose 'phase' is one of
                init, restore, complete, error

        Returns:
            Dict with files_restored, files_skipped, files_failed, per-file
            details and verification_results (None unless verify is set)

        Raises:
            BackupNotFoundError: If the backup does not exist for owner_id
            RestoreNoFilesError: If the manifest has no restorable entries
        """
        options = options or RestoreOptions()

        try:
            return self._restore(backup_id, target_path, options, owner_id, progress_callback)

        except Exception as e:
            logger.error(f"Restore of {backup_id} failed: {e}")
            write_log_entry(
                self.store,
                f"Restore failed: {e}",
                {'backup_id': backup_id, 'target_path': str(target_path), 'error': str(e)},
                'error',
                owner_id
            )

            if progress_callback:
                progress_callback({'phase': 'error', 'success': False, 'error': str(e)})
            raise

    def _restore(self, backup_id: str, target_path: str, options: RestoreOptions,
                 owner_id: Optional[str], progress_callback) -> Dict[str, Any]:
        record, manifest = load_backup(self.store, backup_id, owner_id)

        entries = manifest.restorable_files
        if not entries:
            raise RestoreNoFilesError(f"Backup {backup_id} has no restorable files")

        if progress_callback:
            progress_callback({'phase': 'init', 'files_total': len(entries)})

        key = self.key_cache.get_or_create(record.owner_id) if manifest.encrypted else None

        target = Path(target_path).expanduser().absolute()
        target.mkdir(parents=True, exist_ok=True)

        result = {
            'success': True,
            'backup_id': backup_id,
            'target_path': str(target),
            'files_restored': 0,
            'files_skipped': 0,
            'files_failed': 0,
            'details': [],
            'verification_results': [] if options.verify else None
        }

        for index, entry in enumerate(entries, start=1):
            detail = self._restore_entry(entry, target, key, manifest.compressed, manifest.encrypted, options)
            result['details'].append(detail)

            status = detail['status']
            if status == 'restored':
                result['files_restored'] += 1
                if options.verify:
                    result['verification_results'].append({
                        'file': entry.stored_as or entry.relative_path,
                        'hash_match': detail['hash_match'],
                        'original_hash': entry.hash,
                        'restored_hash': detail['restored_hash']
                    })
            elif status == 'skipped':
                result['files_skipped'] += 1
            else:
                result['files_failed'] += 1

            if progress_callback:
                progress_callback({
                    'phase': 'restore',
                    'current': index,
                    'total': len(entries),
                    'current_file': entry.stored_as or entry.relative_path,
                    'status': status,
                    'progress': index / len(entries) * 100
                })

        mismatches = 0
        if options.verify:
            mismatches = sum(1 for item in result['verification_results'] if not item['hash_match'])

        logger.info(
            f"Restored {result['files_restored']} files from {backup_id} into {target} "
            f"({result['files_skipped']} skipped, {result['files_failed']} failed, {mismatches} hash mismatches)"
        )
        write_log_entry(
            self.store,
            f"Backup restored: {manifest.name}",
            {
                'backup_id': backup_id,
                'target_path': str(target),
                'files_restored': result['files_restored'],
                'files_skipped': result['files_skipped'],
                'files_failed': result['files_failed'],
                'hash_mismatches': mismatches
            },
            'info',
            owner_id
        )

        if progress_callback:
            progress_callback({
                'phase': 'complete',
                'success': True,
                'files_restored': result['files_restored'],
                'verification_results': result['verification_results']
            })

        return result

    def _restore_entry(self, entry: FileEntry, target: Path, key: Optional[bytes], compress: bool,
                       encrypt: bool, options: RestoreOptions) -> Dict[str, Any]:
        """Restore one entry and describe the outcome."""
        name = entry.stored_as or entry.relative_path
        detail = {'file': name}

        if not entry.backup_path or not Path(entry.backup_path).is_file():
            logger.warning(f"Backup artifact missing for {name}: {entry.backup_path}")
            detail.update(status='failed', error=f"Backup artifact missing: {entry.backup_path}")
            return detail

        dest = (target / name).absolute()
        if not dest.resolve().is_relative_to(target.resolve()):
            detail.update(status='failed', error=f"Refusing to restore outside target directory: {name}")
            return detail

        if dest.exists():
            if options.conflict_strategy == CONFLICT_SKIP:
                detail.update(status='skipped', reason='File exists and conflict strategy is skip')
                return detail
            elif options.conflict_strategy == CONFLICT_RENAME:
                dest = renamed_destination(dest)
            # Overwrite: open_file replaces the existing file atomically

        try:
            open_file(
                entry.backup_path,
                str(dest),
                key=key,
                compress=compress,
                encrypt=encrypt,
                chunk_size=self.chunk_size
            )
        except TransformError as e:
            logger.error(f"Failed to restore {name}: {e}")
            detail.update(status='failed', error=str(e))
            return detail

        detail.update(status='restored', restored_to=str(dest))

        if options.verify:
            try:
                restored_hash = compute_file_hash(str(dest), self.chunk_size)
            except OSError as e:
                restored_hash = None
                detail['error'] = f"Failed to hash restored file: {e}"

            detail['restored_hash'] = restored_hash
            detail['hash_match'] = restored_hash is not None and restored_hash == entry.hash

            if not detail['hash_match']:
                logger.warning(f"Hash mismatch for {name}")

        return detail
