"""
Backup catalog - lookup, listing, deletion and diagnostics of stored backups.

Diagnostics inspect every record for problems that make a backup
unusable (missing directory, unreadable manifest, missing artifacts) and
can prune records that never contained anything.
"""

import os
import shutil
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple

from .errors import BackupNotFoundError, ManifestError
from .manifest import Manifest

logger = logging.getLogger(__name__)


def load_backup(store, backup_id: str, owner_id: Optional[str] = None) -> Tuple[Any, Manifest]:
    """
    Fetch a backup record and decode its manifest.

    Records that belong to a different owner are reported as not found.

    Raises:
        BackupNotFoundError: If no record is visible to owner_id
        ManifestError: If the stored manifest cannot be decoded
    """
    record = store.get_backup_record_by_id(backup_id)

    if record is None or record.owner_id != owner_id:
        raise BackupNotFoundError(backup_id)

    return record, Manifest.from_json(record.manifest)


def write_log_entry(store, message: str, details: Dict[str, Any], level: str = 'info',
                    owner_id: Optional[str] = None):
    """
    Mirror an operation outcome into the store's log (category 'backup').

    A failed write is logged and never changes the outcome of the operation.
    """
    try:
        store.add_log_entry('backup', message, details, level, owner_id)
    except Exception as e:
        logger.error(f"Failed to write backup log entry: {e}")


def record_to_dict(record) -> Dict[str, Any]:
    """Summarize a backup record for API/CLI output."""
    created_at = record.created_at
    return {
        'id': record.id,
        'name': record.name,
        'source_path': record.source_path,
        'backup_path': record.backup_path,
        'size': record.size,
        'size_mb': round(record.size / 1024 / 1024, 2) if record.size else 0,
        'file_count': record.file_count,
        'encrypted': bool(record.encrypted),
        'owner_id': record.owner_id,
        'created_at': created_at.isoformat() if isinstance(created_at, datetime) else created_at
    }


class BackupCatalog:
    """
    Read and housekeeping operations over stored backups.
    """

    def __init__(self, store):
        """
        Initialize backup catalog.

        Args:
            store: Persistence store
        """
        self.store = store

    def list_backups(self, owner_id: Optional[str] = None, source_path: Optional[str] = None,
                     limit: int = 50) -> List[Dict[str, Any]]:
        filters = {'source_path': source_path} if source_path else {}
        records = self.store.get_backup_records(filters, limit, owner_id)
        return [record_to_dict(record) for record in records]

    def get_backup(self, backup_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """Return a record summary plus its decoded manifest."""
        record, manifest = load_backup(self.store, backup_id, owner_id)
        summary = record_to_dict(record)
        summary['manifest'] = manifest.to_dict()
        summary['files_failed'] = len(manifest.failed_files)
        return summary

    def delete_backup(self, backup_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Delete a backup's storage directory and record.

        Raises:
            BackupNotFoundError: If no record is visible to owner_id
        """
        record = self.store.get_backup_record_by_id(backup_id)
        if record is None or record.owner_id != owner_id:
            raise BackupNotFoundError(backup_id)

        name = record.name
        backup_path = record.backup_path
        removed_files = False

        if backup_path and os.path.isdir(backup_path):
            shutil.rmtree(backup_path)
            removed_files = True

        self.store.delete_backup_record(backup_id)

        logger.info(f"Deleted backup {backup_id} ({backup_path})")
        write_log_entry(
            self.store,
            f"Backup deleted: {name}",
            {'backup_id': backup_id, 'backup_path': backup_path, 'removed_files': removed_files},
            'info',
            owner_id
        )

        return {'success': True, 'backup_id': backup_id, 'removed_files': removed_files}

    def diagnose(self, owner_id: Optional[str] = None, prune: bool = False, limit: int = 1000) -> Dict[str, Any]:
        """
        Inspect every backup record of an owner for problems.

        Args:
            owner_id: Opaque owning identity
            prune: Delete records with both zero size and zero file count
            limit: Maximum number of records inspected

        Returns:
            Dict with summary of the diagnosis:
            {
                'total': int,
                'with_issues': int,
                'broken': List[str],   # ids with zero size and zero files
                'pruned': List[str],
                'backups': List[{'id', 'name', 'issues'}]
            }
        """
        records = self.store.get_backup_records({}, limit, owner_id)

        summary = {
            'total': len(records),
            'with_issues': 0,
            'broken': [],
            'pruned': [],
            'backups': []
        }

        for record in records:
            issues = self._diagnose_record(record)

            if not issues:
                continue

            summary['with_issues'] += 1
            summary['backups'].append({'id': record.id, 'name': record.name, 'issues': issues})

            if not record.size and not record.file_count:
                summary['broken'].append(record.id)

        if prune:
            for backup_id in summary['broken']:
                if self.store.delete_backup_record(backup_id):
                    summary['pruned'].append(backup_id)
                    logger.info(f"Pruned broken backup record {backup_id}")

        write_log_entry(
            self.store,
            f"Backup diagnostics: {summary['with_issues']} of {summary['total']} backups with issues",
            {key: summary[key] for key in ('total', 'with_issues', 'broken', 'pruned')},
            'warning' if summary['with_issues'] else 'info',
            owner_id
        )

        return summary

    @staticmethod
    def _diagnose_record(record) -> List[str]:
        issues = []

        if not record.size:
            issues.append('Size is 0 or null')

        if not record.file_count:
            issues.append('File count is 0 or null')

        if record.backup_path and not Path(record.backup_path).is_dir():
            issues.append(f"Backup directory does not exist: {record.backup_path}")

        if not record.manifest:
            issues.append('No manifest stored')
            return issues

        try:
            manifest = Manifest.from_json(record.manifest)
        except ManifestError as e:
            issues.append(str(e))
            return issues

        if not manifest.files:
            issues.append('Manifest has no files')
        else:
            missing = sum(
                1 for entry in manifest.restorable_files
                if not entry.backup_path or not os.path.exists(entry.backup_path)
            )
            if missing:
                issues.append(f"{missing} backup file(s) missing from disk")

        return issues
