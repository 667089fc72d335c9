"""
Verification engine - checks a backup's artifacts and scans them for malware.

Verification is read-only: it never touches the manifest or the backup
record, so it can be re-run at any time. By default only artifact
existence is checked; deep verification additionally decrypts each
artifact in memory and compares the plaintext hash with the manifest.
"""

import os
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from .catalog import load_backup, write_log_entry
from .errors import TransformError
from .transform import digest_sealed_file, CHUNK_SIZE

logger = logging.getLogger(__name__)


class VerificationEngine:
    """
    Verifies stored backups and delegates malware scanning to a scanner.
    """

    def __init__(self, store, scanner, key_cache=None, chunk_size: int = CHUNK_SIZE):
        """
        Initialize verification engine.

        Args:
            store: Persistence store
            scanner: Object with scan_file(path) -> dict
            key_cache: EncryptionKeyCache (needed for deep verification only)
            chunk_size: Streaming chunk size in bytes
        """
        self.store = store
        self.scanner = scanner
        self.key_cache = key_cache
        self.chunk_size = chunk_size

    def verify(self, backup_id: str, owner_id: Optional[str] = None,
               progress_callback: Optional[Callable[[dict], None]] = None,
               deep: bool = False) -> Dict[str, Any]:
        """
        Verify a backup.

        Args:
            backup_id: Backup identifier
            owner_id: Opaque owning identity
            progress_callback: Called with dicts whose 'phase' is one of
                init, verify, scan, complete, error
            deep: Also decrypt each artifact and compare plaintext hashes

        Returns:
            Report dict:
            {
                'backup_id', 'timestamp', 'deep',
                'files_checked', 'files_valid', 'files_invalid', 'files_missing',
                'virus_scan': {'scanned', 'clean', 'threats', 'errors', 'skipped'},
                'details': [{'file', 'artifact', 'status', ...}]
            }

        Raises:
            BackupNotFoundError: If the backup does not exist for owner_id
        """
        try:
            return self._verify(backup_id, owner_id, progress_callback, deep)

        except Exception as e:
            logger.error(f"Verification of {backup_id} failed: {e}")
            write_log_entry(
                self.store,
                f"Verification failed: {e}",
                {'backup_id': backup_id, 'error': str(e)},
                'error',
                owner_id
            )

            if progress_callback:
                progress_callback({'phase': 'error', 'success': False, 'error': str(e)})
            raise

    def _verify(self, backup_id: str, owner_id: Optional[str], progress_callback, deep: bool) -> Dict[str, Any]:
        record, manifest = load_backup(self.store, backup_id, owner_id)
        entries = manifest.restorable_files

        report = {
            'backup_id': backup_id,
            'timestamp': datetime.utcnow().isoformat(),
            'deep': deep,
            'files_checked': 0,
            'files_valid': 0,
            'files_invalid': 0,
            'files_missing': 0,
            'virus_scan': {
                'scanned': 0,
                'clean': 0,
                'threats': 0,
                'errors': 0,
                'skipped': 0
            },
            'details': []
        }

        if progress_callback:
            progress_callback({'phase': 'init', 'files_total': len(entries)})

        key = None
        if deep and manifest.encrypted:
            key = self.key_cache.get_or_create(record.owner_id)

        to_scan = []

        for index, entry in enumerate(entries, start=1):
            name = entry.stored_as or entry.relative_path
            detail = {'file': name, 'artifact': entry.backup_path}
            report['details'].append(detail)
            report['files_checked'] += 1

            if not entry.backup_path or not os.path.isfile(entry.backup_path):
                report['files_missing'] += 1
                detail['status'] = 'missing'
            elif deep:
                self._verify_contents(entry, detail, key, manifest.compressed, manifest.encrypted)
            else:
                detail['status'] = 'valid'

            if detail['status'] == 'valid':
                report['files_valid'] += 1
            elif detail['status'] == 'invalid':
                report['files_invalid'] += 1

            # Every artifact present on disk is scanned, including ones that failed to decode
            if detail['status'] != 'missing':
                to_scan.append(detail)

            if progress_callback:
                progress_callback({
                    'phase': 'verify',
                    'current': index,
                    'total': len(entries),
                    'current_file': name,
                    'status': detail['status']
                })

        logger.info(f"Scanning {len(to_scan)} backup files for malware")
        scan_summary = report['virus_scan']

        for index, detail in enumerate(to_scan, start=1):
            if progress_callback:
                progress_callback({
                    'phase': 'scan',
                    'current': index,
                    'total': len(to_scan),
                    'current_file': detail['file']
                })

            try:
                scan_result = self.scanner.scan_file(detail['artifact'])
            except Exception as e:
                logger.error(f"Malware scan error for {detail['artifact']}: {e}")
                scan_summary['errors'] += 1
                detail['scan_error'] = str(e)
                continue

            scan_summary['scanned'] += 1

            if scan_result.get('error'):
                scan_summary['errors'] += 1
                detail['scan_error'] = scan_result.get('message') or scan_result['error']
            elif scan_result.get('skipped'):
                scan_summary['skipped'] += 1
            elif scan_result.get('is_clean'):
                scan_summary['clean'] += 1
            else:
                scan_summary['threats'] += 1
                detail['threat'] = scan_result.get('threat') or 'Unknown threat'
                detail['threat_message'] = scan_result.get('message')
                logger.warning(f"Threat detected in {detail['artifact']}: {detail['threat']}")

        write_log_entry(
            self.store,
            f"Backup verified: {manifest.name}",
            {key_name: report[key_name] for key_name in (
                'backup_id', 'deep', 'files_checked', 'files_valid',
                'files_invalid', 'files_missing', 'virus_scan'
            )},
            'warning' if scan_summary['threats'] else 'info',
            owner_id
        )

        if progress_callback:
            progress_callback({
                'phase': 'complete',
                'success': True,
                'files_valid': report['files_valid'],
                'files_invalid': report['files_invalid'],
                'files_missing': report['files_missing']
            })

        return report

    def _verify_contents(self, entry, detail: dict, key: Optional[bytes], compress: bool, encrypt: bool):
        """Decrypt an artifact in memory and compare its plaintext hash."""
        try:
            digest = digest_sealed_file(
                entry.backup_path,
                key=key,
                compress=compress,
                encrypt=encrypt,
                chunk_size=self.chunk_size
            )
        except TransformError as e:
            detail['status'] = 'invalid'
            detail['error'] = str(e)
            return

        detail['hash_match'] = digest == entry.hash
        if detail['hash_match']:
            detail['status'] = 'valid'
        else:
            detail['status'] = 'invalid'
            detail['error'] = 'Plaintext hash does not match manifest'
