"""
BackupService - wires the store, key cache, scanner and storage root
together and exposes the backup operations used by the API and CLI.

Operations run synchronously in the caller's thread. A caller may stop
waiting for a result, but a running operation cannot be interrupted; it
always runs to completion or failure. Callers must not run two backups
of the same source specification at the same time, otherwise the
incremental baseline of one run may not reflect the other.
"""

import logging
from typing import Optional, Dict, Any, Callable, List, Union

from flask import current_app

from .catalog import BackupCatalog
from .executor import BackupExecutor, BackupOptions
from .keys import EncryptionKeyCache
from .restore import RestoreEngine, RestoreOptions
from .transform import CHUNK_SIZE
from .verification import VerificationEngine

logger = logging.getLogger(__name__)

_EXTENSION_KEY = 'strongbox.backup_service'


class BackupService:
    """Facade over executor, restore engine, verification engine and catalog."""

    def __init__(self, store, scanner, store_dir: str, chunk_size: int = CHUNK_SIZE,
                 exclude_patterns: List[str] = None):
        """
        Initialize backup service.

        Args:
            store: Persistence store
            scanner: Malware scanner collaborator
            store_dir: Backup storage root
            chunk_size: Streaming chunk size in bytes
            exclude_patterns: Glob patterns always skipped during discovery
        """
        self.store = store
        self.scanner = scanner
        self.store_dir = store_dir
        self.keys = EncryptionKeyCache(store)

        self.executor = BackupExecutor(store, self.keys, store_dir, chunk_size, exclude_patterns)
        self.restorer = RestoreEngine(store, self.keys, chunk_size)
        self.verifier = VerificationEngine(store, scanner, self.keys, chunk_size)
        self.catalog = BackupCatalog(store)

    def create_backup(self, source_spec, options: Union[BackupOptions, Dict[str, Any], None] = None,
                      owner_id: Optional[str] = None,
                      progress_callback: Optional[Callable[[dict], None]] = None) -> Dict[str, Any]:
        if not isinstance(options, BackupOptions):
            options = BackupOptions.from_dict(options)
        return self.executor.execute(source_spec, options, owner_id, progress_callback)

    def restore_backup(self, backup_id: str, target_path: str,
                       options: Union[RestoreOptions, Dict[str, Any], None] = None,
                       owner_id: Optional[str] = None,
                       progress_callback: Optional[Callable[[dict], None]] = None) -> Dict[str, Any]:
        if not isinstance(options, RestoreOptions):
            options = RestoreOptions.from_dict(options)
        return self.restorer.restore(backup_id, target_path, options, owner_id, progress_callback)

    def verify_backup(self, backup_id: str, owner_id: Optional[str] = None,
                      progress_callback: Optional[Callable[[dict], None]] = None,
                      deep: bool = False) -> Dict[str, Any]:
        return self.verifier.verify(backup_id, owner_id, progress_callback, deep)

    def list_backups(self, owner_id: Optional[str] = None, source_path: Optional[str] = None,
                     limit: int = 50) -> List[Dict[str, Any]]:
        return self.catalog.list_backups(owner_id, source_path, limit)

    def get_backup(self, backup_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        return self.catalog.get_backup(backup_id, owner_id)

    def delete_backup(self, backup_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        return self.catalog.delete_backup(backup_id, owner_id)

    def diagnose_backups(self, owner_id: Optional[str] = None, prune: bool = False) -> Dict[str, Any]:
        return self.catalog.diagnose(owner_id, prune)


def get_backup_service(app=None) -> BackupService:
    """
    Return the application's BackupService, building it from config on first use.

    Args:
        app: Flask application (defaults to current_app)
    """
    from strongbox.scanner import create_scanner
    from strongbox.store import DatabaseStore

    app = app or current_app._get_current_object()
    service = app.extensions.get(_EXTENSION_KEY)

    if service is None:
        scanner = create_scanner(
            app.config.get('SCANNER', 'none'),
            executable=app.config.get('SCANNER_EXECUTABLE', 'clamscan'),
            timeout=app.config.get('SCAN_TIMEOUT_SECONDS', 60)
        )
        service = BackupService(
            store=DatabaseStore(),
            scanner=scanner,
            store_dir=app.config['BACKUP_STORE_DIR'],
            chunk_size=app.config.get('BACKUP_CHUNK_SIZE', CHUNK_SIZE),
            exclude_patterns=app.config.get('BACKUP_EXCLUDE_PATTERNS', [])
        )
        app.extensions[_EXTENSION_KEY] = service
        logger.info(f"Backup service initialized at {service.store_dir}")

    return service
