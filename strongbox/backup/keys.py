"""
Per-owner backup encryption keys.

Each owning identity has one random 256-bit key, generated on first use
and persisted hex-encoded through the store's settings. Losing the
setting makes every backup sealed under that key unrecoverable.
"""

import os
import logging
import threading
from typing import Optional, Dict

from .errors import BackupError
from .transform import KEY_SIZE

logger = logging.getLogger(__name__)

KEY_SETTING = 'backup_encryption_key'


class EncryptionKeyCache:
    """Thread-safe get-or-create cache of encryption keys keyed by owner."""

    def __init__(self, store):
        """
        Initialize key cache.

        Args:
            store: Persistence store providing get_setting/get_or_create_setting
        """
        self.store = store
        self._keys: Dict[Optional[str], bytes] = {}
        self._lock = threading.Lock()

    def get_or_create(self, owner_id: Optional[str] = None) -> bytes:
        """
        Return the owner's key, loading or generating it on first use.

        A generated key is persisted with an insert-if-absent, so when two
        workers race on a first use the key stored first wins and the other
        worker adopts it. A stored key is never replaced.

        Args:
            owner_id: Opaque owning identity

        Returns:
            32-byte key

        Raises:
            BackupError: If the stored key is not a valid 256-bit hex string
        """
        with self._lock:
            key = self._keys.get(owner_id)
            if key is not None:
                return key

            stored = self.store.get_setting(KEY_SETTING, owner_id)

            if stored:
                key = self._decode(stored, owner_id)
            else:
                candidate = os.urandom(KEY_SIZE)
                stored = self.store.get_or_create_setting(KEY_SETTING, candidate.hex(), owner_id)
                key = self._decode(stored, owner_id)

                if key == candidate:
                    logger.info(f"Generated new backup encryption key for owner {owner_id!r}")
                else:
                    logger.info(f"Using backup encryption key stored concurrently for owner {owner_id!r}")

            self._keys[owner_id] = key
            return key

    @staticmethod
    def _decode(stored: str, owner_id: Optional[str]) -> bytes:
        try:
            key = bytes.fromhex(stored)
        except ValueError:
            raise BackupError(f"Stored encryption key for owner {owner_id!r} is not valid hex")

        if len(key) != KEY_SIZE:
            raise BackupError(
                f"Stored encryption key for owner {owner_id!r} has {len(key)} bytes, expected {KEY_SIZE}"
            )
        return key

    def forget(self, owner_id: Optional[str] = None):
        """Drop a cached key (the persisted setting is kept)."""
        with self._lock:
            self._keys.pop(owner_id, None)
