"""
Persistence store backed by Flask-SQLAlchemy.

The backup engine only relies on the methods below, so any object exposing
the same interface (e.g. an in-memory fake in tests) can stand in for it.
"""

import json
import logging
from typing import Optional, Dict, Any, List

from sqlalchemy.exc import IntegrityError

from strongbox import db
from strongbox.models import Setting, BackupRecord, LogEntry

logger = logging.getLogger(__name__)


def _owner_filter(column, owner_id: Optional[str]):
    """Match rows belonging to owner_id (NULL is the default owner)."""
    if owner_id is None:
        return column.is_(None)
    return column == owner_id


def _setting_owner(owner_id: Optional[str]) -> str:
    """Settings key the default owner as '' so (key, owner_id) stays unique."""
    return owner_id if owner_id is not None else ''


class DatabaseStore:
    """Settings, backup records and log entries stored in the application database."""

    def get_setting(self, key: str, owner_id: Optional[str] = None) -> Optional[str]:
        setting = Setting.query.filter_by(key=key, owner_id=_setting_owner(owner_id)).first()
        return setting.value if setting else None

    def set_setting(self, key: str, value: str, owner_id: Optional[str] = None):
        owner = _setting_owner(owner_id)
        setting = Setting.query.filter_by(key=key, owner_id=owner).first()

        if setting:
            setting.value = value
        else:
            db.session.add(Setting(key=key, value=value, owner_id=owner))

        db.session.commit()

    def get_or_create_setting(self, key: str, value: str, owner_id: Optional[str] = None) -> str:
        """
        Insert a setting only if it is absent and return the stored value.

        An existing value is never replaced. If another writer inserts the
        same (key, owner) first, the unique constraint rejects this insert
        and the winner's value is returned instead.

        Args:
            key: Setting name
            value: Value to store when the setting does not exist yet
            owner_id: Opaque owning identity

        Returns:
            The value now persisted for (key, owner_id)
        """
        owner = _setting_owner(owner_id)
        setting = Setting.query.filter_by(key=key, owner_id=owner).first()
        if setting:
            return setting.value

        db.session.add(Setting(key=key, value=value, owner_id=owner))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(f"Setting {key!r} for owner {owner_id!r} was created concurrently, using stored value")
            return Setting.query.filter_by(key=key, owner_id=owner).one().value

        return value

    def create_backup_record(self, fields: Dict[str, Any], owner_id: Optional[str] = None) -> BackupRecord:
        """
        Insert a backup record.

        Args:
            fields: Dict with id, name, source_path, backup_path, size,
                file_count, encrypted and manifest (JSON string)
            owner_id: Opaque owning identity

        Returns:
            The created BackupRecord
        """
        record = BackupRecord(
            id=fields['id'],
            name=fields['name'],
            source_path=fields['source_path'],
            backup_path=fields['backup_path'],
            size=fields.get('size', 0),
            file_count=fields.get('file_count', 0),
            encrypted=bool(fields.get('encrypted', False)),
            manifest=fields.get('manifest'),
            owner_id=owner_id
        )
        db.session.add(record)
        db.session.commit()
        return record

    def get_backup_records(self, filters: Optional[Dict[str, Any]] = None, limit: int = 50,
                           owner_id: Optional[str] = None) -> List[BackupRecord]:
        """
        List backup records for an owner, newest first.

        Args:
            filters: Optional dict; 'source_path' restricts to an exact source specification
            limit: Maximum number of records
            owner_id: Opaque owning identity

        Returns:
            List of BackupRecord
        """
        filters = filters or {}
        query = BackupRecord.query.filter(_owner_filter(BackupRecord.owner_id, owner_id))

        if filters.get('source_path'):
            query = query.filter(BackupRecord.source_path == filters['source_path'])

        return query.order_by(BackupRecord.created_at.desc()).limit(limit).all()

    def get_backup_record_by_id(self, backup_id: str) -> Optional[BackupRecord]:
        return db.session.get(BackupRecord, backup_id)

    def delete_backup_record(self, backup_id: str) -> bool:
        record = db.session.get(BackupRecord, backup_id)
        if not record:
            return False

        db.session.delete(record)
        db.session.commit()
        return True

    def add_log_entry(self, category: str, message: str, details: Optional[Dict[str, Any]] = None,
                      level: str = 'info', owner_id: Optional[str] = None) -> LogEntry:
        entry = LogEntry(
            category=category,
            message=message,
            details=json.dumps(details, default=str) if details is not None else None,
            level=level,
            owner_id=owner_id
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    def get_log_entries(self, category: Optional[str] = None, level: Optional[str] = None,
                        limit: int = 100, owner_id: Optional[str] = None) -> List[LogEntry]:
        query = LogEntry.query.filter(_owner_filter(LogEntry.owner_id, owner_id))

        if category:
            query = query.filter(LogEntry.category == category)
        if level:
            query = query.filter(LogEntry.level == level)

        return query.order_by(LogEntry.created_at.desc(), LogEntry.id.desc()).limit(limit).all()
