"""
Unit tests for the persistence store (strongbox/store.py) and models.
"""

import json

import pytest
from freezegun import freeze_time
from sqlalchemy.exc import IntegrityError

from strongbox.models import BackupRecord, LogEntry, Setting


def _fields(backup_id, source_path='/src'):
    return {
        'id': backup_id,
        'name': backup_id,
        'source_path': source_path,
        'backup_path': f'/store/{backup_id}',
        'size': 10,
        'file_count': 1,
        'encrypted': True,
        'manifest': '{}'
    }


class TestSettings:

    def test_get_missing(self, store):
        assert store.get_setting('missing') is None

    def test_set_and_update(self, store):
        store.set_setting('backup_encryption_key', 'aa', 'alice')
        store.set_setting('backup_encryption_key', 'bb', 'alice')

        assert store.get_setting('backup_encryption_key', 'alice') == 'bb'
        assert Setting.query.count() == 1

    def test_per_owner(self, store):
        store.set_setting('k', 'default')
        store.set_setting('k', 'alice-value', 'alice')

        assert store.get_setting('k') == 'default'
        assert store.get_setting('k', 'alice') == 'alice-value'
        assert store.get_setting('k', 'bob') is None

    def test_get_or_create_inserts_once(self, store):
        assert store.get_or_create_setting('k', 'first') == 'first'
        assert store.get_or_create_setting('k', 'second') == 'first'
        assert Setting.query.count() == 1

    def test_default_owner_is_unique(self, db, store):
        store.set_setting('k', 'default')
        db.session.add(Setting(key='k', value='duplicate', owner_id=''))

        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

        assert store.get_setting('k') == 'default'


class TestBackupRecords:

    def test_create_and_get(self, store):
        store.create_backup_record(_fields('b1'), 'alice')

        record = store.get_backup_record_by_id('b1')
        assert isinstance(record, BackupRecord)
        assert record.owner_id == 'alice'
        assert record.encrypted is True

    def test_newest_first_with_filters(self, store):
        with freeze_time('2024-01-01 10:00:00'):
            store.create_backup_record(_fields('old'))
        with freeze_time('2024-01-02 10:00:00'):
            store.create_backup_record(_fields('other', source_path='/other'))
        with freeze_time('2024-01-03 10:00:00'):
            store.create_backup_record(_fields('new'))

        assert [r.id for r in store.get_backup_records()] == ['new', 'other', 'old']
        assert [r.id for r in store.get_backup_records({'source_path': '/src'})] == ['new', 'old']
        assert [r.id for r in store.get_backup_records({'source_path': '/src'}, limit=1)] == ['new']

    def test_owner_filter(self, store):
        store.create_backup_record(_fields('mine'), 'alice')
        store.create_backup_record(_fields('default'))

        assert [r.id for r in store.get_backup_records(owner_id='alice')] == ['mine']
        assert [r.id for r in store.get_backup_records()] == ['default']

    def test_delete(self, store):
        store.create_backup_record(_fields('b1'))

        assert store.delete_backup_record('b1') is True
        assert store.delete_backup_record('b1') is False
        assert store.get_backup_record_by_id('b1') is None


class TestLogEntries:

    def test_add_and_filter(self, store):
        store.add_log_entry('backup', 'Backup created: x', {'files': 2})
        store.add_log_entry('backup', 'Backup failed: y', None, 'error')
        store.add_log_entry('backup', 'Other owner', None, 'info', 'alice')

        entries = store.get_log_entries(category='backup')
        assert [e.message for e in entries] == ['Backup failed: y', 'Backup created: x']
        assert json.loads(entries[1].details) == {'files': 2}
        assert entries[0].details is None

        errors = store.get_log_entries(level='error')
        assert len(errors) == 1
        assert isinstance(errors[0], LogEntry)

        assert len(store.get_log_entries(owner_id='alice')) == 1
