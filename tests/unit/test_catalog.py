"""
Unit tests for backup catalog (strongbox/backup/catalog.py).

Tests listing, deletion and diagnostics of stored backups.
"""

import os
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from strongbox.backup.errors import BackupNotFoundError


class TestListBackups:

    def test_newest_first(self, service, source_tree, notes_file):
        first = service.create_backup(str(source_tree), {'name': 'first'})
        second = service.create_backup(str(notes_file), {'name': 'second'})

        backups = service.list_backups()

        assert [b['id'] for b in backups] == [second['backup_id'], first['backup_id']]
        assert backups[1]['file_count'] == 3
        assert backups[1]['encrypted'] is True

    def test_filter_by_source(self, service, source_tree, notes_file):
        service.create_backup(str(source_tree))
        notes = service.create_backup(str(notes_file))

        backups = service.list_backups(source_path=str(notes_file))

        assert [b['id'] for b in backups] == [notes['backup_id']]

    def test_owner_isolation(self, service, notes_file):
        service.create_backup(str(notes_file), owner_id='alice')

        assert len(service.list_backups(owner_id='alice')) == 1
        assert service.list_backups(owner_id='bob') == []
        assert service.list_backups() == []

    def test_limit(self, service, notes_file):
        for _ in range(3):
            service.create_backup(str(notes_file), {'incremental': False})

        assert len(service.list_backups(limit=2)) == 2


class TestGetBackup:

    def test_includes_manifest(self, service, notes_file):
        backup = service.create_backup(str(notes_file), {'name': 'Notes'})

        summary = service.get_backup(backup['backup_id'])

        assert summary['name'] == 'Notes'
        assert summary['files_failed'] == 0
        assert summary['manifest']['files'][0]['relative_path'] == 'notes.txt'

    def test_not_found(self, service):
        with pytest.raises(BackupNotFoundError):
            service.get_backup('backup_missing')


class TestDeleteBackup:

    def test_removes_directory_and_record(self, service, store, notes_file):
        backup = service.create_backup(str(notes_file))

        result = service.delete_backup(backup['backup_id'])

        assert result['removed_files'] is True
        assert not os.path.exists(backup['backup_path'])
        assert store.get_backup_record_by_id(backup['backup_id']) is None

    def test_directory_already_gone(self, service, store, notes_file):
        backup = service.create_backup(str(notes_file))
        shutil.rmtree(backup['backup_path'])

        result = service.delete_backup(backup['backup_id'])

        assert result['removed_files'] is False
        assert store.get_backup_record_by_id(backup['backup_id']) is None

    def test_other_owner(self, service, store, notes_file):
        backup = service.create_backup(str(notes_file), owner_id='alice')

        with pytest.raises(BackupNotFoundError):
            service.delete_backup(backup['backup_id'], owner_id='bob')

        assert os.path.isdir(backup['backup_path'])

    def test_log_failure_does_not_block_delete(self, service, store, notes_file):
        backup = service.create_backup(str(notes_file))

        with patch.object(store, 'add_log_entry', side_effect=RuntimeError('log table locked')):
            result = service.delete_backup(backup['backup_id'])

        assert result['removed_files'] is True
        assert store.get_backup_record_by_id(backup['backup_id']) is None


class TestDiagnose:
    """Test diagnostics and pruning."""

    def test_healthy(self, service, source_tree):
        service.create_backup(str(source_tree))

        summary = service.diagnose_backups()

        assert summary['total'] == 1
        assert summary['with_issues'] == 0
        assert summary['broken'] == []

    def test_missing_artifacts_and_directory(self, service, source_tree, notes_file):
        partial = service.create_backup(str(source_tree))
        os.remove(partial['manifest'].files[0].backup_path)
        gone = service.create_backup(str(notes_file))
        shutil.rmtree(gone['backup_path'])

        summary = service.diagnose_backups()

        assert summary['with_issues'] == 2
        issues = {item['id']: item['issues'] for item in summary['backups']}
        assert issues[partial['backup_id']] == ['1 backup file(s) missing from disk']
        assert any('Backup directory does not exist' in issue for issue in issues[gone['backup_id']])
        assert summary['broken'] == []

    def test_prune_empty_backups(self, service, store, source_tree):
        full = service.create_backup(str(source_tree))
        empty = service.create_backup(str(source_tree))
        assert empty['files_backed_up'] == 0

        report = service.diagnose_backups()
        assert report['broken'] == [empty['backup_id']]
        assert report['pruned'] == []

        pruned = service.diagnose_backups(prune=True)

        assert pruned['pruned'] == [empty['backup_id']]
        assert store.get_backup_record_by_id(empty['backup_id']) is None
        assert store.get_backup_record_by_id(full['backup_id']) is not None

    def test_unreadable_manifest(self, db, service, store, notes_file):
        backup = service.create_backup(str(notes_file))
        record = store.get_backup_record_by_id(backup['backup_id'])
        record.manifest = '{broken'
        db.session.commit()

        summary = service.diagnose_backups()

        assert summary['with_issues'] == 1
        assert 'Invalid manifest JSON' in summary['backups'][0]['issues'][0]

    def test_logs_warning_when_issues_found(self, service, store, notes_file):
        backup = service.create_backup(str(notes_file))
        shutil.rmtree(backup['backup_path'])

        service.diagnose_backups()

        entry = store.get_log_entries(category='backup')[0]
        assert entry.level == 'warning'
