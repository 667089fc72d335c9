"""
Unit tests for backup executor (strongbox/backup/executor.py).

Tests the complete backup workflow: parsing, pre-flight, change detection,
sealing, manifests, records and log entries.
"""

import gzip
import hashlib
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from strongbox.backup import executor as executor_module
from strongbox.backup.errors import NoSourceProvidedError, PreflightError
from strongbox.backup.executor import BackupOptions, parse_source_spec, preflight_checks, generate_backup_id
from strongbox.backup.manifest import Manifest, MANIFEST_FILENAME, REASON_FULL, REASON_MODIFIED, REASON_NEW


def _store_contents(service):
    return sorted(os.listdir(service.store_dir))


def _artifacts(backup_path):
    return sorted(
        path.relative_to(backup_path).as_posix()
        for path in Path(backup_path).rglob('*.bak')
    )


class TestParseSourceSpec:

    def test_semicolon_delimited(self):
        assert parse_source_spec(' /a ; /b;;') == ['/a', '/b']

    def test_list(self):
        assert parse_source_spec(['/a', ' ', '/b']) == ['/a', '/b']

    def test_repeated_paths_collapsed(self):
        assert parse_source_spec('/a;/a/;/b;/a') == ['/a', '/b']

    @pytest.mark.parametrize('spec', ['', ' ; ; ', None, []])
    def test_empty(self, spec):
        with pytest.raises(NoSourceProvidedError):
            parse_source_spec(spec)


class TestBackupOptions:

    def test_defaults(self):
        options = BackupOptions.from_dict(None)
        assert (options.encrypt, options.compress, options.incremental) == (True, True, True)

    def test_explicit_false(self):
        assert BackupOptions.from_dict({'encrypt': False}).encrypt is False

    @pytest.mark.parametrize('value', ['false', 'no', 0, 1, ''])
    def test_non_boolean_rejected(self, value):
        with pytest.raises(ValueError, match="Option 'encrypt' must be true or false"):
            BackupOptions.from_dict({'encrypt': value})


class TestPreflightChecks:

    def test_all_good(self, source_tree, tmp_path):
        assert preflight_checks([str(source_tree)], str(tmp_path / 'store')) == []
        assert not (tmp_path / 'store' / executor_module.PREFLIGHT_MARKER).exists()

    def test_missing_source_does_not_touch_store(self, tmp_path):
        store_dir = tmp_path / 'new_store'

        errors = preflight_checks([str(tmp_path / 'missing')], str(store_dir))

        assert len(errors) == 1
        assert 'does not exist' in errors[0]
        assert not store_dir.exists()

    def test_unwritable_store(self, source_tree, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')

        errors = preflight_checks([str(source_tree)], str(blocker))

        assert len(errors) == 1
        assert errors[0].startswith('Target location not writable')


def test_generate_backup_id_unique():
    first, second = generate_backup_id(), generate_backup_id()

    assert first.startswith('backup_')
    assert first != second


class TestCreateBackup:
    """Test full and incremental backup runs."""

    def test_single_file_full_backup(self, service, store, notes_file):
        result = service.create_backup(
            str(notes_file),
            {'encrypt': True, 'compress': True, 'incremental': False}
        )

        assert result['success'] is True
        assert result['files_backed_up'] == 1
        assert result['files_failed'] == 0
        assert result['total_size'] == 11
        assert _store_contents(service) == [result['backup_id']]
        assert _artifacts(result['backup_path']) == ['notes.txt.bak']

        manifest = result['manifest']
        assert len(manifest.files) == 1
        entry = manifest.files[0]
        assert entry.hash == hashlib.sha256(b'hello world').hexdigest()
        assert entry.reason == REASON_FULL
        assert entry.size == 11
        assert entry.stored_as == 'notes.txt'

        # Artifact is encrypted: no plaintext on disk
        assert b'hello world' not in Path(entry.backup_path).read_bytes()

    def test_record_and_sidecar(self, service, store, source_tree):
        result = service.create_backup(str(source_tree), {'name': 'Docs'})

        record = store.get_backup_record_by_id(result['backup_id'])
        assert record.name == 'Docs'
        assert record.source_path == str(source_tree)
        assert record.file_count == 3
        assert record.size == len('alpha') + len('bravo') + len('charlie')
        assert record.encrypted is True
        assert record.owner_id is None

        sidecar = Path(result['backup_path']) / MANIFEST_FILENAME
        assert Manifest.from_json(sidecar.read_text()) == Manifest.from_json(record.manifest)

    def test_default_name(self, service, source_tree):
        result = service.create_backup(str(source_tree))
        assert result['manifest'].name.startswith('Backup_')

    def test_directory_entries_prefixed_with_root_name(self, service, source_tree):
        result = service.create_backup(str(source_tree))

        assert _artifacts(result['backup_path']) == [
            'source/A.txt.bak',
            'source/B.txt.bak',
            'source/nested/C.txt.bak'
        ]

    def test_unencrypted_artifact_is_gzip(self, service, notes_file):
        result = service.create_backup(str(notes_file), {'encrypt': False})

        artifact = Path(result['manifest'].files[0].backup_path)
        assert gzip.decompress(artifact.read_bytes()) == b'hello world'

    def test_incremental_only_modified_file(self, service, source_tree):
        first = service.create_backup(str(source_tree), {'incremental': True})
        assert {e.reason for e in first['manifest'].files} == {REASON_FULL}

        (source_tree / 'B.txt').write_text('bravo, modified')

        second = service.create_backup(str(source_tree), {'incremental': True})

        files = second['manifest'].files
        assert [(e.relative_path, e.reason) for e in files] == [('B.txt', REASON_MODIFIED)]
        assert sorted(e.relative_path for e in second['manifest'].referenced_files) == ['A.txt', 'nested/C.txt']
        assert second['files_backed_up'] == 1

    def test_incremental_chain_uses_latest_baseline(self, service, source_tree):
        service.create_backup(str(source_tree))
        (source_tree / 'B.txt').write_text('bravo, modified')
        service.create_backup(str(source_tree))

        # Nothing changed since the second run
        third = service.create_backup(str(source_tree))
        assert third['manifest'].files == []
        assert len(third['manifest'].referenced_files) == 3

        (source_tree / 'A.txt').write_text('alpha, modified')
        (source_tree / 'D.txt').write_text('delta')

        fourth = service.create_backup(str(source_tree))
        assert [(e.relative_path, e.reason) for e in fourth['manifest'].files] == [
            ('A.txt', REASON_MODIFIED),
            ('D.txt', REASON_NEW)
        ]

    def test_non_incremental_backs_up_everything(self, service, source_tree):
        service.create_backup(str(source_tree))

        result = service.create_backup(str(source_tree), {'incremental': False})

        assert result['files_backed_up'] == 3
        assert result['manifest'].referenced_files == []

    def test_exclude_patterns(self, service, source_tree):
        result = service.create_backup(str(source_tree), {'exclude_patterns': ['B.*']})
        assert [e.relative_path for e in result['manifest'].files] == ['A.txt', 'nested/C.txt']

    def test_multiple_sources_disambiguated(self, service, tmp_path):
        first = tmp_path / 'one' / 'data'
        second = tmp_path / 'two' / 'data'
        for root, content in ((first, 'first'), (second, 'second')):
            root.mkdir(parents=True)
            (root / 'x.txt').write_text(content)

        result = service.create_backup(f"{first};{second}")

        assert result['files_backed_up'] == 2
        assert [e.stored_as for e in result['manifest'].files] == ['data/x.txt', 'data_2/x.txt']
        assert result['manifest'].source_path == f"{first};{second}"

    def test_repeated_source_backed_up_once(self, service, source_tree):
        result = service.create_backup(f"{source_tree};{source_tree}/")

        assert result['files_backed_up'] == 3
        assert all(e.stored_as.startswith('source/') for e in result['manifest'].files)
        assert _artifacts(result['backup_path']) == [
            'source/A.txt.bak',
            'source/B.txt.bak',
            'source/nested/C.txt.bak'
        ]
        assert result['manifest'].source_path == str(source_tree)

    def test_owner_recorded(self, service, store, notes_file):
        result = service.create_backup(str(notes_file), owner_id='alice')

        record = store.get_backup_record_by_id(result['backup_id'])
        assert record.owner_id == 'alice'
        assert store.get_backup_records(owner_id=None) == []


class TestCreateBackupFailures:
    """Test usage errors and per-file failures."""

    @pytest.mark.parametrize('spec', ['', '  ;  '])
    def test_no_source(self, service, store, spec):
        with pytest.raises(NoSourceProvidedError):
            service.create_backup(spec)

        assert _store_contents(service) == []
        assert store.get_backup_records() == []

    def test_preflight_failure(self, service, store, tmp_path):
        with pytest.raises(PreflightError) as exc_info:
            service.create_backup(str(tmp_path / 'missing'))

        assert 'Source path does not exist' in exc_info.value.errors[0]
        assert _store_contents(service) == []
        assert store.get_backup_records() == []

        log = store.get_log_entries(category='backup', level='error')
        assert len(log) == 1
        assert log[0].message.startswith('Backup failed')

    def test_per_file_failure_is_recorded(self, service, store, source_tree):
        real_seal = executor_module.seal_file

        def failing_seal(source_path, *args, **kwargs):
            if source_path.endswith('B.txt'):
                raise PermissionError('Permission denied')
            return real_seal(source_path, *args, **kwargs)

        with patch('strongbox.backup.executor.seal_file', side_effect=failing_seal):
            result = service.create_backup(str(source_tree))

        assert result['success'] is True
        assert result['files_backed_up'] == 2
        assert result['files_failed'] == 1

        failed = result['manifest'].failed_files[0]
        assert failed.relative_path == 'B.txt'
        assert failed.hash is None
        assert 'Permission denied' in failed.error

        record = store.get_backup_record_by_id(result['backup_id'])
        assert record.file_count == 2

        # The failed file is retried by the next incremental run
        retry = service.create_backup(str(source_tree))
        assert [(e.relative_path, e.reason) for e in retry['manifest'].files] == [('B.txt', REASON_NEW)]

    def test_total_failure(self, service, store, source_tree):
        with patch('strongbox.backup.executor.seal_file', side_effect=OSError('Disk full')):
            result = service.create_backup(str(source_tree))

        assert result['success'] is False
        assert result['files_backed_up'] == 0
        assert result['files_failed'] == 3
        assert store.get_backup_record_by_id(result['backup_id']) is not None

        log = store.get_log_entries(category='backup', level='error')
        assert 'all 3 files failed' in log[0].message

    def test_log_failure_does_not_mask_result(self, service, store, notes_file):
        with patch.object(store, 'add_log_entry', side_effect=RuntimeError('log table locked')):
            result = service.create_backup(str(notes_file))

        assert result['files_backed_up'] == 1


class TestProgress:
    """Test progress event ordering."""

    def test_phases_in_order(self, service, source_tree):
        events = []
        service.create_backup(str(source_tree), progress_callback=events.append)

        phases = [event['phase'] for event in events]
        assert phases == ['detection', 'backup', 'backup', 'backup', 'complete']
        assert events[0]['files_to_backup'] == 3
        assert [event['current'] for event in events[1:4]] == [1, 2, 3]
        assert events[3]['progress'] == 100
        assert events[-1]['success'] is True

    def test_error_phase_on_failure(self, service, tmp_path):
        events = []

        with pytest.raises(PreflightError):
            service.create_backup(str(tmp_path / 'missing'), progress_callback=events.append)

        assert [event['phase'] for event in events] == ['error']

    def test_callback_exception_propagates(self, service, source_tree):
        def callback(event):
            if event['phase'] == 'detection':
                raise RuntimeError('listener failed')

        with pytest.raises(RuntimeError, match='listener failed'):
            service.create_backup(str(source_tree), progress_callback=callback)


def test_log_entry_details(service, store, notes_file):
    result = service.create_backup(str(notes_file), {'name': 'Notes'})

    entry = store.get_log_entries(category='backup')[0]
    assert entry.message == 'Backup created: Notes'
    assert json.loads(entry.details)['backup_id'] == result['backup_id']
