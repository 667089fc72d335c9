"""
Shared pytest fixtures for Strongbox tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Persistence store and backup service
- Fake malware scanner
- Temporary source trees
"""

import os
from pathlib import Path

import pytest

from strongbox import create_app, db as _db
from strongbox.backup import BackupService
from strongbox.backup.service import _EXTENSION_KEY
from strongbox.store import DatabaseStore


class FakeScanner:
    """
    Scanner double returning canned results.

    Results are looked up by artifact file name; anything else is clean.
    """

    def __init__(self):
        self.results = {}
        self.errors = {}
        self.scanned = []

    def scan_file(self, path):
        self.scanned.append(path)
        name = Path(path).name

        if name in self.errors:
            raise self.errors[name]

        return self.results.get(name, {
            'is_clean': True,
            'threat': None,
            'skipped': False,
            'error': None,
            'message': 'No threats detected'
        })


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and a per-test storage root.
    """
    app = create_app('testing')

    # Override before the backup service is first built
    app.config.update({
        'BACKUP_STORE_DIR': str(tmp_path / 'store'),
    })
    os.makedirs(app.config['BACKUP_STORE_DIR'], exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def store(db):
    """DatabaseStore bound to the test database."""
    return DatabaseStore()


@pytest.fixture(scope='function')
def fake_scanner():
    return FakeScanner()


@pytest.fixture(scope='function')
def service(app, store, fake_scanner):
    """
    BackupService wired to the test store and the fake scanner.

    Also installed as the application's service so routes and CLI use it.
    """
    backup_service = BackupService(store, fake_scanner, app.config['BACKUP_STORE_DIR'])
    app.extensions[_EXTENSION_KEY] = backup_service
    return backup_service


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def notes_file(tmp_path):
    """A single 11-byte file containing 'hello world'."""
    path = tmp_path / 'notes.txt'
    path.write_text('hello world')
    return path


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source directory for backups.

    Creates:
    - A.txt
    - B.txt
    - nested/C.txt
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'A.txt').write_text('alpha')
    (source / 'B.txt').write_text('bravo')

    nested = source / 'nested'
    nested.mkdir()
    (nested / 'C.txt').write_text('charlie')

    return source


@pytest.fixture
def restore_dir(tmp_path):
    target = tmp_path / 'restore'
    target.mkdir()
    return target
