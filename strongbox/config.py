import os
import tempfile


def _split_patterns(value):
    """Parse a comma separated list of glob patterns from the environment."""
    if not value:
        return []
    return [pattern.strip() for pattern in value.split(',') if pattern.strip()]


class Config:
    """Base configuration"""

    # Database (persistence store)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/strongbox.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Backup storage root - one directory per backup id is created below it
    BACKUP_STORE_DIR = os.environ.get('BACKUP_STORE_DIR') or '/data/backups'

    # Logging (rotating file handler only when set)
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Streaming chunk size for hashing and sealing
    BACKUP_CHUNK_SIZE = int(os.environ.get('BACKUP_CHUNK_SIZE', 64 * 1024))

    # Glob patterns skipped during discovery (e.g. *.pyc, __pycache__)
    BACKUP_EXCLUDE_PATTERNS = _split_patterns(os.environ.get('BACKUP_EXCLUDE_PATTERNS'))

    # Malware scanner used during verification: 'none' or 'clamav'
    SCANNER = os.environ.get('SCANNER', 'none')
    SCANNER_EXECUTABLE = os.environ.get('SCANNER_EXECUTABLE', 'clamscan')
    SCAN_TIMEOUT_SECONDS = int(os.environ.get('SCAN_TIMEOUT_SECONDS', 60))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "strongbox.db")}'
    BACKUP_STORE_DIR = os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration - in-memory database, throwaway storage root"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    BACKUP_STORE_DIR = os.path.join(tempfile.gettempdir(), 'strongbox-test-backups')
    LOG_DIR = None
    BACKUP_EXCLUDE_PATTERNS = []
    SCANNER = 'none'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
