"""
Database migrations for Strongbox.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from strongbox import db

logger = logging.getLogger(__name__)

# Columns added after the first release: (table, column, DDL type)
_OWNER_COLUMNS = [
    ('backups', 'owner_id', 'VARCHAR(255)'),
    ('logs', 'owner_id', 'VARCHAR(255)'),
    ('settings', 'owner_id', 'VARCHAR(255)'),
]


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates tables if they don't exist and runs any necessary migrations.
    Safe to call from several workers at once.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
        else:
            # Tables exist - migrate legacy columns before creating anything new
            run_migrations(app, inspector)

        try:
            # create_all only creates tables that are missing
            db.create_all()
            logger.info("Database schema ready")
        except Exception as e:
            # Another worker may have created the tables first
            logger.error(f"Failed to create database schema: {e}")


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    Legacy databases recorded backups, logs and settings for a single user;
    multi-tenant isolation needs an owner_id column on each of them.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    tables = inspector.get_table_names()

    for table, column, column_type in _OWNER_COLUMNS:
        if table not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        try:
            db.session.execute(text(
                f"ALTER TABLE {table} ADD COLUMN {column} {column_type}"
            ))
            db.session.commit()
            logger.info(f"Successfully added {column} column to {table}")
        except Exception as e:
            logger.error(f"Failed to add {column} column to {table}: {e}")
            db.session.rollback()

    if 'settings' in tables:
        _migrate_default_owner_settings()


def _migrate_default_owner_settings():
    """
    Key default-owner settings by '' instead of NULL.

    NULLs never collide in a unique index, so (key, NULL) rows could be
    duplicated. The unique index is (re)created for tables that predate it.
    """
    try:
        result = db.session.execute(text(
            "UPDATE settings SET owner_id = '' WHERE owner_id IS NULL"
        ))
        db.session.execute(text(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_settings_key_owner_idx ON settings (key, owner_id)"
        ))
        db.session.commit()
        if result.rowcount:
            logger.info(f"Migrated {result.rowcount} default-owner settings")
    except Exception as e:
        logger.error(f"Failed to migrate default-owner settings: {e}")
        db.session.rollback()
