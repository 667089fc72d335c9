from datetime import datetime
from strongbox import db


class Setting(db.Model):
    """Per-owner key/value settings (holds the backup encryption key)"""
    __tablename__ = 'settings'
    __table_args__ = (db.UniqueConstraint('key', 'owner_id', name='uq_settings_key_owner'),)

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), nullable=False)
    value = db.Column(db.Text, nullable=True)
    owner_id = db.Column(db.String(255), nullable=False, default='')  # Opaque identity token, '' for the default owner
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<Setting {self.key} owner={self.owner_id}>'


class BackupRecord(db.Model):
    """One completed backup run"""
    __tablename__ = 'backups'

    id = db.Column(db.String(64), primary_key=True)  # Same value as the manifest's backup_id
    name = db.Column(db.String(255), nullable=False)
    source_path = db.Column(db.Text, nullable=False)  # Semicolon-joined source specification
    backup_path = db.Column(db.String(1024), nullable=False)
    size = db.Column(db.BigInteger)  # Plaintext bytes of successfully sealed files
    file_count = db.Column(db.Integer)  # Successfully sealed files only
    encrypted = db.Column(db.Boolean, default=False, nullable=False)
    manifest = db.Column(db.Text)  # Manifest JSON
    owner_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f'<BackupRecord {self.id} files={self.file_count} encrypted={self.encrypted}>'


class LogEntry(db.Model):
    """Structured operation log mirrored from the backup engine"""
    __tablename__ = 'logs'

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(50), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    details = db.Column(db.Text)  # JSON string
    level = db.Column(db.String(20), default='info', nullable=False, index=True)
    owner_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f'<LogEntry {self.category} level={self.level}>'
