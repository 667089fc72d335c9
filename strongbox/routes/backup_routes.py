"""
Backup routes - create, list, restore, verify, delete and diagnose backups.

The owning identity is taken from the X-Owner-Id header and passed through
to the backup engine unchanged.
"""

import logging
from flask import Blueprint, jsonify, request

from strongbox.backup import (
    get_backup_service,
    BackupNotFoundError,
    NoSourceProvidedError,
    PreflightError,
    RestoreNoFilesError,
    BackupError
)
from strongbox.backup.executor import parse_flag


bp = Blueprint('backups', __name__, url_prefix='/api/backups')

logger = logging.getLogger(__name__)

OWNER_HEADER = 'X-Owner-Id'


def _owner_id():
    return request.headers.get(OWNER_HEADER) or None


@bp.errorhandler(BackupNotFoundError)
def handle_not_found(error):
    return jsonify({'error': str(error)}), 404


@bp.errorhandler(NoSourceProvidedError)
@bp.errorhandler(RestoreNoFilesError)
@bp.errorhandler(ValueError)
def handle_bad_request(error):
    return jsonify({'error': str(error)}), 400


@bp.errorhandler(PreflightError)
def handle_preflight(error):
    return jsonify({'error': str(error), 'checks': error.errors}), 400


@bp.errorhandler(BackupError)
def handle_backup_error(error):
    logger.error(f"Backup operation failed: {error}")
    return jsonify({'error': str(error)}), 500


@bp.route('/', methods=['GET'])
def list_backups():
    """
    Get backups of the requesting owner, newest first.

    Query params:
        - source_path: Only backups of this exact source specification
        - limit: Max number of records (default: 50, max: 200)

    Returns:
        JSON with backup records
    """
    source_path = request.args.get('source_path')
    limit = request.args.get('limit', 50, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1

    backups = get_backup_service().list_backups(_owner_id(), source_path, limit)

    return jsonify({'records': backups, 'total': len(backups), 'limit': limit})


@bp.route('/', methods=['POST'])
def create_backup():
    """
    Create a backup.

    Request body:
        - source_path: One or more paths, semicolon-delimited (required)
        - name: Display name (optional)
        - encrypt / compress / incremental: booleans (default: true)
        - exclude_patterns: Glob patterns to skip (optional)

    Returns:
        JSON with backup id, counts and the manifest
    """
    data = request.get_json(silent=True) or {}

    result = get_backup_service().create_backup(
        data.get('source_path', ''),
        {
            'name': data.get('name'),
            'encrypt': data.get('encrypt', True),
            'compress': data.get('compress', True),
            'incremental': data.get('incremental', True),
            'exclude_patterns': data.get('exclude_patterns', [])
        },
        owner_id=_owner_id()
    )

    return jsonify({
        'success': result['success'],
        'backup_id': result['backup_id'],
        'backup_path': result['backup_path'],
        'files_backed_up': result['files_backed_up'],
        'files_failed': result['files_failed'],
        'total_size': result['total_size'],
        'manifest': result['manifest'].to_dict()
    }), 201


@bp.route('/diagnostics', methods=['GET'])
def diagnose_backups():
    """
    Inspect all backups of the requesting owner for problems.

    Query params:
        - prune: 'true' to delete records with zero size and zero files

    Returns:
        JSON diagnostics summary
    """
    prune = request.args.get('prune', 'false').lower() == 'true'
    return jsonify(get_backup_service().diagnose_backups(_owner_id(), prune=prune))


@bp.route('/<backup_id>', methods=['GET'])
def get_backup(backup_id):
    """
    Get a backup record with its manifest.

    Args:
        backup_id: Backup identifier

    Returns:
        JSON with record fields and manifest
    """
    return jsonify(get_backup_service().get_backup(backup_id, _owner_id()))


@bp.route('/<backup_id>/restore', methods=['POST'])
def restore_backup(backup_id):
    """
    Restore a backup.

    Request body:
        - target_path: Directory to restore into (required)
        - verify: Re-hash restored files (default: true)
        - conflict_strategy: overwrite, rename or skip (default: rename)

    Returns:
        JSON restore result
    """
    data = request.get_json(silent=True) or {}

    if not data.get('target_path'):
        return jsonify({'error': 'Target path is required'}), 400

    result = get_backup_service().restore_backup(
        backup_id,
        data['target_path'],
        {
            'verify': data.get('verify', True),
            'conflict_strategy': data.get('conflict_strategy', 'rename')
        },
        owner_id=_owner_id()
    )

    return jsonify(result)


@bp.route('/<backup_id>/verify', methods=['POST'])
def verify_backup(backup_id):
    """
    Verify a backup's artifacts and scan them for malware.

    Request body:
        - deep: Decrypt artifacts and compare plaintext hashes (default: false)

    Returns:
        JSON verification report
    """
    data = request.get_json(silent=True) or {}
    report = get_backup_service().verify_backup(backup_id, _owner_id(), deep=parse_flag(data, 'deep', False))
    return jsonify(report)


@bp.route('/<backup_id>', methods=['DELETE'])
def delete_backup(backup_id):
    """
    Delete a backup's files and record.

    Args:
        backup_id: Backup identifier

    Returns:
        JSON with success message
    """
    get_backup_service().delete_backup(backup_id, _owner_id())
    return jsonify({'message': 'Backup deleted successfully', 'backup_id': backup_id})
