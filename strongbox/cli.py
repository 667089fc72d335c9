"""
Flask CLI commands: flask --app strongbox backup <command>
"""

import json

import click
from flask.cli import AppGroup

from strongbox.backup import get_backup_service, BackupError


backup_cli = AppGroup('backup', help='Create, restore, verify and maintain backups.')


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _print_progress(event):
    phase = event.get('phase')
    if phase in ('backup', 'restore', 'verify', 'scan'):
        click.echo(f"[{phase}] {event.get('current')}/{event.get('total')} {event.get('current_file')}", err=True)
    elif phase == 'error':
        click.echo(f"[error] {event.get('error')}", err=True)


@backup_cli.command('create')
@click.argument('source_path')
@click.option('--name', default=None, help='Display name (default: Backup_<timestamp>)')
@click.option('--encrypt/--no-encrypt', default=True)
@click.option('--compress/--no-compress', default=True)
@click.option('--incremental/--full', default=True)
@click.option('--exclude', multiple=True, help='Glob pattern to skip (repeatable)')
@click.option('--progress', is_flag=True, help='Print progress to stderr')
@click.option('--owner', default=None, help='Owning identity')
def create_command(source_path, name, encrypt, compress, incremental, exclude, owner, progress):
    """Back up SOURCE_PATH (semicolon-delimited for several paths)."""
    try:
        result = get_backup_service().create_backup(
            source_path,
            {
                'name': name,
                'encrypt': encrypt,
                'compress': compress,
                'incremental': incremental,
                'exclude_patterns': list(exclude)
            },
            owner_id=owner,
            progress_callback=_print_progress if progress else None
        )
    except BackupError as e:
        raise click.ClickException(str(e))

    _echo_json({
        'backup_id': result['backup_id'],
        'backup_path': result['backup_path'],
        'files_backed_up': result['files_backed_up'],
        'files_failed': result['files_failed'],
        'total_size': result['total_size']
    })


@backup_cli.command('restore')
@click.argument('backup_id')
@click.argument('target_path')
@click.option('--verify/--no-verify', default=True)
@click.option('--conflict', 'conflict_strategy', default='rename',
              type=click.Choice(['overwrite', 'rename', 'skip']))
@click.option('--progress', is_flag=True, help='Print progress to stderr')
@click.option('--owner', default=None, help='Owning identity')
def restore_command(backup_id, target_path, verify, conflict_strategy, owner, progress):
    """Restore BACKUP_ID into TARGET_PATH."""
    try:
        result = get_backup_service().restore_backup(
            backup_id,
            target_path,
            {'verify': verify, 'conflict_strategy': conflict_strategy},
            owner_id=owner,
            progress_callback=_print_progress if progress else None
        )
    except BackupError as e:
        raise click.ClickException(str(e))

    _echo_json(result)


@backup_cli.command('verify')
@click.argument('backup_id')
@click.option('--deep', is_flag=True, help='Decrypt artifacts and compare plaintext hashes')
@click.option('--progress', is_flag=True, help='Print progress to stderr')
@click.option('--owner', default=None, help='Owning identity')
def verify_command(backup_id, deep, owner, progress):
    """Verify BACKUP_ID and scan its artifacts."""
    try:
        report = get_backup_service().verify_backup(backup_id, owner, _print_progress if progress else None, deep=deep)
    except BackupError as e:
        raise click.ClickException(str(e))

    _echo_json(report)


@backup_cli.command('list')
@click.option('--source', 'source_path', default=None, help='Only backups of this source specification')
@click.option('--limit', default=50, type=int)
@click.option('--owner', default=None, help='Owning identity')
def list_command(source_path, limit, owner):
    """List backups, newest first."""
    _echo_json(get_backup_service().list_backups(owner, source_path, limit))


@backup_cli.command('delete')
@click.argument('backup_id')
@click.option('--owner', default=None, help='Owning identity')
def delete_command(backup_id, owner):
    """Delete BACKUP_ID's files and record."""
    try:
        _echo_json(get_backup_service().delete_backup(backup_id, owner))
    except BackupError as e:
        raise click.ClickException(str(e))


@backup_cli.command('diagnose')
@click.option('--prune', is_flag=True, help='Delete records with zero size and zero files')
@click.option('--owner', default=None, help='Owning identity')
def diagnose_command(prune, owner):
    """Report backups with missing files or unreadable manifests."""
    _echo_json(get_backup_service().diagnose_backups(owner, prune=prune))
