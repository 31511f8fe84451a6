"""Click-based CLI entry point for snapshelf."""

import json
import asyncio
from typing import Any, Dict

import click
from sqlalchemy import create_engine

from snapshelf import configure_logging, create_manager
from snapshelf.config import config as config_presets, load_sources_file
from snapshelf.exceptions import BackupError
from snapshelf.scheduler import BackupScheduler


CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def _echo(result: Dict[str, Any]):
    click.echo(json.dumps(result, indent=2, default=str))
    if isinstance(result, dict) and result.get('success') is False:
        raise SystemExit(1)


def _parse_json(value: str, option: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON ({e})", param_hint=option)


def _build_manager(ctx: click.Context, scheduler=None):
    params = ctx.obj
    overrides = {}
    if params.get('backup_path'):
        overrides['backup_path'] = params['backup_path']

    engine = create_engine(params['database_url']) if params.get('database_url') else None

    try:
        if params.get('sources'):
            overrides['data_sources'] = load_sources_file(params['sources'])
        cfg = config_presets[params['env']](**overrides)
        configure_logging(params.get('log_level') or cfg.log_level, params.get('log_dir') or cfg.log_dir)
        return create_manager(cfg, engine=engine, scheduler=scheduler)
    except BackupError as e:
        raise click.ClickException(str(e))


@click.group(context_settings=CONTEXT_SETTINGS, help="Create, restore and manage snapshelf backups.")
@click.option("--env", type=click.Choice(sorted(config_presets.keys())), default="production",
              show_default=True, help="Configuration preset.")
@click.option("--backup-path", type=click.Path(file_okay=False), help="Override BACKUP_PATH.")
@click.option("--sources", type=click.Path(exists=True, dir_okay=False),
              help="JSON file mapping source names to descriptors.")
@click.option("--database-url", envvar="DATABASE_URL", help="SQLAlchemy URL for database sources and sinks.")
@click.option("--log-level", help="Logging level; defaults to LOG_LEVEL or the preset's level.")
@click.option("--log-dir", type=click.Path(file_okay=False), help="Directory for rotating log files; defaults to LOG_DIR.")
@click.pass_context
def main(ctx, env, backup_path, sources, database_url, log_level, log_dir):
    """CLI root group."""
    ctx.obj = {
        'env': env,
        'backup_path': backup_path,
        'sources': sources,
        'database_url': database_url,
        'log_level': log_level,
        'log_dir': log_dir,
    }


@main.command("create")
@click.option("--type", "backup_type", type=click.Choice(['full', 'incremental', 'selective']),
              help="Backup type; decided from configuration when omitted.")
@click.option("--source", "source_names", multiple=True, help="Back up only this catalogue source; repeatable.")
@click.option("--criteria", help="Selective backup criteria as JSON, e.g. '{\"user_id\": 7}'.")
@click.option("--encryption-key", envvar="SNAPSHELF_ENCRYPTION_KEY", help="Encrypt the archive with this key.")
@click.option("--compression-method", type=click.Choice(['gzip', 'deflate', 'none']))
@click.option("--compression-level", type=click.IntRange(0, 9))
@click.option("--include-logs/--no-include-logs", default=False, show_default=True)
@click.option("--include-system-data/--no-include-system-data", default=True, show_default=True)
@click.option("--description", help="Free text stored in the backup metadata.")
@click.option("--verify/--no-verify", default=False, show_default=True,
              help="Verify the stored file once the backup is written.")
@click.pass_context
def create(ctx, backup_type, source_names, criteria, encryption_key, compression_method,
           compression_level, include_logs, include_system_data, description, verify):
    """Create a backup."""
    options = {
        'verify_after_creation': verify,
        'include_logs': include_logs,
        'include_system_data': include_system_data,
        'description': description,
    }
    if backup_type:
        options['type'] = backup_type
    if source_names:
        options['sources'] = list(source_names)
    if criteria:
        options['criteria'] = _parse_json(criteria, '--criteria')
    if encryption_key:
        options['encryption'] = encryption_key
    if compression_method:
        options['compression_method'] = compression_method
    if compression_level is not None:
        options['compression_level'] = compression_level

    manager = _build_manager(ctx)
    _echo(asyncio.run(manager.create_backup(options)))


@main.command("restore")
@click.argument("backup_id")
@click.option("--restore-path", type=click.Path(file_okay=False), help="Directory to restore files into.")
@click.option("--overwrite/--no-overwrite", default=False, show_default=True)
@click.option("--allow-partial/--no-allow-partial", default=False, show_default=True,
              help="Succeed even when fewer than 90% of entries restore.")
@click.option("--encryption-key", envvar="SNAPSHELF_ENCRYPTION_KEY")
@click.option("--include-type", multiple=True, help="Only restore entries of this type; repeatable.")
@click.option("--exclude-type", multiple=True, help="Skip entries of this type; repeatable.")
@click.option("--include-path", multiple=True, help="Only restore entries under this path prefix; repeatable.")
@click.option("--exclude-path", multiple=True, help="Skip entries under this path prefix; repeatable.")
@click.pass_context
def restore(ctx, backup_id, restore_path, overwrite, allow_partial, encryption_key,
            include_type, exclude_type, include_path, exclude_path):
    """Restore a backup by id."""
    options = {
        'overwrite_existing': overwrite,
        'allow_partial_restore': allow_partial,
    }
    if restore_path:
        options['restore_path'] = restore_path
    if encryption_key:
        options['encryption_key'] = encryption_key
    if include_type or exclude_type or include_path or exclude_path:
        options['selective_restore'] = {
            'include_types': list(include_type),
            'exclude_types': list(exclude_type),
            'include_paths': list(include_path),
            'exclude_paths': list(exclude_path),
        }

    manager = _build_manager(ctx)
    _echo(asyncio.run(manager.restore_backup(backup_id, options)))


@main.command("list")
@click.option("--type", "backup_type", default="all", show_default=True,
              type=click.Choice(['all', 'full', 'incremental', 'selective', 'archived']))
@click.option("--limit", default=50, show_default=True, type=click.IntRange(1))
@click.option("--sort-by", default="timestamp", show_default=True, type=click.Choice(['timestamp', 'size', 'type']))
@click.pass_context
def list_command(ctx, backup_type, limit, sort_by):
    """List backups."""
    manager = _build_manager(ctx)
    _echo(manager.list_backups(type=backup_type, limit=limit, sort_by=sort_by))


@main.command("delete")
@click.argument("backup_id")
@click.confirmation_option(prompt="Delete this backup?")
@click.pass_context
def delete(ctx, backup_id):
    """Delete a backup and its metadata."""
    manager = _build_manager(ctx)
    _echo(manager.delete_backup(backup_id))


@main.command("archive")
@click.pass_context
def archive(ctx):
    """Move backups older than the retention period into archived/."""
    manager = _build_manager(ctx)
    _echo(asyncio.run(manager.archive_old_backups()))


@main.command("stats")
@click.pass_context
def stats(ctx):
    """Show backup statistics."""
    manager = _build_manager(ctx)
    _echo(manager.get_statistics())


@main.command("verify")
@click.argument("backup_id")
@click.pass_context
def verify(ctx, backup_id):
    """Check that a stored backup exists, is readable and has its recorded size."""
    manager = _build_manager(ctx)
    _echo(manager.verify_backup(backup_id))


@main.command("details")
@click.argument("backup_id")
@click.pass_context
def details(ctx, backup_id):
    """Show a backup record with its metadata."""
    manager = _build_manager(ctx)
    _echo(manager.get_backup_details(backup_id))


@main.command("test-cycle")
@click.option("--type", "backup_type", default="full", show_default=True,
              type=click.Choice(['full', 'incremental']))
@click.option("--cleanup/--keep", default=True, show_default=True,
              help="Delete the test backup and restored files afterwards.")
@click.pass_context
def test_cycle(ctx, backup_type, cleanup):
    """Back up the user data sources and restore them into temp/."""
    manager = _build_manager(ctx)
    _echo(asyncio.run(manager.run_round_trip(backup_type, cleanup=cleanup)))


@main.command("create-archive")
@click.argument("output", type=click.Path(dir_okay=False))
@click.option("--source", "source_names", multiple=True,
              help="Archive only this catalogue source; repeatable. Defaults to the whole catalogue.")
@click.option("--compression-method", type=click.Choice(['gzip', 'deflate', 'none']))
@click.option("--compression-level", type=click.IntRange(0, 9))
@click.option("--encryption-key", envvar="SNAPSHELF_ENCRYPTION_KEY", help="Encrypt the archive with this key.")
@click.pass_context
def create_archive(ctx, output, source_names, compression_method, compression_level, encryption_key):
    """Write the catalogue sources into an archive at OUTPUT, outside the backup tree."""
    manager = _build_manager(ctx)
    catalogue = manager.config.data_sources
    unknown = [name for name in source_names if name not in catalogue]
    if unknown:
        raise click.BadParameter(f"unknown sources {unknown}", param_hint='--source')

    sources = {name: catalogue[name] for name in (source_names or catalogue)}
    options = {
        'compression_method': compression_method or manager.config.compression_method,
        'compression_level': (compression_level if compression_level is not None
                              else manager.config.compression_level),
        'encryption_key': encryption_key,
        'metadata': {'sources': list(sources)},
    }

    try:
        result = asyncio.run(manager.archiver.create_archive(sources, output, options))
    except BackupError as e:
        result = {'success': False, 'error': str(e), 'error_type': type(e).__name__}
    else:
        result['metadata'].pop('entries', None)
    _echo(result)


@main.command("schedule")
@click.pass_context
def schedule(ctx):
    """Run scheduled backups in the foreground until interrupted."""
    manager = _build_manager(ctx, scheduler=BackupScheduler())

    async def _serve():
        manager.enable_scheduled_backups()
        manager.scheduler.start()
        for job in manager.scheduler.get_scheduled_jobs():
            click.echo(f"{job['name']}: next run {job['next_run']}")
        try:
            await asyncio.Event().wait()
        finally:
            manager.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")
    except BackupError as e:
        raise click.ClickException(str(e))


if __name__ == '__main__':
    main()
