"""Command line entry point, meant to be run from cron or a systemd timer."""

import signal
import logging
from contextlib import contextmanager
from datetime import datetime

import click

from dbkeeper import __version__, configure_logging, create_pipeline, create_registry
from dbkeeper.config import ConfigurationError, load_settings
from dbkeeper.backup.executor import EXIT_CONFIGURATION_ERROR, EXIT_FAILURE, interrupt_guard
from dbkeeper.backup.retention import PruneError, enforce_retention
from dbkeeper.notifications import Severity, create_notifier
from dbkeeper.history import RunHistory
from dbkeeper.utils.crypto import PasswordCipher

logger = logging.getLogger(__name__)

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


@contextmanager
def interrupt_handlers():
    """Turn SIGINT/SIGTERM/SIGHUP into RunInterrupted for the duration of a run."""
    previous = {sig: signal.signal(sig, interrupt_guard.handle) for sig in INTERRUPT_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _load(ctx, **overrides):
    """Load settings and set up logging, exiting with code 2 on bad configuration."""
    try:
        settings = load_settings(ctx.obj['env'], **overrides)
    except ConfigurationError as e:
        # No usable notification channel: stderr is all we have
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Configuration error: {e}")
        click.echo(f"Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIGURATION_ERROR)

    configure_logging(settings)
    return settings


@click.group()
@click.version_option(version=__version__, prog_name='dbkeeper')
@click.option('--env', 'env', default=None,
              help="Configuration to use (development, production, testing). Defaults to $DBKEEPER_ENV.")
@click.pass_context
def cli(ctx: click.Context, env):
    """dbkeeper - scheduled MySQL backups with retention and Telegram alerts.

    \b
    Quick Start:
      dbkeeper check              # Validate configuration and list targets
      dbkeeper run                # Dump, archive and prune
      dbkeeper prune              # Only delete expired archives
      dbkeeper history            # Show recent runs
    """
    ctx.ensure_object(dict)
    ctx.obj['env'] = env


@cli.command()
@click.pass_context
def run(ctx: click.Context):
    """Back up every configured database into one archive."""
    settings = _load(ctx)
    notifier = create_notifier(settings)

    try:
        pipeline = create_pipeline(settings, notifier=notifier)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        notifier.notify(Severity.ERROR, f"Backup not started, configuration error: {e}")
        ctx.exit(EXIT_CONFIGURATION_ERROR)

    with interrupt_handlers():
        result = pipeline.execute()

    if result.succeeded:
        click.echo(f"Backup {result.status}: {result.archive.path if result.archive else 'no archive'}")
    else:
        click.echo(f"Backup failed at stage {result.failed_stage}: {result.error}", err=True)

    ctx.exit(result.exit_code)


@cli.command()
@click.option('--days', type=int, default=None, help="Override RETENTION_DAYS.")
@click.pass_context
def prune(ctx: click.Context, days):
    """Delete archives older than the retention threshold."""
    settings = _load(ctx)
    retention_days = settings['RETENTION_DAYS'] if days is None else days

    try:
        deleted = enforce_retention(settings['BACKUP_DIR'], retention_days)
    except PruneError as e:
        notifier = create_notifier(settings)
        notifier.notify(Severity.WARNING, f"Deleting old archives failed: {e}")
        click.echo(f"Deleted {e.deleted} archive(s), errors: {e}", err=True)
        ctx.exit(EXIT_FAILURE)

    click.echo(f"Deleted {deleted} archive(s) older than {retention_days} days")


@cli.command()
@click.pass_context
def check(ctx: click.Context):
    """Validate configuration and list the configured targets."""
    settings = _load(ctx)

    try:
        registry = create_registry(settings)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIGURATION_ERROR)

    now = datetime.now()
    click.echo(f"Backup directory: {settings['BACKUP_DIR']}")
    click.echo(f"Retention: {settings['RETENTION_DAYS']} days, format: {settings['ARCHIVE_FORMAT']}, "
               f"policy: {settings['EXPORT_POLICY']}")
    click.echo(f"Targets ({len(registry)}):")
    for target in registry.list_targets():
        hours = ','.join(str(h) for h in target.hours) if target.hours is not None else 'any'
        due = 'yes' if target.is_due(now) else 'no'
        click.echo(f"  - {target.alias}: {target.database_name}@{target.host}:{target.port} "
                   f"user={target.user} hours={hours} due_now={due}")


@cli.command()
@click.option('--limit', type=int, default=10, show_default=True, help="Number of runs to show.")
@click.pass_context
def history(ctx: click.Context, limit):
    """Show the most recent backup runs."""
    settings = _load(ctx)

    if not settings.get('HISTORY_DATABASE_URL'):
        click.echo("Run history is disabled (HISTORY_DATABASE_URL is not set)", err=True)
        ctx.exit(EXIT_CONFIGURATION_ERROR)

    runs = RunHistory.from_url(settings['HISTORY_DATABASE_URL']).recent(limit)
    if not runs:
        click.echo("No runs recorded")
        return

    for run in runs:
        size = f"{run.file_size_bytes / 1024 / 1024:.2f} MB" if run.file_size_bytes is not None else '-'
        click.echo(f"{run.started_at:%Y-%m-%d %H:%M:%S}  {run.status:<8} "
                   f"targets={run.targets_total} failed={run.targets_failed} size={size}  {run.run_id}")
        if run.error_message:
            click.echo(f"    {run.error_message}")


@cli.command('encrypt-password')
@click.password_option('--password', prompt='Database password', help="Password to encrypt.")
@click.pass_context
def encrypt_password(ctx: click.Context, password):
    """Print a password_encrypted value for the targets file."""
    settings = _load(ctx)

    try:
        cipher = PasswordCipher.from_settings(settings)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIGURATION_ERROR)

    if cipher is None:
        passphrase = click.prompt('Passphrase (set as DBKEEPER_PASSPHRASE)', hide_input=True,
                                  confirmation_prompt=True)
        cipher = PasswordCipher.generate(passphrase)
        click.echo(f"DBKEEPER_SALT={cipher.salt_hex}")

    click.echo(cipher.encrypt(password))


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
