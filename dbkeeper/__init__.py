import os
import logging
from logging.handlers import RotatingFileHandler

__version__ = '1.0.0'

logger = logging.getLogger('dbkeeper')


def configure_logging(settings):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if settings.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]
    file_error = None

    # File handler
    log_dir = settings.get('LOG_DIR')
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'dbkeeper.log'),
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
            file_handler.setLevel(log_level)
            file_formatter = logging.Formatter(
                '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
            )
            file_handler.setFormatter(file_formatter)
            handlers.append(file_handler)
        except OSError as e:
            file_error = e

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    if file_error:
        logger.warning(f"Log directory {log_dir} unusable, logging to console only: {file_error}")

    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_registry(settings):
    """Load the target registry named by the settings."""
    from dbkeeper.backup.targets import TargetRegistry
    from dbkeeper.utils.crypto import PasswordCipher

    return TargetRegistry.from_file(
        settings['TARGETS_FILE'],
        default_host=settings.get('DEFAULT_DB_HOST', '127.0.0.1'),
        cipher=PasswordCipher.from_settings(settings),
    )


def create_pipeline(settings, notifier=None, exporter=None, registry=None):
    """
    Backup pipeline factory.

    Args:
        settings: Validated settings from dbkeeper.config.load_settings()
        notifier: Notifier to use instead of the configured Telegram one
        exporter: Exporter to use instead of mysqldump
        registry: Target registry to use instead of TARGETS_FILE

    Raises:
        ConfigurationError: If the targets file or secrets are invalid
    """
    from dbkeeper.backup.executor import BackupPipeline
    from dbkeeper.backup.exporter import create_exporter
    from dbkeeper.notifications import create_notifier

    if registry is None:
        registry = create_registry(settings)
    if notifier is None:
        notifier = create_notifier(settings)
    if exporter is None:
        exporter = create_exporter(settings)

    history = None
    if settings.get('HISTORY_DATABASE_URL'):
        from sqlalchemy.exc import SQLAlchemyError
        from dbkeeper.history import RunHistory

        try:
            history = RunHistory.from_url(settings['HISTORY_DATABASE_URL'])
        except SQLAlchemyError as e:
            logger.warning(f"Run history disabled, database unavailable: {e}")

    logger.info(f"Loaded {len(registry)} target(s), backup directory: {settings['BACKUP_DIR']}")

    return BackupPipeline(
        registry=registry,
        exporter=exporter,
        notifier=notifier,
        backup_dir=settings['BACKUP_DIR'],
        retention_days=settings['RETENTION_DAYS'],
        archive_format=settings['ARCHIVE_FORMAT'],
        export_policy=settings['EXPORT_POLICY'],
        export_workers=settings['EXPORT_WORKERS'],
        cancel_grace_seconds=settings['CANCEL_GRACE_SECONDS'],
        notify_on_success=settings.get('NOTIFY_ON_SUCCESS', False),
        history=history,
    )
