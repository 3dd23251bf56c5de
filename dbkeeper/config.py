import os
import socket


class ConfigurationError(Exception):
    """Raised when settings or the targets file are missing or malformed."""
    pass


class Config:
    """Base configuration"""

    DEBUG = False

    # Storage
    BACKUP_DIR = os.path.expanduser(os.environ.get('BACKUP_DIR') or '~/db_backups')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(BACKUP_DIR, 'logs')
    ARCHIVE_FORMAT = os.environ.get('ARCHIVE_FORMAT') or 'tar.gz'
    RETENTION_DAYS = os.environ.get('RETENTION_DAYS') or '7'

    # Targets
    TARGETS_FILE = os.environ.get('BACKUP_TARGETS_FILE') or '/etc/dbkeeper/targets.json'
    DEFAULT_DB_HOST = os.environ.get('DEFAULT_DB_HOST') or '127.0.0.1'

    # Export
    MYSQLDUMP_BIN = os.environ.get('MYSQLDUMP_BIN') or 'mysqldump'
    EXPORT_POLICY = os.environ.get('EXPORT_POLICY') or 'fail_fast'
    EXPORT_WORKERS = os.environ.get('EXPORT_WORKERS') or '1'
    EXPORT_TIMEOUT = os.environ.get('EXPORT_TIMEOUT') or '3600'
    CANCEL_GRACE_SECONDS = os.environ.get('CANCEL_GRACE_SECONDS') or '30'

    # Notifications (Telegram bot, see https://core.telegram.org/bots/tutorial)
    BOT_TOKEN = os.environ.get('BOT_TOKEN')
    GROUP_ID = os.environ.get('GROUP_ID')
    NOTIFY_ATTEMPTS = os.environ.get('NOTIFY_ATTEMPTS') or '3'
    NOTIFY_BACKOFF = os.environ.get('NOTIFY_BACKOFF') or '2.0'
    NOTIFY_ON_SUCCESS = os.environ.get('NOTIFY_ON_SUCCESS', 'false').lower() == 'true'
    HOSTNAME = os.environ.get('BACKUP_HOSTNAME') or socket.gethostname()

    # Run history (disabled when unset)
    HISTORY_DATABASE_URL = os.environ.get('HISTORY_DATABASE_URL')

    # Encrypted target passwords
    SECRET_PASSPHRASE = os.environ.get('DBKEEPER_PASSPHRASE')
    SECRET_SALT = os.environ.get('DBKEEPER_SALT')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_DIR = os.path.join(DATA_DIR, 'db_backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TARGETS_FILE = os.environ.get('BACKUP_TARGETS_FILE') or os.path.join(DATA_DIR, 'targets.json')
    HISTORY_DATABASE_URL = os.environ.get('HISTORY_DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "history.db")}'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration; tests override paths and credentials."""
    TESTING = True
    BOT_TOKEN = 'test-bot-token'
    GROUP_ID = '-100123'
    HOSTNAME = 'test-host'
    HISTORY_DATABASE_URL = None
    NOTIFY_BACKOFF = '0'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}

ARCHIVE_FORMATS = ('tar.gz', 'tar.bz2', 'tar.xz', 'zip', 'none')
EXPORT_POLICIES = ('fail_fast', 'best_effort')


def load_settings(config_name=None, **overrides) -> dict:
    """
    Collect settings from a configuration class.

    Args:
        config_name: Key in ``config``; defaults to $DBKEEPER_ENV or 'production'
        **overrides: Values replacing the class attributes

    Returns:
        Validated settings dict with numeric values converted

    Raises:
        ConfigurationError: If a setting is missing or malformed
    """
    if config_name is None:
        config_name = os.environ.get('DBKEEPER_ENV', 'production')

    if config_name not in config:
        raise ConfigurationError(
            f"Unknown configuration: {config_name}. Valid options: {list(config.keys())}"
        )

    config_class = config[config_name]
    settings = {
        key: getattr(config_class, key)
        for key in dir(config_class)
        if key.isupper()
    }
    settings.update(overrides)

    return validate_settings(settings)


def validate_settings(settings: dict) -> dict:
    """Check required settings and convert numeric strings."""
    # Without notification credentials the run could not report its own failure
    for key in ('BOT_TOKEN', 'GROUP_ID'):
        if not settings.get(key):
            raise ConfigurationError(f"{key} is not set; notifications cannot be delivered")

    settings['RETENTION_DAYS'] = _to_number(settings, 'RETENTION_DAYS', int, minimum=0)
    settings['EXPORT_WORKERS'] = _to_number(settings, 'EXPORT_WORKERS', int, minimum=1)
    settings['EXPORT_TIMEOUT'] = _to_number(settings, 'EXPORT_TIMEOUT', float, minimum=1)
    settings['CANCEL_GRACE_SECONDS'] = _to_number(settings, 'CANCEL_GRACE_SECONDS', float, minimum=0)
    settings['NOTIFY_ATTEMPTS'] = _to_number(settings, 'NOTIFY_ATTEMPTS', int, minimum=1)
    settings['NOTIFY_BACKOFF'] = _to_number(settings, 'NOTIFY_BACKOFF', float, minimum=0)

    if settings.get('ARCHIVE_FORMAT') not in ARCHIVE_FORMATS:
        raise ConfigurationError(
            f"Invalid ARCHIVE_FORMAT: {settings.get('ARCHIVE_FORMAT')}. "
            f"Valid options: {list(ARCHIVE_FORMATS)}"
        )

    if settings.get('EXPORT_POLICY') not in EXPORT_POLICIES:
        raise ConfigurationError(
            f"Invalid EXPORT_POLICY: {settings.get('EXPORT_POLICY')}. "
            f"Valid options: {list(EXPORT_POLICIES)}"
        )

    return settings


def _to_number(settings: dict, key: str, kind, minimum=None):
    value = settings.get(key)
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number, got: {value!r}")

    if minimum is not None and number < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got: {number}")

    return number
