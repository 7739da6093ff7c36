import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'


def configure_logging(settings):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if settings.debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (only when a log directory is configured)
    if settings.log_dir:
        os.makedirs(settings.log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(settings.log_dir, 'folderbackup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Keep HTTP client chatter out of the backup log
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_pipeline(config_name=None, **overrides):
    """
    Pipeline factory

    Loads and validates settings, configures logging and creates the storage
    client, so configuration problems surface before any remote call.

    Args:
        config_name: Configuration name ('development', 'production', 'testing')
        **overrides: Setting values that replace the configured ones

    Returns:
        BackupPipeline ready to run

    Raises:
        ConfigurationError: If settings or credentials are missing or invalid
    """
    from folderbackup.config import load_settings
    from folderbackup.backup.executor import BackupPipeline
    from folderbackup.backup.storage import create_storage

    settings = load_settings(config_name, **overrides)
    configure_logging(settings)

    client = create_storage(settings)
    return BackupPipeline(settings, client)
